"""
Scheduled reconciliation job.

Settles cancel-at-period-end subscriptions whose period has ended:
active -> cancelled, with a ledger entry per flip. Invoked by an external
scheduler or the admin endpoint; there are no timers in-process.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from sqlalchemy import select, update

from botbilling.core.database import get_db_session, subscriptions
from botbilling.features.billing.ledger import append_ledger_entry
from botbilling.features.billing.periods import as_utc, utcnow


logger = logging.getLogger(__name__)


def run_reconcile_job(now: Optional[datetime] = None, fix: bool = True, limit: int = 500) -> Dict[str, Any]:
    now = as_utc(now) if now else utcnow()
    due = []
    corrections = 0

    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions)
            .where(subscriptions.c.status == "active")
            .where(subscriptions.c.cancel_at_period_end == True)  # noqa: E712
        ).fetchall()
        # Compared in Python: SQLite hands back naive datetimes
        due = [r for r in rows if as_utc(r.current_period_end) <= now]

        if fix:
            for s in due[:limit]:
                result = session.execute(
                    update(subscriptions)
                    .where(subscriptions.c.id == s.id)
                    .where(subscriptions.c.status == "active")
                    .values(status="cancelled")
                )
                if result.rowcount != 1:
                    continue
                append_ledger_entry(
                    session,
                    user_id=s.user_id,
                    subscription_id=s.id,
                    action="period_ended",
                    from_status="active",
                    to_status="cancelled",
                    cancel_at_period_end=True,
                    period_start=s.current_period_start,
                    period_end=s.current_period_end,
                )
                corrections += 1

    logger.info(
        "billing.reconcile.complete",
        extra={"issues_found": len(due), "corrections_applied": corrections},
    )
    return {
        "issues_found": len(due),
        "corrections_applied": corrections,
        "timestamp": now.isoformat(),
    }
