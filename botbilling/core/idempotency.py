"""
Webhook delivery idempotency.

Every verified webhook body is claimed under SHA-256(body). A delivery that
was processed is never applied again; a delivery whose previous attempt
failed may be claimed again so processor retries can succeed.
"""

import hashlib
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from botbilling.core.database import get_db_session, get_session_factory, webhook_deliveries


def delivery_key(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def claim_delivery(key: str, event_kind: str, payload_hash: Optional[str] = None) -> bool:
    """
    Claim a delivery for processing (atomic on the unique key).

    Args:
        key: Idempotency key (SHA-256 of the raw body)
        event_kind: Processor event name (for debugging/monitoring)
        payload_hash: Hash of the raw body, defaults to the key

    Returns:
        True if the caller should process the delivery
        False if the delivery was already processed (duplicate)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        session.execute(
            webhook_deliveries.insert().values(
                idempotency_key=key,
                event_kind=event_kind,
                payload_hash=payload_hash or key,
                processed=False,
                attempts=1,
            )
        )
        session.commit()
        return True
    except IntegrityError:
        # Seen before: duplicate unless the earlier attempt failed
        session.rollback()
    finally:
        session.close()

    with get_db_session() as session:
        row = session.execute(
            select(webhook_deliveries.c.processed).where(
                webhook_deliveries.c.idempotency_key == key
            )
        ).fetchone()
        if row is None or row.processed:
            return False
        session.execute(
            update(webhook_deliveries)
            .where(webhook_deliveries.c.idempotency_key == key)
            .values(attempts=webhook_deliveries.c.attempts + 1, error=None)
        )
    return True


def mark_delivery_processed(key: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(webhook_deliveries)
            .where(webhook_deliveries.c.idempotency_key == key)
            .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
        )


def mark_delivery_failed(key: str, error: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(webhook_deliveries)
            .where(webhook_deliveries.c.idempotency_key == key)
            .values(error=error[:2000])
        )


def is_delivery_processed(key: str) -> bool:
    """Read-only check (tests, admin tooling)."""
    with get_db_session() as session:
        row = session.execute(
            select(webhook_deliveries.c.processed).where(
                webhook_deliveries.c.idempotency_key == key
            )
        ).fetchone()
    return bool(row and row.processed)
