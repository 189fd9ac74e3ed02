"""
Transaction ledger and subscription ledger.

Both are append/update only; nothing here deletes. Functions that take a
session participate in the caller's unit of work; the rest open their own.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from botbilling.core.database import (
    get_db_session,
    get_session_factory,
    transactions,
    subscriptions,
    subscription_ledger,
)
from botbilling.features.billing.events import PaymentSignal


logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = ("pending", "failed")


def get_transaction(session, reference: str):
    return session.execute(
        select(transactions).where(transactions.c.reference == reference)
    ).fetchone()


def get_transaction_by_reference(reference: str):
    with get_db_session() as session:
        return get_transaction(session, reference)


def create_pending_transaction(
    session,
    *,
    user_id: str,
    plan_id: str,
    amount: Decimal,
    currency: str,
    reference: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    session.execute(
        insert(transactions).values(
            user_id=user_id,
            plan_id=plan_id,
            amount=amount,
            currency=currency,
            reference=reference,
            status="pending",
            metadata=metadata or {},
        )
    )


def ensure_transaction(signal: PaymentSignal, default_currency: str):
    """
    Return the transaction for signal.reference, creating it from the
    signal's metadata when missing.

    Runs in its own short session so a concurrent insert of the same
    reference (verify vs webhook) resolves on the unique constraint: the
    loser re-reads the winner's row.

    Returns:
        The transaction row, or None when it is missing and the signal lacks
        user_id/plan_id to create it.
    """
    with get_db_session() as session:
        existing = get_transaction(session, signal.reference)
    if existing is not None:
        return existing
    if not signal.user_id or not signal.plan_id:
        return None

    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        create_pending_transaction(
            session,
            user_id=signal.user_id,
            plan_id=signal.plan_id,
            amount=signal.amount,
            currency=signal.currency or default_currency,
            reference=signal.reference,
            metadata=signal.metadata,
        )
        session.commit()
        logger.info(
            "billing.transaction.created_on_demand",
            extra={"reference": signal.reference, "user_id": signal.user_id},
        )
    except IntegrityError:
        session.rollback()
    finally:
        session.close()

    with get_db_session() as session:
        return get_transaction(session, signal.reference)


def mark_transaction_success(
    session,
    reference: str,
    *,
    authorization_code: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> bool:
    """
    Conditionally move a transaction to success.

    Returns:
        True only for the writer that changed the row; that writer owns the
        subscription side effects.
    """
    result = session.execute(
        update(transactions)
        .where(transactions.c.reference == reference)
        .where(transactions.c.status.in_(RETRYABLE_STATUSES))
        .values(
            status="success",
            authorization_code=authorization_code,
            payment_method=payment_method or "card",
        )
    )
    return result.rowcount == 1


def mark_transaction_failed(session, reference: str) -> bool:
    """pending -> failed; a terminal success is never downgraded."""
    result = session.execute(
        update(transactions)
        .where(transactions.c.reference == reference)
        .where(transactions.c.status == "pending")
        .values(status="failed")
    )
    return result.rowcount == 1


def link_transaction_subscription(session, reference: str, subscription_id: str) -> None:
    session.execute(
        update(transactions)
        .where(transactions.c.reference == reference)
        .values(subscription_id=subscription_id)
    )


def list_transactions_for_user(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.created_at.desc())
            .limit(limit)
        ).fetchall()
    return [transaction_to_dict(r) for r in rows]


def list_transactions_for_subscription(subscription_id: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(transactions)
            .where(transactions.c.subscription_id == subscription_id)
            .order_by(transactions.c.created_at.desc())
        ).fetchall()
    return [transaction_to_dict(r) for r in rows]


def transaction_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "plan_id": row.plan_id,
        "subscription_id": row.subscription_id,
        "amount": str(row.amount) if row.amount is not None else None,
        "currency": row.currency,
        "reference": row.reference,
        "status": row.status,
        "payment_method": row.payment_method,
        "metadata": row._mapping["metadata"] or {},
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def append_ledger_entry(
    session,
    *,
    user_id: str,
    subscription_id: str,
    action: str,
    from_status: Optional[str],
    to_status: str,
    cancel_at_period_end: bool = False,
    period_start=None,
    period_end=None,
    reference: Optional[str] = None,
) -> None:
    session.execute(
        insert(subscription_ledger).values(
            user_id=user_id,
            subscription_id=subscription_id,
            transaction_reference=reference,
            action=action,
            from_status=from_status,
            to_status=to_status,
            cancel_at_period_end=cancel_at_period_end,
            period_start=period_start,
            period_end=period_end,
        )
    )


def list_ledger_entries(user_id: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(subscription_ledger)
            .where(subscription_ledger.c.user_id == user_id)
            .order_by(subscription_ledger.c.id.asc())
        ).fetchall()
    return [
        {
            "id": r.id,
            "subscription_id": r.subscription_id,
            "reference": r.transaction_reference,
            "action": r.action,
            "from_status": r.from_status,
            "to_status": r.to_status,
            "cancel_at_period_end": bool(r.cancel_at_period_end),
        }
        for r in rows
    ]


def replay_subscription_states(user_id: str) -> Dict[str, Dict[str, Any]]:
    """Fold a user's ledger into {subscription_id: {status, cancel_at_period_end}}."""
    states: Dict[str, Dict[str, Any]] = {}
    for entry in list_ledger_entries(user_id):
        states[entry["subscription_id"]] = {
            "status": entry["to_status"],
            "cancel_at_period_end": entry["cancel_at_period_end"],
        }
    return states


def current_subscription_states(user_id: str) -> Dict[str, Dict[str, Any]]:
    """Same shape as replay_subscription_states, read from the live table."""
    with get_db_session() as session:
        rows = session.execute(
            select(
                subscriptions.c.id,
                subscriptions.c.status,
                subscriptions.c.cancel_at_period_end,
            ).where(subscriptions.c.user_id == user_id)
        ).fetchall()
    return {
        r.id: {"status": r.status, "cancel_at_period_end": bool(r.cancel_at_period_end)}
        for r in rows
    }
