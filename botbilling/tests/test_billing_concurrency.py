"""
Concurrent delivery of the same payment through real threads.

Each worker waits on a barrier so the calls overlap inside the database.
"""
import threading
from dataclasses import replace
from decimal import Decimal

from sqlalchemy import func, select

from botbilling.core.database import get_db_session, subscriptions, subscription_ledger
from botbilling.core.errors import ConflictError
from botbilling.features.billing.events import PaymentSignal
from botbilling.features.billing.ledger import create_pending_transaction, get_transaction_by_reference
from botbilling.features.billing.service import (
    apply_payment_failed,
    apply_payment_success,
    apply_subscription_disabled,
    process_webhook_event,
    verify_payment,
)


WORKERS = 4


def _run_concurrently(targets):
    """Run callables at the same instant; returns (results, errors) in submission order."""
    barrier = threading.Barrier(len(targets))
    results = [None] * len(targets)
    errors = [None] * len(targets)

    def _worker(i, fn):
        barrier.wait()
        try:
            results[i] = fn()
        except Exception as e:  # collected for assertions below
            errors[i] = e

    threads = [threading.Thread(target=_worker, args=(i, fn)) for i, fn in enumerate(targets)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results, errors


def _subscription_count(user_id, status=None):
    query = select(func.count()).select_from(subscriptions).where(subscriptions.c.user_id == user_id)
    if status:
        query = query.where(subscriptions.c.status == status)
    with get_db_session() as session:
        return session.execute(query).scalar_one()


def _ledger_count(user_id, action):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(subscription_ledger)
            .where(subscription_ledger.c.user_id == user_id)
            .where(subscription_ledger.c.action == action)
        ).scalar_one()


def _signal(reference, plan_id, user_id="u1"):
    return PaymentSignal(
        reference=reference,
        amount=Decimal("29.00"),
        currency="USD",
        status="success",
        user_id=user_id,
        plan_id=plan_id,
        customer_code="CUS_test",
        metadata={"user_id": user_id, "plan_id": plan_id, "billing_cycle": "monthly"},
    )


def test_same_reference_applies_once_across_threads(pro_plan_id, fixed_now):
    signal = _signal("sub_threads", pro_plan_id)

    results, errors = _run_concurrently(
        [lambda: apply_payment_success(signal, now=fixed_now) for _ in range(WORKERS)]
    )

    assert errors == [None] * WORKERS
    assert sorted(r.applied for r in results) == [False] * (WORKERS - 1) + [True]
    assert all(r.duplicate for r in results if not r.applied)
    assert _subscription_count("u1") == 1
    assert _subscription_count("u1", "active") == 1
    assert _ledger_count("u1", "activated") == 1
    assert get_transaction_by_reference("sub_threads").status == "success"


def test_distinct_references_leave_one_active(pro_plan_id, premium_plan_id, fixed_now):
    plans = [pro_plan_id, premium_plan_id]
    signals = [_signal(f"sub_parallel_{i}", plans[i % 2]) for i in range(WORKERS)]

    results, errors = _run_concurrently(
        [lambda s=s: apply_payment_success(s, now=fixed_now) for s in signals]
    )

    # Losing writers either supersede cleanly or give up with a conflict
    assert all(e is None or isinstance(e, ConflictError) for e in errors)
    assert any(r is not None and r.applied for r in results)
    assert _subscription_count("u1", "active") == 1


def test_verify_and_webhook_race_converges(mock_provider, pro_plan_id, charge_payload, signed, fixed_now):
    with get_db_session() as session:
        create_pending_transaction(
            session,
            user_id="u1",
            plan_id=pro_plan_id,
            amount=Decimal("29.00"),
            currency="USD",
            reference="sub_mixed",
            metadata={"user_id": "u1", "plan_id": pro_plan_id, "billing_cycle": "monthly"},
        )
    payload = charge_payload("sub_mixed", user_id="u1", plan_id=pro_plan_id)
    mock_provider.verify_transaction.return_value = payload["data"]
    body, headers = signed(payload)

    targets = []
    for _ in range(WORKERS // 2):
        targets.append(lambda: verify_payment("u1", "sub_mixed", now=fixed_now))
        targets.append(lambda: process_webhook_event(headers, body, now=fixed_now))
    results, errors = _run_concurrently(targets)

    assert errors == [None] * WORKERS
    assert all(r["success"] for r in results[0::2])
    assert sum(1 for r in results[1::2] if r.applied) <= 1
    assert _subscription_count("u1") == 1
    assert _ledger_count("u1", "activated") == 1
    assert get_transaction_by_reference("sub_mixed").status == "success"


def test_duplicate_failure_deliveries_write_one_ledger_row(activate, pro_plan_id):
    activate("u1", pro_plan_id, subscription_code="SUB_dupfail")
    failed = replace(_signal("sub_dupfail_renewal", pro_plan_id), subscription_code="SUB_dupfail", status="failed")

    _, errors = _run_concurrently([lambda: apply_payment_failed(failed) for _ in range(WORKERS)])

    assert errors == [None] * WORKERS
    assert _subscription_count("u1", "past_due") == 1
    assert _ledger_count("u1", "payment_failed") == 1


def test_duplicate_disable_deliveries_write_one_ledger_row(activate, pro_plan_id):
    activate("u1", pro_plan_id, subscription_code="SUB_dupdisable")
    disabled = PaymentSignal(subscription_code="SUB_dupdisable")

    _, errors = _run_concurrently([lambda: apply_subscription_disabled(disabled) for _ in range(WORKERS)])

    assert errors == [None] * WORKERS
    assert _subscription_count("u1", "cancelled") == 1
    assert _ledger_count("u1", "subscription_disabled") == 1
