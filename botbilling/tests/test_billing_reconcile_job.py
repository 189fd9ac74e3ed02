"""
Tests for the scheduled reconciliation job.
"""
from datetime import timedelta

from botbilling.features.billing.ledger import list_ledger_entries
from botbilling.features.billing.reconcile_job import run_reconcile_job
from botbilling.features.billing.service import cancel_subscription, get_subscription


def test_reconcile_with_nothing_due(fixed_now):
    result = run_reconcile_job(now=fixed_now)
    assert result["issues_found"] == 0
    assert result["corrections_applied"] == 0
    assert result["timestamp"] == fixed_now.isoformat()


def test_reconcile_settles_ended_cancellations(activate, pro_plan_id, fixed_now, mock_provider):
    first = activate("u1", pro_plan_id).subscription_id
    second = activate("u2", pro_plan_id).subscription_id
    untouched = activate("u3", pro_plan_id).subscription_id
    cancel_subscription("u1", first)
    cancel_subscription("u2", second)

    # Every period ends a month after fixed_now; only flagged subscriptions are settled
    result = run_reconcile_job(now=fixed_now + timedelta(days=40))
    assert result["issues_found"] == 2
    assert result["corrections_applied"] == 2
    assert get_subscription(first).status == "cancelled"
    assert get_subscription(second).status == "cancelled"
    assert get_subscription(untouched).status == "active"
    assert list_ledger_entries("u1")[-1]["action"] == "period_ended"

    again = run_reconcile_job(now=fixed_now + timedelta(days=40))
    assert again["issues_found"] == 0


def test_reconcile_skips_periods_still_running(activate, pro_plan_id, fixed_now, mock_provider):
    sub_id = activate("u1", pro_plan_id).subscription_id
    cancel_subscription("u1", sub_id)

    result = run_reconcile_job(now=fixed_now + timedelta(days=10))
    assert result["issues_found"] == 0
    assert get_subscription(sub_id).status == "active"


def test_dry_run_reports_without_writing(activate, pro_plan_id, fixed_now, mock_provider):
    sub_id = activate("u1", pro_plan_id).subscription_id
    cancel_subscription("u1", sub_id)

    result = run_reconcile_job(now=fixed_now + timedelta(days=40), fix=False)
    assert result["issues_found"] == 1
    assert result["corrections_applied"] == 0
    assert get_subscription(sub_id).status == "active"
