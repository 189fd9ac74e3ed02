"""
Payment initiation: validation, pending transaction and processor hand-off.
"""
import logging
import re

from sqlalchemy import select

from botbilling.core.database import get_db_session, transactions
from botbilling.features.billing.initiator import generate_reference, processor_plan_code
from botbilling.features.billing.ledger import list_ledger_entries
from botbilling.features.billing.provider import BillingProviderError, CheckoutSession
from botbilling.features.billing.service import get_active_subscription
from botbilling.features.plans.service import deactivate_plan


HEADERS = {"X-User-Id": "u1", "X-User-Email": "u1@example.com"}


def _transactions():
    with get_db_session() as session:
        return session.execute(select(transactions)).fetchall()


def _checkout(reference="ignored"):
    return CheckoutSession(
        authorization_url="https://checkout.paystack.com/abc123",
        access_code="abc123",
        reference=reference,
    )


def test_reference_format():
    ref = generate_reference()
    assert re.fullmatch(r"sub_\d{13}_[0-9a-f]{10}", ref)
    assert generate_reference() != ref


def test_initiate_creates_pending_transaction(client, mock_provider, pro_plan_id):
    mock_provider.initialize_transaction.return_value = _checkout()

    resp = client.post(
        "/api/billing/initiate",
        json={"plan_id": pro_plan_id, "billing_cycle": "yearly", "callback_url": "https://app.example.com/billing"},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["authorization_url"] == "https://checkout.paystack.com/abc123"
    assert body["reference"].startswith("sub_")

    rows = _transactions()
    assert len(rows) == 1
    txn = rows[0]
    assert txn.reference == body["reference"]
    assert txn.status == "pending"
    assert txn.user_id == "u1"
    assert txn._mapping["metadata"] == {
        "user_id": "u1",
        "plan_id": pro_plan_id,
        "billing_cycle": "yearly",
        "plan_name": "Pro",
        "customer_code": "CUS_test",
        "plan_code": "PLN_test",
        "subscription_code": "SUB_test",
        "is_subscription": True,
    }

    kwargs = mock_provider.initialize_transaction.call_args.kwargs
    assert kwargs["amount_minor"] == 29000
    assert kwargs["reference"] == body["reference"]
    assert kwargs["email"] == "u1@example.com"
    assert kwargs["currency"] == "USD"
    assert kwargs["callback_url"] == "https://app.example.com/billing"
    assert kwargs["plan_code"] is None


def test_provider_failure_keeps_pending_transaction(client, mock_provider, pro_plan_id):
    mock_provider.initialize_transaction.side_effect = BillingProviderError("Paystack error: Invalid key")

    resp = client.post("/api/billing/initiate", json={"plan_id": pro_plan_id, "billing_cycle": "monthly"}, headers=HEADERS)
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "payment_provider_error"

    rows = _transactions()
    assert len(rows) == 1
    assert rows[0].status == "pending"


def test_free_plan_cannot_be_purchased(client, mock_provider, plan_ids):
    resp = client.post("/api/billing/initiate", json={"plan_id": plan_ids["Free"], "billing_cycle": "monthly"}, headers=HEADERS)
    assert resp.status_code == 400
    assert _transactions() == []


def test_unknown_or_inactive_plan_is_404(client, mock_provider, plan_ids):
    resp = client.post("/api/billing/initiate", json={"plan_id": "missing", "billing_cycle": "monthly"}, headers=HEADERS)
    assert resp.status_code == 404

    deactivate_plan(plan_ids["Premium"])
    resp = client.post("/api/billing/initiate", json={"plan_id": plan_ids["Premium"], "billing_cycle": "monthly"}, headers=HEADERS)
    assert resp.status_code == 404
    mock_provider.initialize_transaction.assert_not_called()


def test_invalid_inputs_rejected(client, mock_provider, pro_plan_id):
    bad_cycle = client.post("/api/billing/initiate", json={"plan_id": pro_plan_id, "billing_cycle": "weekly"}, headers=HEADERS)
    assert bad_cycle.status_code == 400

    missing = client.post("/api/billing/initiate", json={"plan_id": pro_plan_id}, headers=HEADERS)
    assert missing.status_code == 400

    bad_callback = client.post(
        "/api/billing/initiate",
        json={"plan_id": pro_plan_id, "billing_cycle": "monthly", "callback_url": "javascript:alert(1)"},
        headers=HEADERS,
    )
    assert bad_callback.status_code == 400

    no_email = client.post(
        "/api/billing/initiate",
        json={"plan_id": pro_plan_id, "billing_cycle": "monthly"},
        headers={"X-User-Id": "u1"},
    )
    assert no_email.status_code == 400
    assert _transactions() == []


def test_initiate_requires_auth(client, pro_plan_id):
    resp = client.post("/api/billing/initiate", json={"plan_id": pro_plan_id, "billing_cycle": "monthly"})
    assert resp.status_code == 401


def test_initiate_rate_limited_per_user(client, mock_provider, pro_plan_id):
    payload = {"plan_id": pro_plan_id, "billing_cycle": "weekly"}
    for _ in range(10):
        assert client.post("/api/billing/initiate", json=payload, headers=HEADERS).status_code == 400

    limited = client.post("/api/billing/initiate", json=payload, headers=HEADERS)
    assert limited.status_code == 429
    assert limited.json()["error"]["code"] == "rate_limited"

    other = client.post("/api/billing/initiate", json=payload, headers={"X-User-Id": "u2", "X-User-Email": "u2@example.com"})
    assert other.status_code == 400


def test_initiate_sets_up_processor_subscription(client, mock_provider, pro_plan_id):
    mock_provider.initialize_transaction.return_value = _checkout()

    resp = client.post("/api/billing/initiate", json={"plan_id": pro_plan_id, "billing_cycle": "yearly"}, headers=HEADERS)
    assert resp.status_code == 200

    mock_provider.ensure_customer.assert_called_once_with("u1@example.com", metadata={"user_id": "u1"})
    plan_args = mock_provider.ensure_plan.call_args
    assert plan_args.args == ("pro_yearly",)
    assert plan_args.kwargs["interval"] == "annually"
    assert plan_args.kwargs["amount_minor"] == 29000
    assert plan_args.kwargs["name"] == "Pro (yearly)"

    sub_args = mock_provider.create_subscription.call_args
    assert sub_args.args == ("CUS_test", "PLN_test")
    assert sub_args.kwargs["metadata"]["user_id"] == "u1"
    assert sub_args.kwargs["metadata"]["plan_id"] == pro_plan_id


def test_processor_plan_code_and_interval(client, mock_provider, plan_ids):
    mock_provider.initialize_transaction.return_value = _checkout()

    resp = client.post("/api/billing/initiate", json={"plan_id": plan_ids["Premium"], "billing_cycle": "monthly"}, headers=HEADERS)
    assert resp.status_code == 200
    assert processor_plan_code("Pro Plus", "yearly") == "pro_plus_yearly"
    plan_args = mock_provider.ensure_plan.call_args
    assert plan_args.args == ("premium_monthly",)
    assert plan_args.kwargs["interval"] == "monthly"


def test_subscription_setup_failure_is_logged_and_checkout_continues(client, mock_provider, pro_plan_id, caplog):
    mock_provider.create_subscription.side_effect = BillingProviderError("Paystack error: No active authorization")
    mock_provider.initialize_transaction.return_value = _checkout()

    with caplog.at_level(logging.WARNING, logger="botbilling"):
        resp = client.post("/api/billing/initiate", json={"plan_id": pro_plan_id, "billing_cycle": "monthly"}, headers=HEADERS)
    assert resp.status_code == 200
    assert any(r.getMessage() == "billing.initiate.subscription_setup_failed" for r in caplog.records)

    metadata = _transactions()[0]._mapping["metadata"]
    assert metadata["customer_code"] == "CUS_test"
    assert metadata["plan_code"] == "PLN_test"
    assert "subscription_code" not in metadata
    assert metadata["is_subscription"] is False
    # Processor subscribes the customer to the plan on the first charge instead
    assert mock_provider.initialize_transaction.call_args.kwargs["plan_code"] == "PLN_test"


def test_customer_failure_skips_plan_and_subscription(client, mock_provider, pro_plan_id):
    mock_provider.ensure_customer.side_effect = BillingProviderError("Paystack error: unreachable")
    mock_provider.initialize_transaction.return_value = _checkout()

    resp = client.post("/api/billing/initiate", json={"plan_id": pro_plan_id, "billing_cycle": "monthly"}, headers=HEADERS)
    assert resp.status_code == 200
    mock_provider.ensure_plan.assert_not_called()
    mock_provider.create_subscription.assert_not_called()
    assert _transactions()[0]._mapping["metadata"]["is_subscription"] is False
    assert mock_provider.initialize_transaction.call_args.kwargs["plan_code"] is None


def test_recorded_subscription_code_drives_activation_and_renewal(client, mock_provider, pro_plan_id, post_webhook, charge_payload):
    mock_provider.initialize_transaction.return_value = _checkout()
    reference = client.post(
        "/api/billing/initiate", json={"plan_id": pro_plan_id, "billing_cycle": "monthly"}, headers=HEADERS
    ).json()["reference"]

    # First charge echoes no subscription handle; the pending transaction supplies it
    resp = post_webhook(charge_payload(reference, billing_cycle=None))
    assert resp.status_code == 200

    sub = get_active_subscription("u1")
    assert sub.external_subscription_code == "SUB_test"
    assert sub.external_customer_code == "CUS_test"

    renewal = post_webhook(charge_payload("sub_renewal_1", billing_cycle=None, subscription_code="SUB_test"))
    assert renewal.status_code == 200
    renewed = get_active_subscription("u1")
    assert renewed.id == sub.id
    assert renewed.current_period_start == sub.current_period_end
    assert [e["action"] for e in list_ledger_entries("u1")] == ["activated", "renewed"]
