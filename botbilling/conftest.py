# botbilling/conftest.py
import itertools
import json
import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

# Settings are read at import time, so the test environment is pinned first
_TEST_DB_PATH = Path(tempfile.gettempdir()) / f"botbilling_test_{os.getpid()}.db"
os.environ["TEST_DATABASE_URL"] = os.getenv("BOTBILLING_TEST_DATABASE_URL", f"sqlite:///{_TEST_DB_PATH}")
os.environ["ENV"] = "test"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_botbilling"
os.environ["PAYSTACK_WEBHOOK_SECRET"] = "whsec_test_botbilling"
os.environ["PAYMENT_CURRENCY"] = "USD"
os.environ["AUTH_JWT_SECRET"] = "jwt_test_secret"
os.environ["AUTH_ALLOW_USER_HEADER"] = "true"

WEBHOOK_SECRET = os.environ["PAYSTACK_WEBHOOK_SECRET"]


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all tables once per session on a throwaway database."""
    from botbilling.core.database import create_all_tables, drop_all_tables, dispose_engine

    drop_all_tables()
    create_all_tables()
    yield
    dispose_engine()
    if _TEST_DB_PATH.exists():
        _TEST_DB_PATH.unlink()


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Empty every table before each test.

    Deletes in reverse dependency order so foreign keys never trip.
    """
    from botbilling.core.database import get_engine, metadata

    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_rate_limiter():
    import botbilling.core.rate_limit as rate_limit

    rate_limit._initiate_limiter = None
    yield
    rate_limit._initiate_limiter = None


@pytest.fixture
def plan_ids():
    """Seed the default catalog; returns {plan name: plan id}."""
    from botbilling.features.plans.service import seed_plans

    return seed_plans()


@pytest.fixture
def pro_plan_id(plan_ids):
    return plan_ids["Pro"]


@pytest.fixture
def premium_plan_id(plan_ids):
    return plan_ids["Premium"]


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from botbilling.main import app

    return TestClient(app)


@pytest.fixture
def admin_user():
    """Grant super_admin to 'admin_root' and return its id."""
    from botbilling.core.database import get_db_session, admin_users

    with get_db_session() as session:
        session.execute(admin_users.insert().values(user_id="admin_root", role="super_admin"))
    return "admin_root"


@pytest.fixture
def mock_provider():
    """Replace the Paystack client seen by the billing service (and initiator)."""
    with patch("botbilling.features.billing.service.get_provider") as mock_get:
        provider = Mock()
        provider.ensure_customer.return_value = "CUS_test"
        provider.ensure_plan.return_value = "PLN_test"
        provider.create_subscription.return_value = {"subscription_code": "SUB_test", "email_token": "tok_test"}
        mock_get.return_value = provider
        yield provider


@pytest.fixture
def fixed_now():
    return datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def charge_payload():
    """Build a charge.success-style webhook payload (amount in minor units)."""

    def _build(
        reference,
        *,
        user_id=None,
        plan_id=None,
        billing_cycle="monthly",
        amount=2900,
        event="charge.success",
        status="success",
        subscription_code=None,
        customer_code="CUS_test",
        metadata_as_string=False,
    ):
        metadata = {}
        if user_id:
            metadata["user_id"] = user_id
        if plan_id:
            metadata["plan_id"] = plan_id
        if billing_cycle:
            metadata["billing_cycle"] = billing_cycle
        data = {
            "reference": reference,
            "amount": amount,
            "currency": "USD",
            "status": status,
            "channel": "card",
            "metadata": json.dumps(metadata) if metadata_as_string else metadata,
            "customer": {"email": "buyer@example.com", "customer_code": customer_code},
            "authorization": {"authorization_code": "AUTH_test", "customer_code": customer_code},
        }
        if subscription_code:
            data["subscription"] = {"subscription_code": subscription_code}
        return {"event": event, "data": data}

    return _build


@pytest.fixture
def signed():
    """Serialize a payload and sign it the way the processor does."""
    from botbilling.features.billing.signature import compute_signature

    def _sign(payload, secret=WEBHOOK_SECRET, header="x-signature"):
        body = json.dumps(payload).encode("utf-8")
        return body, {header: compute_signature(body, secret), "content-type": "application/json"}

    return _sign


@pytest.fixture
def post_webhook(client, signed):
    def _post(payload, **kwargs):
        body, headers = signed(payload, **kwargs)
        return client.post("/api/billing/webhook", content=body, headers=headers)

    return _post


@pytest.fixture
def activate(fixed_now):
    """Drive a successful payment through the state machine; returns the PaymentOutcome."""
    from botbilling.features.billing.events import PaymentSignal
    from botbilling.features.billing.service import apply_payment_success

    counter = itertools.count(1)

    def _activate(user_id, plan_id, *, billing_cycle="monthly", subscription_code=None, now=None, reference=None):
        metadata = {"user_id": user_id, "plan_id": plan_id, "billing_cycle": billing_cycle}
        signal = PaymentSignal(
            reference=reference or f"sub_test_{user_id}_{next(counter)}",
            amount=Decimal("29.00"),
            currency="USD",
            status="success",
            user_id=user_id,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            subscription_code=subscription_code,
            customer_code="CUS_test",
            metadata=metadata,
        )
        return apply_payment_success(signal, now=now or fixed_now)

    return _activate
