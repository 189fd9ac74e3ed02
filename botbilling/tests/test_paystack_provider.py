"""Paystack REST client, exercised against an in-process httpx transport."""
import json

import httpx
import pytest

from botbilling.features.billing.paystack_provider import PaystackProvider
from botbilling.features.billing.provider import BillingProviderError


def _provider(handler):
    return PaystackProvider(secret_key="sk_test_unit", base_url="https://paystack.test", transport=httpx.MockTransport(handler))


def test_requires_secret_key(monkeypatch):
    from botbilling.core.config import settings

    monkeypatch.setattr(settings, "PAYSTACK_SECRET_KEY", None)
    with pytest.raises(BillingProviderError):
        PaystackProvider()


def test_initialize_transaction_sends_minor_units():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "status": True,
            "data": {"authorization_url": "https://checkout.paystack.com/x", "access_code": "x", "reference": "sub_1"},
        })

    checkout = _provider(handler).initialize_transaction(
        email="a@b.co", amount_minor=2900, reference="sub_1", currency="USD",
        callback_url="https://app.example.com/cb", metadata={"plan_id": "p"},
    )
    assert checkout.authorization_url == "https://checkout.paystack.com/x"
    assert seen["path"] == "/transaction/initialize"
    assert seen["auth"] == "Bearer sk_test_unit"
    assert seen["body"]["amount"] == 2900
    assert seen["body"]["callback_url"] == "https://app.example.com/cb"
    assert seen["body"]["metadata"] == {"plan_id": "p"}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, json={"status": False, "message": "Invalid key"}),
        httpx.Response(200, json={"status": False, "message": "Duplicate reference"}),
        httpx.Response(500, text="<html>oops</html>"),
    ],
)
def test_processor_rejections_raise(response):
    with pytest.raises(BillingProviderError):
        _provider(lambda request: response).verify_transaction("sub_1")


def test_network_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BillingProviderError):
        _provider(handler).verify_transaction("sub_1")


def test_missing_authorization_url_raises():
    handler = lambda request: httpx.Response(200, json={"status": True, "data": {}})  # noqa: E731
    with pytest.raises(BillingProviderError):
        _provider(handler).initialize_transaction(email="a@b.co", amount_minor=100, reference="r", currency="USD")


def test_disable_fetches_email_token_first():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path, request.content))
        if request.method == "GET":
            return httpx.Response(200, json={"status": True, "data": {"email_token": "tok_1"}})
        return httpx.Response(200, json={"status": True, "message": "Subscription disabled successfully"})

    _provider(handler).disable_subscription("SUB_1")
    assert [(m, p) for m, p, _ in calls] == [("GET", "/subscription/SUB_1"), ("POST", "/subscription/disable")]
    assert json.loads(calls[1][2]) == {"code": "SUB_1", "token": "tok_1"}


def test_enable_without_email_token_raises():
    handler = lambda request: httpx.Response(200, json={"status": True, "data": {}})  # noqa: E731
    with pytest.raises(BillingProviderError):
        _provider(handler).enable_subscription("SUB_1")


def test_ensure_customer_reuses_existing():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        return httpx.Response(200, json={"status": True, "data": {"customer_code": "CUS_existing"}})

    assert _provider(handler).ensure_customer("a@b.co") == "CUS_existing"
    assert [m for m, _ in calls] == ["GET"]
    assert calls[0][1].startswith("/customer/")


def test_ensure_customer_creates_when_missing():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path, request.content))
        if request.method == "GET":
            return httpx.Response(404, json={"status": False, "message": "Customer not found"})
        return httpx.Response(200, json={"status": True, "data": {"customer_code": "CUS_new"}})

    code = _provider(handler).ensure_customer("a@b.co", metadata={"user_id": "u1"})
    assert code == "CUS_new"
    assert [(m, p) for m, p, _ in calls][1] == ("POST", "/customer")
    assert json.loads(calls[1][2]) == {"email": "a@b.co", "metadata": {"user_id": "u1"}}


def test_ensure_plan_creates_with_interval_and_minor_amount():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path, request.content))
        if request.method == "GET":
            return httpx.Response(404, json={"status": False, "message": "Plan not found"})
        return httpx.Response(200, json={"status": True, "data": {"plan_code": "PLN_abc"}})

    code = _provider(handler).ensure_plan(
        "pro_yearly", name="Pro (yearly)", interval="annually", amount_minor=29000, currency="USD",
    )
    assert code == "PLN_abc"
    assert [(m, p) for m, p, _ in calls] == [("GET", "/plan/pro_yearly"), ("POST", "/plan")]
    body = json.loads(calls[1][2])
    assert body["interval"] == "annually"
    assert body["amount"] == 29000
    assert body["plan_code"] == "pro_yearly"
    assert body["description"] == "Pro (yearly) subscription plan"


def test_ensure_plan_lookup_failure_is_not_treated_as_missing():
    handler = lambda request: httpx.Response(401, json={"status": False, "message": "Invalid key"})  # noqa: E731
    with pytest.raises(BillingProviderError):
        _provider(handler).ensure_plan("pro_monthly", name="Pro (monthly)", interval="monthly", amount_minor=2900, currency="USD")


def test_create_subscription_posts_customer_and_plan():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": True, "data": {"subscription_code": "SUB_1", "email_token": "tok"}})

    data = _provider(handler).create_subscription("CUS_1", "PLN_1", metadata={"user_id": "u1"})
    assert data["subscription_code"] == "SUB_1"
    assert seen["path"] == "/subscription"
    assert seen["body"] == {"customer": "CUS_1", "plan": "PLN_1", "metadata": {"user_id": "u1"}}


def test_create_subscription_rejection_raises():
    handler = lambda request: httpx.Response(400, json={"status": False, "message": "No active authorization"})  # noqa: E731
    with pytest.raises(BillingProviderError):
        _provider(handler).create_subscription("CUS_1", "PLN_1")


def test_initialize_transaction_passes_plan():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": True, "data": {"authorization_url": "https://checkout.paystack.com/y"}})

    _provider(handler).initialize_transaction(
        email="a@b.co", amount_minor=2900, reference="sub_2", currency="USD", plan_code="PLN_1",
    )
    assert seen["body"]["plan"] == "PLN_1"
