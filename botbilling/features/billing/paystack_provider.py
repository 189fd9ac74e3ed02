"""
Paystack implementation of PaymentProvider.

Thin REST client over httpx. Every call returns the processor's `data`
object or raises BillingProviderError; callers decide whether a failure is
fatal (initiate, reactivate) or best-effort (cancel, recurring setup).
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from botbilling.core.config import settings
from botbilling.features.billing.provider import (
    BillingProviderError,
    CheckoutSession,
)


logger = logging.getLogger(__name__)


class PaystackProvider:
    """Paystack REST client."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key or settings.PAYSTACK_SECRET_KEY
        if not self.secret_key:
            raise BillingProviderError("PAYSTACK_SECRET_KEY not configured")
        self.base_url = (base_url or settings.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PAYSTACK_TIMEOUT_SECONDS
        self.transport = transport

    def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        missing_ok: bool = False,
    ) -> Optional[Dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, f"/{endpoint}", headers=headers, json=data)
        except httpx.HTTPError as e:
            logger.error("paystack.request_failed", extra={"path": endpoint, "error_code": "provider_unreachable"})
            raise BillingProviderError(f"Paystack request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if missing_ok and response.status_code == 404:
            return None
        if response.status_code >= 400 or not payload.get("status"):
            message = payload.get("message") or f"HTTP {response.status_code}"
            logger.warning(
                "paystack.request_rejected",
                extra={"path": endpoint, "status": response.status_code},
            )
            raise BillingProviderError(f"Paystack error: {message}")

        data_obj = payload.get("data")
        return data_obj if isinstance(data_obj, dict) else {}

    def ensure_customer(self, email: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        data = self._request("GET", f"customer/{quote(email)}", missing_ok=True)
        if not data:
            data = self._request("POST", "customer", {"email": email, "metadata": metadata or {}})
        code = data.get("customer_code")
        if not code:
            raise BillingProviderError(f"Paystack returned no customer_code for {email}")
        return code

    def ensure_plan(
        self,
        plan_code: str,
        name: str,
        interval: str,
        amount_minor: int,
        currency: str,
        description: Optional[str] = None,
    ) -> str:
        data = self._request("GET", f"plan/{plan_code}", missing_ok=True)
        if not data:
            logger.info("paystack.plan_created", extra={"plan_code": plan_code, "interval": interval})
            data = self._request("POST", "plan", {
                "name": name,
                "plan_code": plan_code,
                "interval": interval,
                "amount": amount_minor,
                "currency": currency,
                "description": description or f"{name} subscription plan",
            })
        code = data.get("plan_code")
        if not code:
            raise BillingProviderError(f"Paystack returned no plan_code for {plan_code}")
        return code

    def create_subscription(
        self,
        customer_code: str,
        plan_code: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        data = self._request("POST", "subscription", {
            "customer": customer_code,
            "plan": plan_code,
            "metadata": metadata or {},
        })
        if not data.get("subscription_code"):
            raise BillingProviderError("Paystack returned no subscription_code")
        return data

    def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        plan_code: Optional[str] = None,
    ) -> CheckoutSession:
        body: Dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "currency": currency,
            "metadata": metadata or {},
        }
        if callback_url:
            body["callback_url"] = callback_url
        if plan_code:
            body["plan"] = plan_code

        data = self._request("POST", "transaction/initialize", body)
        authorization_url = data.get("authorization_url")
        if not authorization_url:
            raise BillingProviderError("Paystack did not return an authorization_url")
        return CheckoutSession(
            authorization_url=authorization_url,
            access_code=data.get("access_code"),
            reference=data.get("reference") or reference,
        )

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        return self._request("GET", f"transaction/verify/{reference}")

    def fetch_subscription(self, code: str) -> Dict[str, Any]:
        return self._request("GET", f"subscription/{code}")

    def _email_token(self, code: str) -> str:
        # enable/disable need the subscription's email token
        data = self.fetch_subscription(code)
        token = data.get("email_token")
        if not token:
            raise BillingProviderError(f"No email token for subscription {code}")
        return token

    def disable_subscription(self, code: str) -> None:
        self._request("POST", "subscription/disable", {"code": code, "token": self._email_token(code)})

    def enable_subscription(self, code: str) -> None:
        self._request("POST", "subscription/enable", {"code": code, "token": self._email_token(code)})
