"""
Payment initiation.

Sets up the processor-side customer, plan and recurring subscription (best
effort), creates the pending transaction (the reconciliation anchor) carrying
those codes, then calls the processor with the same reference and hands back
the hosted checkout URL.
"""
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse
from uuid import uuid4

from botbilling.core.config import settings
from botbilling.core.database import get_db_session
from botbilling.core.errors import (
    NotFoundError,
    PaymentProviderError,
    ValidationError,
)
from botbilling.core.logging import log_event
from botbilling.features.billing.events import BILLING_CYCLES, major_to_minor
from botbilling.features.billing.ledger import create_pending_transaction
from botbilling.features.billing.provider import BillingProviderError
from botbilling.features.billing import service as billing_service
from botbilling.features.plans.service import get_plan


logger = logging.getLogger(__name__)

PLAN_INTERVALS = {"monthly": "monthly", "yearly": "annually"}


def generate_reference(prefix: str = "sub") -> str:
    """Globally unique, sortable-ish reference: sub_<epoch ms>_<random>."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid4().hex[:10]}"


def processor_plan_code(plan_name: str, billing_cycle: str) -> str:
    """Deterministic processor plan code: 'Pro Plus' + yearly -> 'pro_plus_yearly'."""
    return f"{'_'.join(plan_name.lower().split())}_{billing_cycle}"


def _setup_recurring(
    provider,
    *,
    user_id: str,
    email: str,
    plan,
    billing_cycle: str,
    metadata: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Create the processor-side customer, plan and subscription.

    Returns whatever codes were obtained. A processor failure is logged and
    the checkout continues; the payment itself still activates locally.
    """
    codes: Dict[str, Any] = {}
    step = "customer"
    try:
        codes["customer_code"] = provider.ensure_customer(email, metadata={"user_id": user_id})
        step = "plan"
        codes["plan_code"] = provider.ensure_plan(
            processor_plan_code(plan.name, billing_cycle),
            name=f"{plan.name} ({billing_cycle})",
            interval=PLAN_INTERVALS[billing_cycle],
            amount_minor=major_to_minor(plan.price_for_cycle(billing_cycle)),
            currency=settings.PAYMENT_CURRENCY,
            description=plan.description,
        )
        step = "subscription"
        subscription = provider.create_subscription(
            codes["customer_code"],
            codes["plan_code"],
            metadata=dict(metadata),
        )
        codes["subscription_code"] = subscription.get("subscription_code")
    except BillingProviderError as e:
        log_event(
            "warning",
            "billing.initiate.subscription_setup_failed",
            user_id=user_id,
            error_code="payment_provider_error",
            extra={"step": step, "error": e},
        )
    return codes


def _validate_callback_url(callback_url: Optional[str]) -> Optional[str]:
    if not callback_url:
        return settings.PAYMENT_CALLBACK_URL
    parsed = urlparse(callback_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("callback_url must be an absolute http(s) URL")
    return callback_url


def initiate_payment(
    user_id: str,
    email: Optional[str],
    plan_id: str,
    billing_cycle: str,
    callback_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Start a checkout for plan_id on billing_cycle.

    Returns:
        {"authorization_url", "reference", "access_code"}

    Raises:
        ValidationError: bad cycle, bad callback URL, free plan or missing email
        NotFoundError: plan missing or inactive
        PaymentProviderError: processor not configured or call failed; the
            pending transaction stays behind, reconcilable by reference
    """
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError("billing_cycle must be 'monthly' or 'yearly'")
    callback = _validate_callback_url(callback_url)

    plan = get_plan(plan_id)
    if plan is None or not plan.is_active:
        raise NotFoundError("Plan not found or inactive")

    amount = plan.price_for_cycle(billing_cycle)
    if amount <= 0:
        raise ValidationError("This plan is free and does not require payment")
    if not email:
        raise ValidationError("An email address is required to start a payment")

    provider = billing_service.get_provider()
    if provider is None:
        raise PaymentProviderError("Payment processing is not configured")

    reference = generate_reference()
    metadata = {
        "user_id": user_id,
        "plan_id": plan.id,
        "billing_cycle": billing_cycle,
        "plan_name": plan.name,
    }
    currency = settings.PAYMENT_CURRENCY

    codes = _setup_recurring(
        provider,
        user_id=user_id,
        email=email,
        plan=plan,
        billing_cycle=billing_cycle,
        metadata=metadata,
    )
    metadata.update(codes)
    metadata["is_subscription"] = bool(codes.get("subscription_code"))

    with get_db_session() as session:
        create_pending_transaction(
            session,
            user_id=user_id,
            plan_id=plan.id,
            amount=amount,
            currency=currency,
            reference=reference,
            metadata=metadata,
        )

    try:
        checkout = provider.initialize_transaction(
            email=email,
            amount_minor=major_to_minor(amount),
            reference=reference,
            currency=currency,
            callback_url=callback,
            metadata=metadata,
            # Without our own subscription, let the processor subscribe on first charge
            plan_code=None if metadata["is_subscription"] else codes.get("plan_code"),
        )
    except BillingProviderError as e:
        log_event(
            "error",
            "billing.initiate.provider_failed",
            user_id=user_id,
            reference=reference,
            error_code="payment_provider_error",
            extra={"error": e},
        )
        raise PaymentProviderError(str(e) or "Failed to initialize payment")

    log_event(
        "info",
        "billing.initiate.created",
        user_id=user_id,
        reference=reference,
        extra={"plan_id": plan.id, "billing_cycle": billing_cycle},
    )
    return {
        "authorization_url": checkout.authorization_url,
        "reference": reference,
        "access_code": checkout.access_code,
    }
