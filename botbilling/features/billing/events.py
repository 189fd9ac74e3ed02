"""
Webhook event normalization.

Maps processor event names onto our event kinds and extracts the typed
PaymentSignal shared by the webhook and verify paths.
"""
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from botbilling.features.billing.provider import BillingWebhookError


logger = logging.getLogger(__name__)

BILLING_CYCLES = ("monthly", "yearly")
DEFAULT_BILLING_CYCLE = "monthly"


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment-succeeded"
    PAYMENT_FAILED = "payment-failed"
    SUBSCRIPTION_CREATED = "subscription-created"
    SUBSCRIPTION_DISABLED = "subscription-disabled"
    SUBSCRIPTION_NOT_RENEWING = "subscription-not-renewing"
    INVOICE_CREATED = "invoice-created"


PROCESSOR_EVENT_KINDS = {
    "charge.success": EventKind.PAYMENT_SUCCEEDED,
    "charge.failed": EventKind.PAYMENT_FAILED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
    "subscription.create": EventKind.SUBSCRIPTION_CREATED,
    "subscription.disable": EventKind.SUBSCRIPTION_DISABLED,
    "subscription.not_renew": EventKind.SUBSCRIPTION_NOT_RENEWING,
    "invoice.create": EventKind.INVOICE_CREATED,
}


@dataclass
class PaymentSignal:
    """Normalized view of a processor transaction or subscription object."""
    reference: Optional[str] = None
    amount: Decimal = Decimal("0.00")
    currency: Optional[str] = None
    status: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    billing_cycle: str = DEFAULT_BILLING_CYCLE
    subscription_code: Optional[str] = None
    customer_code: Optional[str] = None
    authorization_code: Optional[str] = None
    channel: Optional[str] = None
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BillingEvent:
    """Envelope for a verified webhook body."""
    processor_event: str
    kind: Optional[EventKind]
    data: Dict[str, Any]
    signal: PaymentSignal

    @property
    def recognized(self) -> bool:
        return self.kind is not None


def minor_to_major(amount: Any) -> Decimal:
    """Processor amounts arrive in minor units (cents/kobo)."""
    if amount is None or amount == "":
        return Decimal("0.00")
    try:
        return (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise BillingWebhookError(f"Invalid amount: {amount!r}")


def major_to_minor(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def _coerce_metadata(raw: Any) -> Dict[str, Any]:
    # The processor echoes metadata either as an object or a JSON string
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            decoded = json.loads(raw)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _nested(data: Dict[str, Any], *keys: str) -> Any:
    current: Any = data
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def extract_signal(data: Dict[str, Any]) -> PaymentSignal:
    """
    Build a PaymentSignal from a processor transaction/subscription object.

    Raises:
        BillingWebhookError: If the amount or billing cycle is malformed
    """
    metadata = _coerce_metadata(data.get("metadata"))

    billing_cycle = metadata.get("billing_cycle") or DEFAULT_BILLING_CYCLE
    if billing_cycle not in BILLING_CYCLES:
        raise BillingWebhookError(f"Invalid billing_cycle in metadata: {billing_cycle!r}")

    subscription_code = (
        _nested(data, "subscription", "subscription_code")
        or data.get("subscription_code")
    )
    customer_code = (
        _nested(data, "authorization", "customer_code")
        or _nested(data, "customer", "customer_code")
        or _nested(data, "subscription", "customer", "customer_code")
    )

    return PaymentSignal(
        reference=_str_or_none(data.get("reference")),
        amount=minor_to_major(data.get("amount")),
        currency=_str_or_none(data.get("currency")),
        status=_str_or_none(data.get("status")),
        user_id=_str_or_none(metadata.get("user_id")),
        plan_id=_str_or_none(metadata.get("plan_id")),
        billing_cycle=billing_cycle,
        subscription_code=_str_or_none(subscription_code),
        customer_code=_str_or_none(customer_code),
        authorization_code=_str_or_none(_nested(data, "authorization", "authorization_code")),
        channel=_str_or_none(data.get("channel")),
        email=_str_or_none(_nested(data, "customer", "email")),
        metadata=metadata,
    )


def parse_event(body: bytes) -> BillingEvent:
    """
    Parse a verified webhook body into a BillingEvent.

    Unrecognized processor events parse fine (kind=None) so the caller can
    acknowledge them.

    Raises:
        BillingWebhookError: If the body is not a JSON object with an "event" string
    """
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise BillingWebhookError("Webhook body is not valid JSON")

    if not isinstance(payload, dict):
        raise BillingWebhookError("Webhook body must be a JSON object")

    processor_event = payload.get("event")
    if not isinstance(processor_event, str) or not processor_event:
        raise BillingWebhookError("Webhook body is missing the event name")

    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise BillingWebhookError("Webhook data must be a JSON object")

    kind = PROCESSOR_EVENT_KINDS.get(processor_event)
    signal = extract_signal(data) if kind else PaymentSignal()
    return BillingEvent(processor_event=processor_event, kind=kind, data=data, signal=signal)
