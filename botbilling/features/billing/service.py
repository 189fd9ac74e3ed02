"""
Billing service orchestrator.

Coordinates:
- Webhook processing (signature -> normalize -> delivery claim -> apply)
- The subscription state machine (activation, renewal, failure, disable)
- The synchronous verify path, which races the webhook on the same reference
- User cancel / reactivate

All Paystack-specific code is in paystack_provider.py.
"""
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from botbilling.core.config import settings
from botbilling.core.database import get_db_session, subscriptions, plans
from botbilling.core.errors import (
    ConflictError,
    NotFoundError,
    PaymentProviderError,
    PermissionError,
)
from botbilling.core.idempotency import (
    claim_delivery,
    delivery_key,
    mark_delivery_failed,
    mark_delivery_processed,
)
from botbilling.core.logging import log_event
from botbilling.features.billing.events import (
    BillingEvent,
    EventKind,
    PaymentSignal,
    extract_signal,
    parse_event,
)
from botbilling.features.billing.ledger import (
    append_ledger_entry,
    ensure_transaction,
    get_transaction_by_reference,
    link_transaction_subscription,
    mark_transaction_failed,
    mark_transaction_success,
)
from botbilling.features.billing.periods import as_utc, compute_period, utcnow
from botbilling.features.billing.paystack_provider import PaystackProvider
from botbilling.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    EventOutOfOrderError,
    PaymentProvider,
    UnmatchedPaymentError,
    WebhookSignatureError,
)
from botbilling.features.billing.signature import signature_from_headers, verify_signature
from botbilling.features.plans.service import get_plan, row_to_plan
from botbilling.models.subscription import UserSubscription


logger = logging.getLogger(__name__)

# Retries when a concurrent activation trips the one-active-per-user index
ACTIVATION_ATTEMPTS = 3

RENEWABLE_STATUSES = ("active", "past_due")


@dataclass
class PaymentOutcome:
    """What apply_payment_success did for one reference."""
    reference: str
    applied: bool
    duplicate: bool = False
    action: Optional[str] = None  # activated | renewed
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Paystack configured)."""
    return bool(settings.PAYSTACK_SECRET_KEY)


def get_provider() -> Optional[PaymentProvider]:
    """Get payment provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return PaystackProvider()
    except BillingProviderError:
        return None


# ---------------------------------------------------------------------------
# Subscription reads
# ---------------------------------------------------------------------------

def row_to_subscription(row) -> UserSubscription:
    return UserSubscription(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=row.status,
        billing_cycle=row.billing_cycle,
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        external_subscription_code=row.external_subscription_code,
        external_customer_code=row.external_customer_code,
        cancel_at_period_end=bool(row.cancel_at_period_end),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def get_subscription(subscription_id: str) -> Optional[UserSubscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
    return row_to_subscription(row) if row else None


def get_active_subscription(user_id: str) -> Optional[UserSubscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status == "active")
        ).first()
    return row_to_subscription(row) if row else None


def get_current_subscription(user_id: str) -> Dict[str, Any]:
    """
    Current subscription + plan for the billing page.

    Returns:
        {"subscription": dict | None, "plan": dict | None}
    """
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status == "active")
        ).first()
        plan_row = None
        if row is not None:
            plan_row = session.execute(
                select(plans).where(plans.c.id == row.plan_id)
            ).first()

    if row is None:
        return {"subscription": None, "plan": None}
    return {
        "subscription": row_to_subscription(row).model_dump(mode="json"),
        "plan": row_to_plan(plan_row).model_dump(mode="json") if plan_row else None,
    }


def _find_by_handle(session, code: Optional[str], statuses=RENEWABLE_STATUSES):
    if not code:
        return None
    return session.execute(
        select(subscriptions)
        .where(subscriptions.c.external_subscription_code == code)
        .where(subscriptions.c.status.in_(statuses))
        .order_by(subscriptions.c.created_at.desc())
    ).first()


# ---------------------------------------------------------------------------
# State machine: payment succeeded
# ---------------------------------------------------------------------------

def _supersede_active(session, user_id: str, *, keep_id: Optional[str], reference: Optional[str]) -> None:
    """Cancel the user's other active subscription(s) ahead of an activation."""
    query = (
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .where(subscriptions.c.status == "active")
    )
    if keep_id:
        query = query.where(subscriptions.c.id != keep_id)
    for prev in session.execute(query).fetchall():
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == prev.id)
            .where(subscriptions.c.status == "active")
            .values(status="cancelled")
        )
        append_ledger_entry(
            session,
            user_id=user_id,
            subscription_id=prev.id,
            action="superseded",
            from_status="active",
            to_status="cancelled",
            cancel_at_period_end=bool(prev.cancel_at_period_end),
            period_start=prev.current_period_start,
            period_end=prev.current_period_end,
            reference=reference,
        )


def _activate_new_subscription(
    session,
    *,
    user_id: str,
    plan_id: str,
    billing_cycle: str,
    signal: PaymentSignal,
    reference: str,
    now: datetime,
) -> str:
    _supersede_active(session, user_id, keep_id=None, reference=reference)

    start, end = compute_period(billing_cycle, now)
    subscription_id = session.execute(
        insert(subscriptions)
        .values(
            user_id=user_id,
            plan_id=plan_id,
            status="active",
            billing_cycle=billing_cycle,
            current_period_start=start,
            current_period_end=end,
            external_subscription_code=signal.subscription_code,
            external_customer_code=signal.customer_code,
            cancel_at_period_end=False,
        )
        .returning(subscriptions.c.id)
    ).scalar_one()

    append_ledger_entry(
        session,
        user_id=user_id,
        subscription_id=subscription_id,
        action="activated",
        from_status=None,
        to_status="active",
        period_start=start,
        period_end=end,
        reference=reference,
    )
    link_transaction_subscription(session, reference, subscription_id)
    return subscription_id


def _renew_subscription(session, sub, *, signal: PaymentSignal, reference: str) -> str:
    # Renewal anchors on the previous period end so periods chain without gaps
    start, end = compute_period(sub.billing_cycle, as_utc(sub.current_period_end))
    _supersede_active(session, sub.user_id, keep_id=sub.id, reference=reference)

    session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == sub.id)
        .values(
            status="active",
            current_period_start=start,
            current_period_end=end,
            cancel_at_period_end=False,
            external_customer_code=signal.customer_code or sub.external_customer_code,
        )
    )
    append_ledger_entry(
        session,
        user_id=sub.user_id,
        subscription_id=sub.id,
        action="renewed",
        from_status=sub.status,
        to_status="active",
        period_start=start,
        period_end=end,
        reference=reference,
    )
    link_transaction_subscription(session, reference, sub.id)
    return sub.id


def _raise_unmatched(signal: PaymentSignal, reason: str) -> None:
    log_event(
        "error",
        "billing.payment_unmatched",
        user_id=signal.user_id,
        reference=signal.reference,
        error_code=UnmatchedPaymentError.error_code,
        extra={"reason": reason, "plan_id": signal.plan_id, "subscription_code": signal.subscription_code},
    )
    raise UnmatchedPaymentError(f"Payment {signal.reference} cannot be matched: {reason}")


def apply_payment_success(
    signal: PaymentSignal,
    *,
    now: Optional[datetime] = None,
    source: str = "webhook",
) -> PaymentOutcome:
    """
    Apply a successful payment exactly once per reference.

    Both the webhook and the verify path call this. The transaction is
    ensured first (created on demand from metadata), then moved to success
    by a conditional update; only the writer that changes the row applies
    subscription side effects, in the same unit of work.

    Raises:
        BillingWebhookError: signal has no reference
        UnmatchedPaymentError: no handle match and no resolvable user/plan
        ConflictError: activation kept colliding with a concurrent one
    """
    if not signal.reference:
        raise BillingWebhookError("Payment event is missing the transaction reference")
    reference = signal.reference
    now = as_utc(now) if now else utcnow()

    existing = get_transaction_by_reference(reference)
    if existing is not None and existing.status == "success":
        log_event("info", "billing.payment.duplicate", reference=reference, extra={"source": source})
        return PaymentOutcome(reference=reference, applied=False, duplicate=True, user_id=existing.user_id)

    existing_meta = (existing._mapping["metadata"] or {}) if existing is not None else {}
    # Codes recorded at initiation fill in a first charge that carries none
    signal = replace(
        signal,
        subscription_code=signal.subscription_code
        or signal.metadata.get("subscription_code")
        or existing_meta.get("subscription_code"),
        customer_code=signal.customer_code
        or signal.metadata.get("customer_code")
        or existing_meta.get("customer_code"),
    )

    with get_db_session() as session:
        matched = _find_by_handle(session, signal.subscription_code)
    user_id = signal.user_id or (existing.user_id if existing is not None else None) or (matched.user_id if matched else None)
    plan_id = signal.plan_id or (existing.plan_id if existing is not None else None) or (matched.plan_id if matched else None)
    billing_cycle = (
        signal.metadata.get("billing_cycle")
        or existing_meta.get("billing_cycle")
        or signal.billing_cycle
    )

    if matched is None:
        if not user_id or not plan_id:
            _raise_unmatched(signal, "missing user_id or plan_id")
        if get_plan(plan_id) is None:
            _raise_unmatched(signal, f"unknown plan {plan_id}")

    txn = existing or ensure_transaction(
        replace(signal, user_id=user_id, plan_id=plan_id),
        settings.PAYMENT_CURRENCY,
    )
    if txn is None:
        _raise_unmatched(signal, "transaction could not be created")

    for attempt in range(1, ACTIVATION_ATTEMPTS + 1):
        try:
            with get_db_session() as session:
                won = mark_transaction_success(
                    session,
                    reference,
                    authorization_code=signal.authorization_code,
                    payment_method=signal.channel,
                )
                if not won:
                    # The other path (verify or webhook) got there first
                    log_event("info", "billing.payment.duplicate", reference=reference, extra={"source": source})
                    return PaymentOutcome(reference=reference, applied=False, duplicate=True, user_id=txn.user_id)

                sub = _find_by_handle(session, signal.subscription_code)
                if sub is not None:
                    subscription_id = _renew_subscription(session, sub, signal=signal, reference=reference)
                    action = "renewed"
                    user_id = sub.user_id
                else:
                    subscription_id = _activate_new_subscription(
                        session,
                        user_id=user_id,
                        plan_id=plan_id,
                        billing_cycle=billing_cycle,
                        signal=signal,
                        reference=reference,
                        now=now,
                    )
                    action = "activated"

            log_event(
                "info",
                f"billing.subscription.{action}",
                user_id=user_id,
                reference=reference,
                extra={"subscription_id": subscription_id, "source": source, "attempt": attempt},
            )
            return PaymentOutcome(
                reference=reference,
                applied=True,
                action=action,
                user_id=user_id,
                subscription_id=subscription_id,
            )
        except IntegrityError:
            logger.warning(
                "billing.activation.conflict",
                extra={"reference": reference, "user_id": user_id, "attempt": attempt},
            )

    raise ConflictError(f"Could not activate subscription for {reference} after {ACTIVATION_ATTEMPTS} attempts")


# ---------------------------------------------------------------------------
# State machine: other processor events
# ---------------------------------------------------------------------------

def apply_payment_failed(signal: PaymentSignal) -> Optional[str]:
    """pending transaction -> failed; active subscription -> past_due."""
    subscription_id = None
    with get_db_session() as session:
        if signal.reference:
            mark_transaction_failed(session, signal.reference)
        sub = _find_by_handle(session, signal.subscription_code, statuses=("active",))
        moved = sub is not None and session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == sub.id)
            .where(subscriptions.c.status == "active")
            .values(status="past_due")
        ).rowcount == 1
        if moved:
            append_ledger_entry(
                session,
                user_id=sub.user_id,
                subscription_id=sub.id,
                action="payment_failed",
                from_status="active",
                to_status="past_due",
                cancel_at_period_end=bool(sub.cancel_at_period_end),
                period_start=sub.current_period_start,
                period_end=sub.current_period_end,
                reference=signal.reference,
            )
            subscription_id = sub.id
    log_event(
        "warning",
        "billing.payment.failed",
        user_id=signal.user_id,
        reference=signal.reference,
        extra={"subscription_id": subscription_id},
    )
    return subscription_id


def _transition_by_handle(
    signal: PaymentSignal,
    *,
    from_statuses,
    to_status: str,
    action: str,
) -> Optional[str]:
    code = signal.subscription_code
    if not code:
        log_event("warning", f"billing.{action}.no_handle", event_kind=action)
        return None

    changed = None
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions)
            .where(subscriptions.c.external_subscription_code == code)
            .where(subscriptions.c.status.in_(from_statuses))
        ).fetchall()
        for sub in rows:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == sub.id)
                .where(subscriptions.c.status.in_(from_statuses))
                .values(status=to_status)
            )
            if result.rowcount != 1:
                # A concurrent delivery already moved this row
                continue
            append_ledger_entry(
                session,
                user_id=sub.user_id,
                subscription_id=sub.id,
                action=action,
                from_status=sub.status,
                to_status=to_status,
                cancel_at_period_end=bool(sub.cancel_at_period_end),
                period_start=sub.current_period_start,
                period_end=sub.current_period_end,
            )
            changed = sub.id

    if changed is None:
        log_event("info", f"billing.{action}.no_match", extra={"subscription_code": code})
    return changed


def apply_subscription_disabled(signal: PaymentSignal) -> Optional[str]:
    """any -> cancelled. Unknown handle is a no-op."""
    return _transition_by_handle(
        signal,
        from_statuses=("active", "past_due", "expired"),
        to_status="cancelled",
        action="subscription_disabled",
    )


def apply_subscription_not_renewing(signal: PaymentSignal) -> Optional[str]:
    """active -> expired."""
    return _transition_by_handle(
        signal,
        from_statuses=("active",),
        to_status="expired",
        action="subscription_not_renewing",
    )


def apply_subscription_created(signal: PaymentSignal) -> Optional[str]:
    """
    Attach the processor's subscription handle to the user's active subscription.

    Raises:
        EventOutOfOrderError: the user is known but has no active subscription
            yet (the payment event has not landed); the processor retries
    """
    code = signal.subscription_code
    if not code:
        log_event("warning", "billing.subscription_created.no_handle")
        return None

    with get_db_session() as session:
        if _find_by_handle(session, code) is not None:
            return None  # already attached

        query = select(subscriptions).where(subscriptions.c.status == "active")
        if signal.user_id:
            query = query.where(subscriptions.c.user_id == signal.user_id)
        elif signal.customer_code:
            query = query.where(subscriptions.c.external_customer_code == signal.customer_code)
        else:
            query = None
        sub = session.execute(query).first() if query is not None else None

        if sub is None:
            if signal.user_id:
                log_event(
                    "warning",
                    "billing.subscription_created.out_of_order",
                    user_id=signal.user_id,
                    error_code=EventOutOfOrderError.error_code,
                    extra={"subscription_code": code},
                )
                raise EventOutOfOrderError(
                    f"No active subscription for user {signal.user_id} to attach {code} to"
                )
            log_event("info", "billing.subscription_created.no_user", extra={"subscription_code": code})
            return None

        session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == sub.id)
            .values(
                external_subscription_code=code,
                external_customer_code=signal.customer_code or sub.external_customer_code,
            )
        )
        append_ledger_entry(
            session,
            user_id=sub.user_id,
            subscription_id=sub.id,
            action="handle_attached",
            from_status="active",
            to_status="active",
            cancel_at_period_end=bool(sub.cancel_at_period_end),
            period_start=sub.current_period_start,
            period_end=sub.current_period_end,
        )
    return sub.id


# ---------------------------------------------------------------------------
# Webhook entry point
# ---------------------------------------------------------------------------

def dispatch_event(event: BillingEvent, *, now: Optional[datetime] = None) -> BillingWebhookResult:
    signal = event.signal
    result = BillingWebhookResult(
        event_kind=event.kind.value,
        processor_event=event.processor_event,
        applied=False,
        reference=signal.reference,
        user_id=signal.user_id,
    )

    if event.kind == EventKind.PAYMENT_SUCCEEDED:
        outcome = apply_payment_success(signal, now=now, source="webhook")
        result.applied = outcome.applied
        result.duplicate = outcome.duplicate
        result.user_id = outcome.user_id
        result.subscription_id = outcome.subscription_id
    elif event.kind == EventKind.PAYMENT_FAILED:
        result.subscription_id = apply_payment_failed(signal)
        result.applied = True
    elif event.kind == EventKind.SUBSCRIPTION_CREATED:
        result.subscription_id = apply_subscription_created(signal)
        result.applied = result.subscription_id is not None
    elif event.kind == EventKind.SUBSCRIPTION_DISABLED:
        result.subscription_id = apply_subscription_disabled(signal)
        result.applied = result.subscription_id is not None
    elif event.kind == EventKind.SUBSCRIPTION_NOT_RENEWING:
        result.subscription_id = apply_subscription_not_renewing(signal)
        result.applied = result.subscription_id is not None
    elif event.kind == EventKind.INVOICE_CREATED:
        # Informational: the charge outcome arrives as its own event
        log_event("info", "billing.invoice.created", reference=signal.reference, event_kind=event.kind.value)

    return result


def process_webhook_event(
    headers: Mapping[str, str],
    body: bytes,
    *,
    now: Optional[datetime] = None,
) -> BillingWebhookResult:
    """
    Process a processor webhook (idempotent).

    1. Verify signature over the raw body
    2. Normalize the event
    3. Claim the delivery (skip if already processed)
    4. Apply state changes
    5. Mark the delivery processed (or failed, then re-raise)

    Raises:
        WebhookSignatureError: missing/invalid signature (payload never parsed)
        BillingWebhookError: malformed payload
        UnmatchedPaymentError / EventOutOfOrderError: processing faults (retried)
    """
    signature = signature_from_headers(headers)
    if not verify_signature(body, signature, settings.webhook_secret):
        log_event("warning", "billing.webhook.bad_signature", error_code="webhook_signature_invalid")
        raise WebhookSignatureError("Invalid webhook signature")

    event = parse_event(body)
    if not event.recognized:
        log_event("info", "billing.webhook.ignored", extra={"processor_event": event.processor_event})
        return BillingWebhookResult(event_kind="unrecognized", processor_event=event.processor_event, applied=False)

    key = delivery_key(body)
    if not claim_delivery(key, event.processor_event):
        log_event("info", "billing.webhook.duplicate_delivery", event_kind=event.kind.value)
        return BillingWebhookResult(
            event_kind=event.kind.value,
            processor_event=event.processor_event,
            applied=False,
            duplicate=True,
            reference=event.signal.reference,
        )

    try:
        result = dispatch_event(event, now=now)
    except Exception as e:
        mark_delivery_failed(key, f"{type(e).__name__}: {e}")
        raise

    mark_delivery_processed(key)
    log_event(
        "info",
        "billing.webhook.processed",
        user_id=result.user_id,
        reference=result.reference,
        event_kind=result.event_kind,
        extra={"applied": result.applied, "duplicate": result.duplicate},
    )
    return result


# ---------------------------------------------------------------------------
# Verify path
# ---------------------------------------------------------------------------

def _require_provider() -> PaymentProvider:
    provider = get_provider()
    if provider is None:
        raise PaymentProviderError("Payment processing is not configured")
    return provider


def verify_payment(user_id: str, reference: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Verify a payment with the processor and apply it if successful.

    Converges with the webhook: whichever path arrives second is a no-op.

    Raises:
        NotFoundError: the reference belongs to another user
        PaymentProviderError: processing not configured
    """
    local = get_transaction_by_reference(reference)
    if local is not None and local.user_id != user_id:
        raise NotFoundError("Transaction not found")

    provider = _require_provider()
    try:
        data = provider.verify_transaction(reference)
    except BillingProviderError as e:
        log_event("warning", "billing.verify.provider_error", user_id=user_id, reference=reference)
        return {
            "verified": False,
            "success": False,
            "status": None,
            "message": str(e) or "Failed to verify payment",
            "data": None,
        }

    try:
        signal = extract_signal(data)
    except BillingWebhookError as e:
        raise PaymentProviderError(f"Unexpected verification payload: {e}")
    if signal.user_id and signal.user_id != user_id:
        raise NotFoundError("Transaction not found")
    if not signal.reference:
        signal = replace(signal, reference=reference)

    is_successful = signal.status == "success"
    if is_successful:
        apply_payment_success(replace(signal, user_id=signal.user_id or user_id), now=now, source="verify")

    return {
        "verified": True,
        "success": is_successful,
        "status": signal.status,
        "message": "Payment verified successfully" if is_successful else "Payment verification failed",
        "data": {
            "reference": signal.reference,
            "amount": float(signal.amount),
            "currency": signal.currency,
            "status": signal.status,
        },
    }


# ---------------------------------------------------------------------------
# User cancel / reactivate
# ---------------------------------------------------------------------------

def _owned_subscription(user_id: str, subscription_id: str) -> UserSubscription:
    sub = get_subscription(subscription_id)
    if sub is None:
        raise NotFoundError("Subscription not found")
    if sub.user_id != user_id:
        raise PermissionError("Access denied")
    return sub


def get_subscription_status(user_id: str, subscription_id: str) -> Dict[str, Any]:
    """Local subscription plus the processor's view when it has a handle."""
    sub = _owned_subscription(user_id, subscription_id)
    payload: Dict[str, Any] = {"subscription": sub.model_dump(mode="json"), "processor_status": None}
    if not sub.external_subscription_code:
        payload["message"] = "This subscription does not have auto-renewal enabled"
        return payload

    provider = get_provider()
    if provider is None:
        payload["message"] = "Payment processing is not configured"
        return payload
    try:
        payload["processor_status"] = provider.fetch_subscription(sub.external_subscription_code)
    except BillingProviderError as e:
        payload["message"] = str(e)
    return payload


def cancel_subscription(user_id: str, subscription_id: str) -> Dict[str, Any]:
    """
    Cancel at period end.

    The processor disable is best effort: a failure is logged and the local
    flag is still set.
    """
    sub = _owned_subscription(user_id, subscription_id)
    if sub.status != "active":
        raise ConflictError("Only active subscriptions can be cancelled")

    if sub.external_subscription_code:
        provider = get_provider()
        if provider is None:
            log_event("warning", "billing.cancel.provider_unavailable", user_id=user_id)
        else:
            try:
                provider.disable_subscription(sub.external_subscription_code)
            except BillingProviderError as e:
                log_event(
                    "warning",
                    "billing.cancel.provider_failed",
                    user_id=user_id,
                    error_code="payment_provider_error",
                    extra={"subscription_id": sub.id, "error": e},
                )

    if not sub.cancel_at_period_end:
        with get_db_session() as session:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == sub.id)
                .values(cancel_at_period_end=True)
            )
            append_ledger_entry(
                session,
                user_id=sub.user_id,
                subscription_id=sub.id,
                action="cancel_requested",
                from_status=sub.status,
                to_status=sub.status,
                cancel_at_period_end=True,
                period_start=sub.current_period_start,
                period_end=sub.current_period_end,
            )
        log_event("info", "billing.subscription.cancel_requested", user_id=user_id, extra={"subscription_id": sub.id})

    return {
        "success": True,
        "message": "Subscription will be cancelled at the end of the current billing period",
        "subscription": get_subscription(sub.id).model_dump(mode="json"),
    }


def reactivate_subscription(user_id: str, subscription_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Undo a cancellation while the paid period lasts.

    Eligible: active with cancel-at-period-end set, or cancelled with the
    period still running. The processor enable must succeed.

    Raises:
        ConflictError: not eligible, or another subscription is already active
        PaymentProviderError: the processor refused or is unreachable
    """
    sub = _owned_subscription(user_id, subscription_id)
    now = as_utc(now) if now else utcnow()

    eligible = (
        (sub.status == "active" and sub.cancel_at_period_end)
        or (sub.status == "cancelled" and sub.current_period_end > now)
    )
    if not eligible:
        raise ConflictError("Subscription cannot be reactivated")

    if sub.external_subscription_code:
        provider = _require_provider()
        try:
            provider.enable_subscription(sub.external_subscription_code)
        except BillingProviderError as e:
            log_event(
                "warning",
                "billing.reactivate.provider_failed",
                user_id=user_id,
                error_code="payment_provider_error",
                extra={"subscription_id": sub.id},
            )
            raise PaymentProviderError(str(e) or "Failed to reactivate subscription")

    try:
        with get_db_session() as session:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == sub.id)
                .values(status="active", cancel_at_period_end=False)
            )
            append_ledger_entry(
                session,
                user_id=sub.user_id,
                subscription_id=sub.id,
                action="reactivated",
                from_status=sub.status,
                to_status="active",
                cancel_at_period_end=False,
                period_start=sub.current_period_start,
                period_end=sub.current_period_end,
            )
    except IntegrityError:
        raise ConflictError("Another subscription is already active for this user")

    log_event("info", "billing.subscription.reactivated", user_id=user_id, extra={"subscription_id": sub.id})
    return {
        "success": True,
        "message": "Subscription reactivated successfully",
        "subscription": get_subscription(sub.id).model_dump(mode="json"),
    }
