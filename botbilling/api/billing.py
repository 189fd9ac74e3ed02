"""
Billing API routes.

Surface:
- POST /api/billing/webhook: Handle Paystack webhooks (signature-verified)
- POST /api/billing/initiate: Start a hosted checkout
- POST /api/billing/verify: Verify a payment by reference
- GET  /api/billing/subscription: Current subscription + plan
- GET  /api/billing/subscriptions/{id}: Subscription + processor status
- POST /api/billing/subscriptions/{id}/cancel: Cancel at period end
- POST /api/billing/subscriptions/{id}/reactivate: Undo a cancellation
- GET  /api/billing/entitlements: Resolved entitlement bundle
- GET  /api/billing/transactions: Caller's payment history
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from botbilling.core.auth import AuthUser, get_current_user
from botbilling.core.errors import ValidationError
from botbilling.core.rate_limit import enforce_initiate_rate_limit
from botbilling.features.billing.initiator import initiate_payment
from botbilling.features.billing.ledger import list_transactions_for_user
from botbilling.features.billing.provider import (
    BillingWebhookError,
    EventOutOfOrderError,
    UnmatchedPaymentError,
    WebhookSignatureError,
)
from botbilling.features.billing.service import (
    cancel_subscription,
    get_current_subscription,
    get_subscription_status,
    process_webhook_event,
    reactivate_subscription,
    verify_payment,
)
from botbilling.features.entitlements.service import resolve_entitlements


router = APIRouter(prefix="/billing", tags=["billing"])


class InitiateRequest(BaseModel):
    """Request to start a checkout."""
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    callback_url: Optional[str] = None


class InitiateResponse(BaseModel):
    """Hosted checkout handle."""
    authorization_url: str
    reference: str
    access_code: Optional[str] = None


class VerifyRequest(BaseModel):
    """Request to verify a payment."""
    reference: Optional[str] = None


@router.post("/webhook")
async def billing_webhook(request: Request):
    """
    Handle Paystack webhook.

    Headers:
        x-signature (or x-paystack-signature): HMAC-SHA512 of the raw body

    Returns:
        {"received": true} for applied, duplicate and ignored events

    Errors:
        401: Signature missing or invalid (payload never parsed)
        400: Malformed payload
        500: Processing fault (processor retries)
    """
    body = await request.body()

    try:
        result = process_webhook_event(request.headers, body)
    except WebhookSignatureError:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except (UnmatchedPaymentError, EventOutOfOrderError) as e:
        raise HTTPException(status_code=500, detail=str(e))
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"received": True, "applied": result.applied, "duplicate": result.duplicate}


@router.post("/initiate", response_model=InitiateResponse)
async def create_payment(payload: InitiateRequest, user: AuthUser = Depends(enforce_initiate_rate_limit)):
    """
    Start a Paystack checkout for a plan.

    Errors:
        400: Invalid cycle / callback URL, free plan, missing email
        404: Plan missing or inactive
        429: More than 10 initiations per minute
        502: Processor failure (pending transaction kept for reconciliation)
    """
    if not payload.plan_id or not payload.billing_cycle:
        raise ValidationError("plan_id and billing_cycle are required")
    return initiate_payment(
        user_id=user.user_id,
        email=user.email,
        plan_id=payload.plan_id,
        billing_cycle=payload.billing_cycle,
        callback_url=payload.callback_url,
    )


@router.post("/verify")
async def verify(payload: VerifyRequest, user: AuthUser = Depends(get_current_user)):
    """Verify a payment with the processor; applies it if the webhook has not."""
    if not payload.reference:
        raise ValidationError("reference is required")
    return verify_payment(user.user_id, payload.reference)


@router.get("/subscription")
async def current_subscription(user: AuthUser = Depends(get_current_user)):
    return get_current_subscription(user.user_id)


@router.get("/subscriptions/{subscription_id}")
async def subscription_status(subscription_id: str, user: AuthUser = Depends(get_current_user)):
    return get_subscription_status(user.user_id, subscription_id)


@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel(subscription_id: str, user: AuthUser = Depends(get_current_user)):
    return cancel_subscription(user.user_id, subscription_id)


@router.post("/subscriptions/{subscription_id}/reactivate")
async def reactivate(subscription_id: str, user: AuthUser = Depends(get_current_user)):
    return reactivate_subscription(user.user_id, subscription_id)


@router.get("/entitlements")
async def entitlements(user: AuthUser = Depends(get_current_user)):
    return resolve_entitlements(user.user_id).to_dict()


@router.get("/transactions")
async def transactions(user: AuthUser = Depends(get_current_user)):
    return {"data": list_transactions_for_user(user.user_id)}
