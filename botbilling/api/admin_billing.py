"""
Admin-only billing operations router.

Requires a super admin for all endpoints.
Handles subscription listing/inspection, manual updates and the
period-end reconciliation run.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from botbilling.core.admin_auth import AdminActor, require_super_admin
from botbilling.features.billing.admin_service import (
    admin_update_subscription,
    get_subscription_detail,
    get_subscription_transactions,
    list_subscriptions,
)
from botbilling.features.billing.reconcile_job import run_reconcile_job

logger = logging.getLogger("botbilling.admin_billing")

router = APIRouter(prefix="/admin", tags=["admin-billing"])


@router.get("/subscriptions")
async def admin_list_subscriptions(
    status: Optional[str] = Query(None),
    plan_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: AdminActor = Depends(require_super_admin),
):
    return list_subscriptions(status=status, plan_id=plan_id, user_id=user_id, limit=limit, offset=offset)


@router.get("/subscriptions/{subscription_id}")
async def admin_get_subscription(subscription_id: str, actor: AdminActor = Depends(require_super_admin)):
    return get_subscription_detail(subscription_id)


@router.get("/subscriptions/{subscription_id}/transactions")
async def admin_subscription_transactions(subscription_id: str, actor: AdminActor = Depends(require_super_admin)):
    return {"data": get_subscription_transactions(subscription_id)}


@router.put("/subscriptions/{subscription_id}")
async def admin_put_subscription(
    subscription_id: str,
    payload: Dict[str, Any] = Body(...),
    actor: AdminActor = Depends(require_super_admin),
):
    return admin_update_subscription(subscription_id, payload, actor_id=actor.actor_id)


@router.post("/billing/reconcile")
async def admin_reconcile(actor: AdminActor = Depends(require_super_admin)):
    """Settle cancel-at-period-end subscriptions whose period has ended."""
    result = run_reconcile_job()
    logger.info("admin.reconcile", extra={"user_id": actor.actor_id, **result})
    return result
