"""
Admin plan catalog router.

All endpoints require a super admin. Validation is fail-closed: an invalid
payload is rejected before anything is written.
"""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Query

from botbilling.core.admin_auth import AdminActor, require_super_admin
from botbilling.core.errors import NotFoundError
from botbilling.features.plans.service import (
    create_plan,
    deactivate_plan,
    get_plan,
    list_plans,
    update_plan,
)


router = APIRouter(prefix="/admin/plans", tags=["admin-plans"])


@router.get("")
async def admin_list_plans(
    include_inactive: bool = Query(True),
    actor: AdminActor = Depends(require_super_admin),
):
    return {"data": [p.model_dump(mode="json") for p in list_plans(include_inactive=include_inactive)]}


@router.post("", status_code=201)
async def admin_create_plan(
    payload: Dict[str, Any] = Body(...),
    actor: AdminActor = Depends(require_super_admin),
):
    return create_plan(payload).model_dump(mode="json")


@router.get("/{plan_id}")
async def admin_get_plan(plan_id: str, actor: AdminActor = Depends(require_super_admin)):
    plan = get_plan(plan_id)
    if plan is None:
        raise NotFoundError("Plan not found")
    return plan.model_dump(mode="json")


@router.put("/{plan_id}")
async def admin_update_plan(
    plan_id: str,
    payload: Dict[str, Any] = Body(...),
    actor: AdminActor = Depends(require_super_admin),
):
    return update_plan(plan_id, payload).model_dump(mode="json")


@router.delete("/{plan_id}")
async def admin_deactivate_plan(plan_id: str, actor: AdminActor = Depends(require_super_admin)):
    """Soft delete: flips is_active, refused while active subscriptions reference the plan."""
    return deactivate_plan(plan_id).model_dump(mode="json")
