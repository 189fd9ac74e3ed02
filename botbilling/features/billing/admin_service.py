"""
Admin billing operations service.

Handles:
- Subscription listing with filters
- Subscription lookup + transaction history
- Manual subscription updates (recorded in the subscription ledger)
"""
from typing import Any, Dict, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

from botbilling.core.database import get_db_session, subscriptions, plans
from botbilling.core.errors import ConflictError, NotFoundError, ValidationError
from botbilling.core.logging import log_event
from botbilling.features.billing.events import BILLING_CYCLES
from botbilling.features.billing.ledger import append_ledger_entry, list_transactions_for_subscription
from botbilling.features.billing.service import row_to_subscription
from botbilling.features.plans.service import get_plan
from botbilling.models.subscription import SUBSCRIPTION_STATUSES


ADMIN_UPDATABLE_FIELDS = ("status", "plan_id", "billing_cycle", "cancel_at_period_end")
MAX_PAGE_SIZE = 200


def _with_plan(row, plan_row) -> Dict[str, Any]:
    data = row_to_subscription(row).model_dump(mode="json")
    data["plan"] = (
        {
            "id": plan_row.id,
            "name": plan_row.name,
            "price_monthly": str(plan_row.price_monthly),
            "price_yearly": str(plan_row.price_yearly),
        }
        if plan_row
        else None
    )
    return data


def list_subscriptions(
    status: Optional[str] = None,
    plan_id: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    if status and status not in SUBSCRIPTION_STATUSES:
        raise ValidationError("Invalid status")
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)

    filters = []
    if status:
        filters.append(subscriptions.c.status == status)
    if plan_id:
        filters.append(subscriptions.c.plan_id == plan_id)
    if user_id:
        filters.append(subscriptions.c.user_id == user_id)

    count_query = select(func.count()).select_from(subscriptions)
    rows_query = select(subscriptions)
    for condition in filters:
        count_query = count_query.where(condition)
        rows_query = rows_query.where(condition)

    with get_db_session() as session:
        count = session.execute(count_query).scalar_one()
        rows = session.execute(
            rows_query
            .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id)
            .limit(limit)
            .offset(offset)
        ).fetchall()
        plan_ids = {r.plan_id for r in rows}
        plan_rows = {
            p.id: p
            for p in session.execute(select(plans).where(plans.c.id.in_(plan_ids))).fetchall()
        } if plan_ids else {}

    return {"data": [_with_plan(r, plan_rows.get(r.plan_id)) for r in rows], "count": count}


def get_subscription_detail(subscription_id: str) -> Dict[str, Any]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
        if row is None:
            raise NotFoundError("Subscription not found")
        plan_row = session.execute(select(plans).where(plans.c.id == row.plan_id)).first()
    return _with_plan(row, plan_row)


def get_subscription_transactions(subscription_id: str):
    get_subscription_detail(subscription_id)
    return list_transactions_for_subscription(subscription_id)


def admin_update_subscription(subscription_id: str, payload: Dict[str, Any], actor_id: str) -> Dict[str, Any]:
    """
    Update status / plan / billing cycle / cancel flag.

    Raises:
        ValidationError: invalid values or nothing to update
        NotFoundError: unknown subscription
        ConflictError: activating while the user has another active subscription
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")
    changes = {k: payload[k] for k in ADMIN_UPDATABLE_FIELDS if k in payload}
    if not changes:
        raise ValidationError(f"Provide at least one of: {', '.join(ADMIN_UPDATABLE_FIELDS)}")
    if "status" in changes and changes["status"] not in SUBSCRIPTION_STATUSES:
        raise ValidationError("Invalid status")
    if "billing_cycle" in changes and changes["billing_cycle"] not in BILLING_CYCLES:
        raise ValidationError("Invalid billing_cycle")
    if "cancel_at_period_end" in changes and not isinstance(changes["cancel_at_period_end"], bool):
        raise ValidationError("cancel_at_period_end must be a boolean")
    if "plan_id" in changes and get_plan(str(changes["plan_id"])) is None:
        raise ValidationError("Plan not found")

    try:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.id == subscription_id)
            ).first()
            if row is None:
                raise NotFoundError("Subscription not found")
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == subscription_id)
                .values(**changes)
            )
            append_ledger_entry(
                session,
                user_id=row.user_id,
                subscription_id=row.id,
                action="admin_update",
                from_status=row.status,
                to_status=changes.get("status", row.status),
                cancel_at_period_end=changes.get("cancel_at_period_end", bool(row.cancel_at_period_end)),
                period_start=row.current_period_start,
                period_end=row.current_period_end,
            )
    except IntegrityError:
        raise ConflictError("User already has an active subscription")

    log_event(
        "info",
        "billing.admin.subscription_updated",
        user_id=row.user_id,
        extra={"subscription_id": subscription_id, "actor": actor_id, "fields": sorted(changes)},
    )
    return get_subscription_detail(subscription_id)
