"""
botbilling/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (Free, Pro, Premium)
- Plan lookup
- Admin create/update/deactivate with fail-closed validation
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, insert, update, func

from botbilling.core.database import get_db_session, plans, subscriptions
from botbilling.core.errors import ConflictError, NotFoundError, ValidationError
from botbilling.models.plan import Plan, PlanCreate, PlanUpdate


logger = logging.getLogger(__name__)

# Default plan configurations, keyed by name (seeding is idempotent on name)
DEFAULT_PLANS = {
    "Free": {
        "description": "Get started with a single bot",
        "price_monthly": Decimal("0"),
        "price_yearly": Decimal("0"),
        "features": ["1 chatbot", "800 messages / month", "Community support"],
        "allowed_models": ["deepseek-fast"],
        "max_bots": 1,
        "max_integrations": 1,
        "max_messages": 800,
        "max_knowledge_chars": 3000,
        "max_storage_mb": 50,
        "allow_actions": False,
        "allow_lead_collection": False,
        "allow_ecommerce": False,
        "allow_departmental_bots": False,
    },
    "Pro": {
        "description": "For growing teams",
        "price_monthly": Decimal("29"),
        "price_yearly": Decimal("290"),
        "features": ["3 chatbots", "8,000 messages / month", "Lead collection", "Bot actions"],
        "allowed_models": ["deepseek-fast", "openai-fast", "gemini-fast"],
        "max_bots": 3,
        "max_integrations": 3,
        "max_messages": 8000,
        "max_knowledge_chars": 10000,
        "max_storage_mb": 100000,
        "allow_actions": True,
        "allow_lead_collection": True,
        "allow_ecommerce": False,
        "allow_departmental_bots": True,
    },
    "Premium": {
        "description": "Everything, unlimited",
        "price_monthly": Decimal("99"),
        "price_yearly": Decimal("990"),
        "features": ["10 chatbots", "Unlimited messages", "All models", "E-commerce"],
        "allowed_models": [
            "deepseek-fast",
            "openai-fast",
            "gemini-fast",
            "deepseek-reasoning",
            "openai-reasoning",
            "gemini-reasoning",
        ],
        "max_bots": 10,
        "max_integrations": 10,
        "max_messages": None,  # unlimited
        "max_knowledge_chars": 20000,
        "max_storage_mb": None,  # unlimited
        "allow_actions": True,
        "allow_lead_collection": True,
        "allow_ecommerce": True,
        "allow_departmental_bots": True,
    },
}

# Columns that cannot be cleared by an update
_NOT_NULLABLE = {
    "name",
    "price_monthly",
    "price_yearly",
    "features",
    "allowed_models",
    "allow_actions",
    "allow_lead_collection",
    "allow_ecommerce",
    "allow_departmental_bots",
    "is_active",
}


def row_to_plan(row) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        description=row.description,
        price_monthly=row.price_monthly,
        price_yearly=row.price_yearly,
        features=row.features or [],
        allowed_models=row.allowed_models or [],
        max_bots=row.max_bots,
        max_integrations=row.max_integrations,
        max_messages=row.max_messages,
        max_knowledge_chars=row.max_knowledge_chars,
        max_storage_mb=row.max_storage_mb,
        allow_actions=bool(row.allow_actions),
        allow_lead_collection=bool(row.allow_lead_collection),
        allow_ecommerce=bool(row.allow_ecommerce),
        allow_departmental_bots=bool(row.allow_departmental_bots),
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def seed_plans() -> Dict[str, str]:
    """
    Seed default plans into database (idempotent).

    Returns:
        {plan name: plan id}
    """
    seeded = {}
    with get_db_session() as session:
        for name, config in DEFAULT_PLANS.items():
            existing = session.execute(
                select(plans.c.id).where(plans.c.name == name)
            ).first()
            if existing:
                seeded[name] = existing.id
                continue
            session.execute(insert(plans).values(name=name, is_active=True, **config))
            seeded[name] = session.execute(
                select(plans.c.id).where(plans.c.name == name)
            ).scalar_one()
    return seeded


def get_plan(plan_id: str) -> Optional[Plan]:
    """Get plan by ID (active or not)."""
    with get_db_session() as session:
        row = session.execute(
            select(plans).where(plans.c.id == plan_id)
        ).first()
    return row_to_plan(row) if row else None


def list_plans(include_inactive: bool = False) -> List[Plan]:
    query = select(plans).order_by(plans.c.price_monthly.asc(), plans.c.name.asc())
    if not include_inactive:
        query = query.where(plans.c.is_active == True)  # noqa: E712
    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [row_to_plan(r) for r in rows]


def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return "; ".join(parts)


def validate_plan_payload(payload: Dict[str, Any], *, partial: bool = False):
    """
    Validate an admin plan payload.

    Raises:
        ValidationError: On any invalid field (nothing is written)
    """
    if not isinstance(payload, dict):
        raise ValidationError("Plan payload must be a JSON object")
    model = PlanUpdate if partial else PlanCreate
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(_validation_message(e))


def count_active_subscriptions(plan_id: str) -> int:
    with get_db_session() as session:
        return session.execute(
            select(func.count())
            .select_from(subscriptions)
            .where(subscriptions.c.plan_id == plan_id)
            .where(subscriptions.c.status == "active")
        ).scalar_one()


def create_plan(payload: Dict[str, Any]) -> Plan:
    data = validate_plan_payload(payload).model_dump()
    with get_db_session() as session:
        plan_id = session.execute(
            insert(plans).values(**data).returning(plans.c.id)
        ).scalar_one()
    logger.info("plans.created", extra={"plan_id": plan_id, "plan_name": data["name"]})
    return get_plan(plan_id)


def update_plan(plan_id: str, payload: Dict[str, Any]) -> Plan:
    """
    Apply a partial update.

    Raises:
        ValidationError: invalid payload or clearing a required field
        NotFoundError: unknown plan
        ConflictError: deactivating a plan that still has active subscriptions
    """
    changes = validate_plan_payload(payload, partial=True).model_dump(exclude_unset=True)
    cleared = sorted(k for k, v in changes.items() if v is None and k in _NOT_NULLABLE)
    if cleared:
        raise ValidationError(f"Fields cannot be null: {', '.join(cleared)}")

    if get_plan(plan_id) is None:
        raise NotFoundError("Plan not found")

    if changes.get("is_active") is False and count_active_subscriptions(plan_id) > 0:
        raise ConflictError("Cannot deactivate a plan with active subscriptions")

    if changes:
        with get_db_session() as session:
            session.execute(update(plans).where(plans.c.id == plan_id).values(**changes))
        logger.info("plans.updated", extra={"plan_id": plan_id, "fields": sorted(changes)})
    return get_plan(plan_id)


def deactivate_plan(plan_id: str) -> Plan:
    """Soft delete: plans are never physically removed."""
    return update_plan(plan_id, {"is_active": False})
