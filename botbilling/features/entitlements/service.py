"""
botbilling/features/entitlements/service.py

Entitlement resolution + feature gates.

Handles:
- Resolving a user's bundle: super admin > active subscription's plan > free tier
- Lazy period-end expiry (read-only; the reconcile job does the writes)
- Model and capacity gates with structured logs
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from sqlalchemy import select

from botbilling.core.admin_auth import is_super_admin as lookup_super_admin
from botbilling.core.database import get_db_session, plans, subscriptions
from botbilling.core.errors import PermissionError, QuotaExceededError
from botbilling.features.billing.periods import as_utc, utcnow
from botbilling.models.plan import MODEL_IDENTIFIERS


logger = logging.getLogger(__name__)

LIMIT_KEYS = (
    "max_bots",
    "max_integrations",
    "max_messages",
    "max_knowledge_chars",
    "max_storage_mb",
)

FEATURE_FLAGS = (
    "allow_actions",
    "allow_lead_collection",
    "allow_ecommerce",
    "allow_departmental_bots",
)


class EntitlementSource(str, Enum):
    SUPER_ADMIN = "super_admin"
    SUBSCRIPTION = "subscription"
    FREE = "free"


@dataclass(frozen=True)
class EntitlementBundle:
    """Resolved capabilities. A None limit means unlimited."""
    source: EntitlementSource
    allowed_models: Tuple[str, ...]
    max_bots: Optional[int]
    max_integrations: Optional[int]
    max_messages: Optional[int]
    max_knowledge_chars: Optional[int]
    max_storage_mb: Optional[int]
    allow_actions: bool = False
    allow_lead_collection: bool = False
    allow_ecommerce: bool = False
    allow_departmental_bots: bool = False
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    def allows_model(self, provider: str, model: str) -> bool:
        if self.source == EntitlementSource.SUPER_ADMIN:
            return True
        return model_identifier(provider, model) in self.allowed_models

    def limit(self, key: str) -> Optional[int]:
        if key not in LIMIT_KEYS:
            raise ValueError(f"Unknown limit: {key}")
        return getattr(self, key)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["allowed_models"] = list(self.allowed_models)
        if self.current_period_end is not None:
            data["current_period_end"] = self.current_period_end.isoformat()
        return data


FREE_TIER = EntitlementBundle(
    source=EntitlementSource.FREE,
    allowed_models=("deepseek-fast",),
    max_bots=1,
    max_integrations=1,
    max_messages=800,
    max_knowledge_chars=3000,
    max_storage_mb=50,
    plan_name="Free",
)

SUPER_ADMIN_BUNDLE = EntitlementBundle(
    source=EntitlementSource.SUPER_ADMIN,
    allowed_models=MODEL_IDENTIFIERS,
    max_bots=None,
    max_integrations=None,
    max_messages=None,
    max_knowledge_chars=None,
    max_storage_mb=None,
    allow_actions=True,
    allow_lead_collection=True,
    allow_ecommerce=True,
    allow_departmental_bots=True,
    plan_name="Super Admin",
)


def model_identifier(provider: str, model: str) -> str:
    """Map a provider/model pair onto a plan model tier."""
    provider = (provider or "").lower()
    model = (model or "").lower()
    if provider == "deepseek":
        return "deepseek-reasoning" if ("reasoner" in model or "reasoning" in model) else "deepseek-fast"
    if provider == "openai":
        if "o1" in model or "o3" in model or "reasoning" in model:
            return "openai-reasoning"
        return "openai-fast"
    if provider == "gemini":
        return "gemini-reasoning" if ("thinking" in model or "reasoning" in model) else "gemini-fast"
    return f"{provider}-fast"


def _bundle_from_row(row) -> EntitlementBundle:
    return EntitlementBundle(
        source=EntitlementSource.SUBSCRIPTION,
        allowed_models=tuple(row.allowed_models or ()),
        max_bots=row.max_bots,
        max_integrations=row.max_integrations,
        max_messages=row.max_messages,
        max_knowledge_chars=row.max_knowledge_chars,
        max_storage_mb=row.max_storage_mb,
        allow_actions=bool(row.allow_actions),
        allow_lead_collection=bool(row.allow_lead_collection),
        allow_ecommerce=bool(row.allow_ecommerce),
        allow_departmental_bots=bool(row.allow_departmental_bots),
        plan_id=row.plan_id,
        plan_name=row.name,
        subscription_id=row.subscription_id,
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
    )


def resolve_entitlements(
    user_id: str,
    *,
    is_super_admin: Optional[Callable[[str], bool]] = None,
    now: Optional[datetime] = None,
) -> EntitlementBundle:
    """
    Resolve the effective entitlement bundle for a user. Never writes.

    Args:
        user_id: User to resolve
        is_super_admin: Capability lookup, defaults to the admin_users table
        now: Clock override (tests)
    """
    checker = is_super_admin or lookup_super_admin
    if checker(user_id):
        return SUPER_ADMIN_BUNDLE

    with get_db_session() as session:
        row = session.execute(
            select(
                subscriptions.c.id.label("subscription_id"),
                subscriptions.c.plan_id,
                subscriptions.c.current_period_end,
                subscriptions.c.cancel_at_period_end,
                plans.c.name,
                plans.c.allowed_models,
                plans.c.max_bots,
                plans.c.max_integrations,
                plans.c.max_messages,
                plans.c.max_knowledge_chars,
                plans.c.max_storage_mb,
                plans.c.allow_actions,
                plans.c.allow_lead_collection,
                plans.c.allow_ecommerce,
                plans.c.allow_departmental_bots,
            )
            .join(plans, plans.c.id == subscriptions.c.plan_id)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status == "active")
        ).first()

    if row is None:
        return FREE_TIER

    current = as_utc(now) if now else utcnow()
    if row.cancel_at_period_end and as_utc(row.current_period_end) <= current:
        # Cancelled at period end and the period is over; settled by the reconcile job
        return FREE_TIER

    return _bundle_from_row(row)


def check_capacity(bundle: EntitlementBundle, limit_key: str, current: int, requested: int = 1) -> None:
    """
    Gate a capacity-consuming action.

    Raises:
        QuotaExceededError: current + requested would exceed the limit
    """
    limit = bundle.limit(limit_key)
    if limit is None:
        return
    if current + requested > limit:
        logger.warning(
            "[entitlement] quota exceeded",
            extra={
                "limit_key": limit_key,
                "limit": limit,
                "current_usage": current,
                "requested": requested,
                "plan_id": bundle.plan_id,
            },
        )
        raise QuotaExceededError(
            f"Plan limit reached for {limit_key.replace('max_', '')} ({limit}). Upgrade your plan to continue."
        )


def require_feature(bundle: EntitlementBundle, flag: str) -> None:
    """
    Raises:
        PermissionError: the bundle does not include the feature
    """
    if flag not in FEATURE_FLAGS:
        raise ValueError(f"Unknown feature flag: {flag}")
    if not getattr(bundle, flag):
        raise PermissionError(f"Your plan does not include {flag.replace('allow_', '').replace('_', ' ')}")


def require_model(bundle: EntitlementBundle, provider: str, model: str) -> None:
    if not bundle.allows_model(provider, model):
        raise PermissionError(f"Model tier {model_identifier(provider, model)} is not available on your plan")
