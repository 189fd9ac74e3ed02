"""
botbilling/models/subscription.py

UserSubscription model.

Constraint: at most one subscription per user is active. Rows are never
deleted; cancellation and expiry are status changes.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


SUBSCRIPTION_STATUSES = ("active", "past_due", "cancelled", "expired")


class UserSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    status: str
    billing_cycle: str
    current_period_start: datetime
    current_period_end: datetime
    external_subscription_code: Optional[str] = None
    external_customer_code: Optional[str] = None
    cancel_at_period_end: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
