"""
botbilling/models/plan.py

Plan models: the catalog row plus admin create/update payloads.

A plan carries its entitlement bundle. A None limit means unlimited.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


MODEL_IDENTIFIERS = (
    "deepseek-fast",
    "deepseek-reasoning",
    "openai-fast",
    "openai-reasoning",
    "gemini-fast",
    "gemini-reasoning",
)

MAX_PRICE_MONTHLY = Decimal("1000000")
MAX_PRICE_YEARLY = Decimal("10000000")


class Plan(BaseModel):
    """Plan as stored in the catalog."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    price_monthly: Decimal
    price_yearly: Decimal
    features: List[str] = []
    allowed_models: List[str] = []
    max_bots: Optional[int] = None
    max_integrations: Optional[int] = None
    max_messages: Optional[int] = None
    max_knowledge_chars: Optional[int] = None
    max_storage_mb: Optional[int] = None
    allow_actions: bool = False
    allow_lead_collection: bool = False
    allow_ecommerce: bool = False
    allow_departmental_bots: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None

    def price_for_cycle(self, billing_cycle: str) -> Decimal:
        return self.price_yearly if billing_cycle == "yearly" else self.price_monthly


def _strip_name(value):
    if isinstance(value, str):
        return value.strip()
    return value


def _check_models(value):
    if value is None:
        return value
    unknown = [m for m in value if m not in MODEL_IDENTIFIERS]
    if unknown:
        raise ValueError(f"Unknown model identifiers: {', '.join(unknown)}")
    return value


class PlanCreate(BaseModel):
    """Admin payload for a new plan. Validated before any write."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    price_monthly: Decimal = Field(ge=0, le=MAX_PRICE_MONTHLY, decimal_places=2)
    price_yearly: Decimal = Field(ge=0, le=MAX_PRICE_YEARLY, decimal_places=2)
    features: List[str] = []
    allowed_models: List[str] = ["deepseek-fast"]
    max_bots: Optional[int] = Field(None, ge=0, le=1_000_000)
    max_integrations: Optional[int] = Field(None, ge=0, le=1_000_000)
    max_messages: Optional[int] = Field(None, ge=0, le=1_000_000_000)
    max_knowledge_chars: Optional[int] = Field(None, ge=0, le=1_000_000_000)
    max_storage_mb: Optional[int] = Field(None, ge=0, le=100_000_000)
    allow_actions: bool = False
    allow_lead_collection: bool = False
    allow_ecommerce: bool = False
    allow_departmental_bots: bool = False
    is_active: bool = True

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return _strip_name(value)

    @field_validator("allowed_models")
    @classmethod
    def known_models(cls, value):
        return _check_models(value)


class PlanUpdate(BaseModel):
    """Partial admin update. Explicit nulls on limits mean unlimited."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    price_monthly: Optional[Decimal] = Field(None, ge=0, le=MAX_PRICE_MONTHLY, decimal_places=2)
    price_yearly: Optional[Decimal] = Field(None, ge=0, le=MAX_PRICE_YEARLY, decimal_places=2)
    features: Optional[List[str]] = None
    allowed_models: Optional[List[str]] = None
    max_bots: Optional[int] = Field(None, ge=0, le=1_000_000)
    max_integrations: Optional[int] = Field(None, ge=0, le=1_000_000)
    max_messages: Optional[int] = Field(None, ge=0, le=1_000_000_000)
    max_knowledge_chars: Optional[int] = Field(None, ge=0, le=1_000_000_000)
    max_storage_mb: Optional[int] = Field(None, ge=0, le=100_000_000)
    allow_actions: Optional[bool] = None
    allow_lead_collection: Optional[bool] = None
    allow_ecommerce: Optional[bool] = None
    allow_departmental_bots: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return _strip_name(value)

    @field_validator("allowed_models")
    @classmethod
    def known_models(cls, value):
        return _check_models(value)
