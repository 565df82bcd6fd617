"""
paydesk/models/plan.py

Subscription plan model.

Plans are fetched once per session (from the plan store or the payment
provider) and treated as immutable. ``tier`` gives plans a total order used
to classify plan changes as upgrade, downgrade or lateral.
"""

from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


BillingInterval = Literal["day", "week", "month", "year"]


class SubscriptionPlan(BaseModel):
    """
    A purchasable plan.

    Prices are integers in minor currency units (cents for USD).
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    price: int = Field(ge=0)
    currency: str = "USD"
    interval: BillingInterval = "month"
    interval_count: int = Field(default=1, ge=1)
    trial_period_days: Optional[int] = Field(default=None, ge=0)
    features: List[str] = Field(default_factory=list)
    popular: bool = False
    provider_price_id: Optional[str] = None
    provider_product_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    active: bool = True
    tier: int = 0

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()
