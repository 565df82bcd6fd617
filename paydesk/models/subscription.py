"""
paydesk/models/subscription.py

User subscription record and the request/response shapes of the
orchestration service.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field, model_validator

from paydesk.models.plan import SubscriptionPlan


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


ChangeType = Literal["upgrade", "downgrade", "lateral"]
ProrationBehavior = Literal["create_prorations", "none", "always_invoice"]


class UserSubscription(BaseModel):
    """
    A user's subscription as stored locally.

    Invariants:
    - current_period_end is strictly after current_period_start
    - a trialing subscription always carries trial_end
    """
    id: str
    user_id: str
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    plan: Optional[SubscriptionPlan] = None

    @model_validator(mode="after")
    def check_invariants(self) -> "UserSubscription":
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        if self.status == SubscriptionStatus.TRIALING and self.trial_end is None:
            raise ValueError("trialing subscriptions require trial_end")
        return self


class CreateSubscriptionParams(BaseModel):
    plan_id: str
    user_id: str
    customer_id: Optional[str] = None
    trial_period_days: Optional[int] = Field(default=None, ge=0, le=365)
    promo_code: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


class UpdateSubscriptionParams(BaseModel):
    plan_id: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    promo_code: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


class SubscriptionChangeRequest(BaseModel):
    subscription_id: str
    new_plan_id: str
    proration_behavior: ProrationBehavior = "create_prorations"


class SubscriptionChangeResponse(BaseModel):
    subscription: UserSubscription
    proration_amount: int = 0
    effective_date: datetime
    change_type: ChangeType


class RemoteSubscription(BaseModel):
    """What the provider hands back when a subscription is provisioned."""
    session_id: str
    subscription_id: Optional[str] = None
    url: Optional[str] = None
