"""
Plan catalog helpers and subscription summaries.

Sorting, filtering and feature comparison over a fetched plan list, plus the
account-page summary of a single subscription. Status wording comes from
state.get_subscription_status_info.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Literal, Optional

from paydesk.features.discounts.formatting import format_currency
from paydesk.features.subscriptions.state import (
    get_days_until_renewal,
    get_subscription_status_info,
    get_trial_days_remaining,
    is_in_trial,
)
from paydesk.models.plan import BillingInterval, SubscriptionPlan
from paydesk.models.subscription import UserSubscription

PlanSortKey = Literal["price", "tier", "name"]
SortOrder = Literal["asc", "desc"]

_SORT_KEYS = {
    "price": lambda plan: plan.price,
    "tier": lambda plan: plan.tier,
    "name": lambda plan: plan.name.casefold(),
}


@dataclass
class TrialInfo:
    days_remaining: int
    is_in_trial: bool = True


@dataclass
class SubscriptionSummary:
    plan_name: str
    status: str
    next_billing_date: datetime
    next_billing_amount: str
    days_until_billing: int
    action_required: bool
    trial_info: Optional[TrialInfo] = None


@dataclass
class PlanComparison:
    features: List[str] = field(default_factory=list)
    plan_features: List[Dict[str, bool]] = field(default_factory=list)


def sort_subscription_plans(
    plans: Iterable[SubscriptionPlan],
    sort_by: PlanSortKey = "tier",
    order: SortOrder = "asc",
) -> List[SubscriptionPlan]:
    """New list sorted by price, tier or name. Ties keep their input order."""
    if sort_by not in _SORT_KEYS:
        raise ValueError(f"Unknown plan sort key: {sort_by}")
    return sorted(plans, key=_SORT_KEYS[sort_by], reverse=(order == "desc"))


def filter_subscription_plans(
    plans: Iterable[SubscriptionPlan],
    active: Optional[bool] = None,
    interval: Optional[BillingInterval] = None,
    min_price: Optional[int] = None,
    max_price: Optional[int] = None,
    features: Optional[Iterable[str]] = None,
) -> List[SubscriptionPlan]:
    """Plans matching every given criterion; plans must carry all ``features``."""
    required = set(features or ())
    matched = []
    for plan in plans:
        if active is not None and plan.active != active:
            continue
        if interval and plan.interval != interval:
            continue
        if max_price is not None and plan.price > max_price:
            continue
        if min_price is not None and plan.price < min_price:
            continue
        if not required.issubset(plan.features):
            continue
        matched.append(plan)
    return matched


def generate_plan_comparison(plans: Iterable[SubscriptionPlan]) -> PlanComparison:
    plans = list(plans)
    all_features = sorted({feature for plan in plans for feature in plan.features})
    return PlanComparison(
        features=all_features,
        plan_features=[
            {feature: feature in plan.features for feature in all_features}
            for plan in plans
        ],
    )


def generate_subscription_summary(
    subscription: UserSubscription,
    now: Optional[datetime] = None,
    locale: Optional[str] = None,
) -> SubscriptionSummary:
    status_info = get_subscription_status_info(subscription.status)
    plan = subscription.plan

    trial_info = None
    if is_in_trial(subscription, now):
        trial_info = TrialInfo(days_remaining=get_trial_days_remaining(subscription, now))

    if plan is not None:
        amount = format_currency(plan.price, plan.currency, locale)
    else:
        amount = format_currency(0, "USD", locale)

    return SubscriptionSummary(
        plan_name=plan.name if plan is not None else "Unknown Plan",
        status=status_info["label"],
        next_billing_date=subscription.current_period_end,
        next_billing_amount=amount,
        days_until_billing=get_days_until_renewal(subscription, now),
        action_required=bool(status_info["action_required"]),
        trial_info=trial_info,
    )
