"""
Plan change classification and validation.

Tier decides the direction of a change. Validation verdicts come from
validate_plan_change only; assess_plan_change adds advisory warnings for the
confirmation step but never changes the verdict.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from paydesk.models.plan import SubscriptionPlan
from paydesk.models.subscription import ChangeType, UserSubscription
from paydesk.features.discounts.calculator import round_half_up
from paydesk.features.discounts.formatting import format_plan_interval
from paydesk.features.subscriptions.state import is_active_subscription

PRICE_SWING_WARNING_PERCENT = 50


@dataclass
class PlanChangeValidation:
    valid: bool
    error: Optional[str] = None


@dataclass
class PlanChangeAssessment:
    valid: bool
    change_type: ChangeType
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def is_upgrade(current_plan: SubscriptionPlan, new_plan: SubscriptionPlan) -> bool:
    return new_plan.tier > current_plan.tier


def is_downgrade(current_plan: SubscriptionPlan, new_plan: SubscriptionPlan) -> bool:
    return new_plan.tier < current_plan.tier


def is_lateral_move(current_plan: SubscriptionPlan, new_plan: SubscriptionPlan) -> bool:
    return new_plan.tier == current_plan.tier and new_plan.id != current_plan.id


def get_change_type(current_plan: SubscriptionPlan, new_plan: SubscriptionPlan) -> ChangeType:
    if is_upgrade(current_plan, new_plan):
        return "upgrade"
    if is_downgrade(current_plan, new_plan):
        return "downgrade"
    return "lateral"


def validate_plan_change(subscription: UserSubscription, new_plan: SubscriptionPlan) -> PlanChangeValidation:
    if not is_active_subscription(subscription):
        return PlanChangeValidation(valid=False, error="Cannot change plan for inactive subscription")
    if subscription.plan_id == new_plan.id:
        return PlanChangeValidation(valid=False, error="Cannot change to the same plan")
    if not new_plan.active:
        return PlanChangeValidation(valid=False, error="Selected plan is not available")
    return PlanChangeValidation(valid=True)


def _plan_change_warnings(current_plan: SubscriptionPlan, new_plan: SubscriptionPlan, change_type: ChangeType) -> List[str]:
    warnings = []

    if (current_plan.interval, current_plan.interval_count) != (new_plan.interval, new_plan.interval_count):
        warnings.append(
            "Billing interval will change from "
            f"{format_plan_interval(current_plan.interval, current_plan.interval_count)} to "
            f"{format_plan_interval(new_plan.interval, new_plan.interval_count)}"
        )

    # A free current plan has no meaningful percentage swing
    if current_plan.price > 0:
        price_change = (new_plan.price - current_plan.price) / current_plan.price * 100
        if abs(price_change) > PRICE_SWING_WARNING_PERCENT:
            warnings.append(f"Price will change by {round_half_up(price_change)}%")

    if change_type == "downgrade":
        lost = [feature for feature in current_plan.features if feature not in new_plan.features]
        if lost:
            warnings.append(f"You will lose access to: {', '.join(lost)}")

    return warnings


def assess_plan_change(
    subscription: UserSubscription,
    current_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
) -> PlanChangeAssessment:
    """Validation verdict plus non-blocking warnings for a proposed change."""
    validation = validate_plan_change(subscription, new_plan)
    change_type = get_change_type(current_plan, new_plan)
    return PlanChangeAssessment(
        valid=validation.valid,
        change_type=change_type,
        error=validation.error,
        warnings=_plan_change_warnings(current_plan, new_plan, change_type),
    )
