"""
Subscription state classification.

Pure predicates over a UserSubscription. Every status-dependent decision in
the orchestration service goes through these functions.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Union

from paydesk.models.subscription import SubscriptionStatus, UserSubscription


ACTIVE_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
})

ATTENTION_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
    SubscriptionStatus.INCOMPLETE,
    SubscriptionStatus.INCOMPLETE_EXPIRED,
})

SUBSCRIPTION_ERROR_MESSAGES = {
    "PLAN_NOT_FOUND": "Subscription plan not found",
    "SUBSCRIPTION_NOT_FOUND": "Subscription not found",
    "INVALID_PLAN_CHANGE": "Invalid plan change requested",
    "SUBSCRIPTION_ALREADY_CANCELED": "Subscription is already canceled",
    "SUBSCRIPTION_NOT_ACTIVE": "Subscription is not active",
    "SUBSCRIPTION_ALREADY_ACTIVE": "User already has an active subscription",
    "CANNOT_REACTIVATE": "Cannot reactivate this subscription",
}

_SECONDS_PER_DAY = 86400


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def is_active_status(status: Union[SubscriptionStatus, str, None]) -> bool:
    """Status check for raw stored values; unknown statuses are not active."""
    try:
        return SubscriptionStatus(status) in ACTIVE_SUBSCRIPTION_STATUSES
    except ValueError:
        return False


def is_active_subscription(subscription: UserSubscription) -> bool:
    return is_active_status(subscription.status)


def is_canceled_subscription(subscription: UserSubscription) -> bool:
    return subscription.status == SubscriptionStatus.CANCELED


def is_trial_subscription(subscription: UserSubscription) -> bool:
    return subscription.status == SubscriptionStatus.TRIALING


def is_past_due_subscription(subscription: UserSubscription) -> bool:
    return subscription.status == SubscriptionStatus.PAST_DUE


def is_in_trial(subscription: UserSubscription, now: Optional[datetime] = None) -> bool:
    """True while trial_end lies in the future, whatever the status says."""
    if subscription.trial_end is None:
        return False
    return subscription.trial_end > _now(now)


def subscription_needs_attention(subscription: Optional[UserSubscription]) -> bool:
    if subscription is None:
        return False
    return subscription.status in ATTENTION_SUBSCRIPTION_STATUSES


def can_cancel_subscription(subscription: UserSubscription) -> bool:
    return is_active_subscription(subscription) and not subscription.cancel_at_period_end


def can_reactivate_subscription(subscription: UserSubscription) -> bool:
    """Only a scheduled cancellation that has since taken effect can be undone."""
    return is_canceled_subscription(subscription) and subscription.cancel_at_period_end


def is_subscription_expired(subscription: UserSubscription, now: Optional[datetime] = None) -> bool:
    return subscription.current_period_end < _now(now) and not is_active_subscription(subscription)


def get_subscription_time_remaining(subscription: UserSubscription, now: Optional[datetime] = None) -> timedelta:
    return max(timedelta(0), subscription.current_period_end - _now(now))


def _days_until(target: datetime, now: Optional[datetime]) -> int:
    seconds = (target - _now(now)).total_seconds()
    return max(0, math.ceil(seconds / _SECONDS_PER_DAY))


def get_days_until_renewal(subscription: UserSubscription, now: Optional[datetime] = None) -> int:
    return _days_until(subscription.current_period_end, now)


def get_trial_days_remaining(subscription: UserSubscription, now: Optional[datetime] = None) -> int:
    if subscription.trial_end is None:
        return 0
    return _days_until(subscription.trial_end, now)


_STATUS_INFO: Dict[SubscriptionStatus, Dict[str, Union[str, bool]]] = {
    SubscriptionStatus.ACTIVE: {
        "label": "Active",
        "description": "Your subscription is active and current",
        "action_required": False,
    },
    SubscriptionStatus.TRIALING: {
        "label": "Trial",
        "description": "You are currently in your trial period",
        "action_required": False,
    },
    SubscriptionStatus.PAST_DUE: {
        "label": "Past Due",
        "description": "Payment failed. Please update your payment method",
        "action_required": True,
    },
    SubscriptionStatus.CANCELED: {
        "label": "Canceled",
        "description": "Your subscription has been canceled",
        "action_required": False,
    },
    SubscriptionStatus.UNPAID: {
        "label": "Unpaid",
        "description": "Payment is required to continue service",
        "action_required": True,
    },
    SubscriptionStatus.INCOMPLETE: {
        "label": "Incomplete",
        "description": "Subscription setup needs to be completed",
        "action_required": True,
    },
    SubscriptionStatus.INCOMPLETE_EXPIRED: {
        "label": "Expired",
        "description": "Subscription setup expired. Please try again",
        "action_required": True,
    },
}


def get_subscription_status_info(status: Union[SubscriptionStatus, str]) -> Dict[str, Union[str, bool]]:
    """Label, description and whether the user has to act, for a status."""
    try:
        key = SubscriptionStatus(status)
    except ValueError:
        return {
            "label": "Unknown",
            "description": "Subscription status is unknown",
            "action_required": False,
        }
    return dict(_STATUS_INFO[key])
