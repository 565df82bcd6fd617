"""
Discount and proration arithmetic.

All amounts are integers in minor currency units. Rounding is half-up
(toward positive infinity on ties) everywhere.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

from paydesk.core.config import settings
from paydesk.models.plan import SubscriptionPlan
from paydesk.models.promo import DiscountCalculation, PromoCode, ProrationResult
from paydesk.features.discounts.formatting import format_currency

logger = logging.getLogger("paydesk")

# Proration uses a flat day count per billing interval
DAYS_PER_INTERVAL: Dict[str, int] = {
    "day": 1,
    "week": 7,
    "month": 30,
    "year": 365,
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_discount(
    original_amount: int,
    promo_code: PromoCode,
    currency: str = "USD",
) -> DiscountCalculation:
    """Apply a single promo code to an amount.

    Invalid codes yield a zero discount. The discount is clamped to
    ``[0, original_amount]`` so the final amount is never negative.

    Fixed codes are applied unconverted even when their currency differs
    from the order currency; the result is flagged with ``currency_mismatch``.
    """
    if not promo_code.valid:
        return DiscountCalculation(
            original_amount=original_amount,
            discount_amount=0,
            final_amount=original_amount,
            currency=currency,
        )

    discount_amount = 0
    discount_percentage: Optional[float] = None
    currency_mismatch = False

    if promo_code.discount_type == "percentage":
        discount_percentage = promo_code.discount_value
        discount_amount = round_half_up(original_amount * promo_code.discount_value / 100)
    elif promo_code.discount_type == "fixed":
        if promo_code.currency and promo_code.currency.upper() != currency.upper():
            currency_mismatch = True
            logger.warning(
                "discount.currency_mismatch",
                extra={"error_code": "currency_mismatch", "event_type": promo_code.code},
            )
        discount_amount = round_half_up(promo_code.discount_value)
        discount_percentage = (
            round_half_up(discount_amount / original_amount * 100) if original_amount > 0 else 0
        )

    discount_amount = max(0, min(discount_amount, original_amount))
    final_amount = max(0, original_amount - discount_amount)

    return DiscountCalculation(
        original_amount=original_amount,
        discount_amount=discount_amount,
        final_amount=final_amount,
        discount_percentage=discount_percentage,
        currency=currency,
        currency_mismatch=currency_mismatch,
    )


def apply_multiple_discounts(
    original_amount: int,
    promo_codes: Iterable[PromoCode],
    currency: str = "USD",
) -> DiscountCalculation:
    """Stack promo codes: percentage codes first, then fixed ones.

    sorted() is stable, so codes of the same kind keep their given order.
    """
    current_amount = original_amount
    total_discount = 0
    currency_mismatch = False

    ordered = sorted(promo_codes, key=lambda code: 0 if code.discount_type == "percentage" else 1)
    for promo_code in ordered:
        if not promo_code.valid:
            continue
        discount = calculate_discount(current_amount, promo_code, currency)
        total_discount += discount.discount_amount
        current_amount = discount.final_amount
        currency_mismatch = currency_mismatch or discount.currency_mismatch

    overall_percentage = (
        round_half_up(total_discount / original_amount * 100) if original_amount > 0 else 0
    )

    return DiscountCalculation(
        original_amount=original_amount,
        discount_amount=total_discount,
        final_amount=current_amount,
        discount_percentage=overall_percentage,
        currency=currency,
        currency_mismatch=currency_mismatch,
    )


def _daily_rate(plan: SubscriptionPlan) -> float:
    # Anything that is not monthly is priced over a year
    return plan.price / (30 if plan.interval == "month" else 365)


def calculate_proration(
    current_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
    days_remaining: int,
) -> ProrationResult:
    """Credit for the unused part of the current plan against the charge for the new one."""
    credit_amount = round_half_up(_daily_rate(current_plan) * days_remaining)
    charge_amount = round_half_up(_daily_rate(new_plan) * days_remaining)

    return ProrationResult(
        credit_amount=credit_amount,
        charge_amount=charge_amount,
        net_amount=charge_amount - credit_amount,
        is_upgrade=new_plan.tier > current_plan.tier or new_plan.price > current_plan.price,
    )


def calculate_annual_savings(
    monthly_price: int,
    yearly_price: int,
    currency: str = "USD",
) -> Dict[str, object]:
    """
    Savings of paying yearly instead of twelve monthly payments.

    Callers must pass the monthly and the yearly price of two distinct plans;
    passing the same figure twice always yields zero savings.
    """
    annual_if_monthly = monthly_price * 12
    annual_savings = annual_if_monthly - yearly_price
    percentage = round_half_up(annual_savings / annual_if_monthly * 100) if annual_if_monthly > 0 else 0

    return {
        "monthly_savings": round_half_up(annual_savings / 12),
        "annual_savings": annual_savings,
        "savings_percentage": percentage,
        "formatted_savings": format_currency(annual_savings, currency),
    }


def plan_period(plan: SubscriptionPlan, cycles: int = 1) -> timedelta:
    """Length of ``cycles`` billing periods of the plan."""
    days = DAYS_PER_INTERVAL.get(plan.interval, settings.BILLING_PERIOD_DAYS)
    return timedelta(days=days * plan.interval_count * cycles)


def calculate_subscription_pricing(
    plan: SubscriptionPlan,
    promo_code: Optional[PromoCode] = None,
    billing_cycles: int = 1,
    trial_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """Price preview for a plan selection, including the first billing date."""
    ts = now or datetime.now(timezone.utc)
    trial = trial_days if trial_days is not None else (plan.trial_period_days or 0)

    base_amount = plan.price * billing_cycles
    discount_amount = 0
    if promo_code is not None:
        discount_amount = calculate_discount(base_amount, promo_code, plan.currency).discount_amount

    return {
        "base_amount": base_amount,
        "discount_amount": discount_amount,
        "final_amount": base_amount - discount_amount,
        "trial_days": trial,
        "next_billing_date": ts + timedelta(days=trial) + plan_period(plan, billing_cycles),
        "total_savings": discount_amount,
    }


def is_promo_code_expired(expires_at: Optional[int], now: Optional[datetime] = None) -> bool:
    if not expires_at:
        return False
    ts = now or datetime.now(timezone.utc)
    return int(ts.timestamp()) > expires_at


def has_reached_usage_limit(times_redeemed: int, max_redemptions: Optional[int]) -> bool:
    if not max_redemptions:
        return False
    return times_redeemed >= max_redemptions
