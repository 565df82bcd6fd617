"""
paydesk/models/promo.py

Promo code and discount result models.
"""

from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field, model_validator


DiscountType = Literal["percentage", "fixed"]


class PromoCode(BaseModel):
    """
    A promotion code as resolved by the payment provider.

    ``discount_value`` is a percentage (0-100) for percentage codes and an
    amount in minor currency units for fixed codes.
    """
    id: Optional[str] = None
    code: str
    discount_type: DiscountType
    discount_value: float = Field(ge=0)
    currency: Optional[str] = None
    valid: bool = True
    expires_at: Optional[int] = None  # epoch seconds
    max_redemptions: Optional[int] = None
    times_redeemed: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @model_validator(mode="after")
    def check_discount_value(self) -> "PromoCode":
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("percentage discounts cannot exceed 100")
        if self.discount_type == "fixed" and not self.currency:
            raise ValueError("fixed discounts require a currency")
        return self


class DiscountCalculation(BaseModel):
    original_amount: int
    discount_amount: int
    final_amount: int
    discount_percentage: Optional[float] = None
    currency: str
    # Set when a fixed code is denominated in another currency; the amount
    # is still applied unconverted.
    currency_mismatch: bool = False


class ProrationResult(BaseModel):
    credit_amount: int
    charge_amount: int
    net_amount: int
    is_upgrade: bool
