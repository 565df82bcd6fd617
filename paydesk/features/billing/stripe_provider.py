"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe API. SDK calls are blocking, so
each one runs in a worker thread. Stripe exceptions are flattened into the
raw error payload carried by BillingProviderError.
"""
import asyncio
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional

import stripe

from paydesk.core.config import settings
from paydesk.features.billing.provider import BillingProviderError
from paydesk.features.payments.errors import stripe_error_payload
from paydesk.models.plan import SubscriptionPlan
from paydesk.models.promo import PromoCode
from paydesk.models.subscription import ProrationBehavior, RemoteSubscription


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    return dict(to_dict()) if callable(to_dict) else {}


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_version: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            api_version: Pinned Stripe API version (defaults to STRIPE_API_VERSION setting)
            success_url: Checkout success redirect (defaults to CHECKOUT_SUCCESS_URL setting)
            cancel_url: Checkout cancel redirect (defaults to CHECKOUT_CANCEL_URL setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise BillingProviderError(
                "STRIPE_SECRET_KEY not configured",
                {"type": "authentication_error", "code": "missing_api_key"},
            )

        self.success_url = success_url or settings.CHECKOUT_SUCCESS_URL
        self.cancel_url = cancel_url or settings.CHECKOUT_CANCEL_URL

        stripe.api_key = self.secret_key
        version = api_version or settings.STRIPE_API_VERSION
        if version:
            stripe.api_version = version

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe {operation} failed: {e}", stripe_error_payload(e)) from e

    async def _find_promotion_code(self, code: str) -> Optional[Any]:
        result = await self._call(
            "promotion code lookup",
            stripe.PromotionCode.list,
            code=code,
            active=True,
            limit=1,
        )
        data = _field(result, "data", []) or []
        return data[0] if data else None

    async def create_remote_subscription(
        self,
        plan_ref: str,
        trial_days: Optional[int] = None,
        promo_code: Optional[str] = None,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> RemoteSubscription:
        """Create a subscription-mode Checkout session for the price."""
        subscription_data: Dict[str, Any] = {"metadata": metadata or {}}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": plan_ref, "quantity": 1}],
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "subscription_data": subscription_data,
            "metadata": metadata or {},
        }
        if customer_ref:
            if customer_ref.startswith("cus_"):
                params["customer"] = customer_ref
            else:
                params["customer_email"] = customer_ref

        # Stripe rejects allow_promotion_codes together with explicit discounts
        if promo_code:
            promotion = await self._find_promotion_code(promo_code)
            if promotion is None:
                raise BillingProviderError(
                    f"Promo code {promo_code} not found",
                    {"type": "validation_error", "code": "resource_missing", "param": "promo_code"},
                )
            params["discounts"] = [{"promotion_code": _field(promotion, "id")}]
        else:
            params["allow_promotion_codes"] = True

        session = await self._call("checkout session creation", stripe.checkout.Session.create, **params)
        return RemoteSubscription(
            session_id=_field(session, "id"),
            subscription_id=_field(session, "subscription"),
            url=_field(session, "url"),
        )

    async def update_remote_subscription(
        self,
        subscription_ref: str,
        new_plan_ref: str,
        proration_behavior: ProrationBehavior = "create_prorations",
    ) -> None:
        subscription = await self._call("subscription retrieval", stripe.Subscription.retrieve, subscription_ref)
        items = _field(_field(subscription, "items"), "data", []) or []
        if not items:
            raise BillingProviderError(
                f"Stripe subscription {subscription_ref} has no items",
                {"type": "validation_error", "code": "resource_missing", "param": "items"},
            )

        await self._call(
            "subscription update",
            stripe.Subscription.modify,
            subscription_ref,
            items=[{"id": _field(items[0], "id"), "price": new_plan_ref}],
            proration_behavior=proration_behavior,
        )

    async def cancel_remote_subscription(self, subscription_ref: str, at_period_end: bool = True) -> None:
        if at_period_end:
            await self._call(
                "subscription cancellation",
                stripe.Subscription.modify,
                subscription_ref,
                cancel_at_period_end=True,
            )
        else:
            await self._call("subscription cancellation", stripe.Subscription.cancel, subscription_ref)

    async def reactivate_remote_subscription(self, subscription_ref: str) -> None:
        await self._call(
            "subscription reactivation",
            stripe.Subscription.modify,
            subscription_ref,
            cancel_at_period_end=False,
        )

    async def fetch_remote_plans(self) -> List[SubscriptionPlan]:
        """Active recurring prices, with tier and features read from product metadata."""
        result = await self._call(
            "price listing",
            stripe.Price.list,
            active=True,
            type="recurring",
            expand=["data.product"],
            limit=100,
        )

        plans = [self._map_price_to_plan(price) for price in (_field(result, "data", []) or [])]
        return sorted(plans, key=lambda plan: (plan.tier, plan.price))

    def _map_price_to_plan(self, price: Any) -> SubscriptionPlan:
        product = _field(price, "product")
        if isinstance(product, str):
            product_id, product = product, None
        else:
            product_id = _field(product, "id")

        product_metadata = {key: str(value) for key, value in _as_dict(_field(product, "metadata")).items()}
        recurring = _field(price, "recurring")
        features = [f.strip() for f in product_metadata.get("features", "").split(",") if f.strip()]

        return SubscriptionPlan(
            id=product_metadata.get("plan_id") or _field(price, "id"),
            name=_field(product, "name") or _field(price, "nickname") or _field(price, "id"),
            description=_field(product, "description"),
            price=_field(price, "unit_amount") or 0,
            currency=_field(price, "currency") or settings.DEFAULT_CURRENCY,
            interval=_field(recurring, "interval", "month"),
            interval_count=_field(recurring, "interval_count", 1) or 1,
            trial_period_days=_field(recurring, "trial_period_days"),
            features=features,
            popular=product_metadata.get("popular", "").lower() == "true",
            provider_price_id=_field(price, "id"),
            provider_product_id=product_id,
            metadata=product_metadata,
            active=bool(_field(price, "active", True)),
            tier=int(product_metadata.get("tier", 0)),
        )

    async def create_customer_portal_session(self, customer_ref: str, return_url: str) -> str:
        session = await self._call(
            "portal session creation",
            stripe.billing_portal.Session.create,
            customer=customer_ref,
            return_url=return_url,
        )
        return _field(session, "url")

    async def validate_promo_code(self, code: str) -> PromoCode:
        promotion = await self._find_promotion_code(code)
        if promotion is None:
            return PromoCode(
                code=code,
                discount_type="percentage",
                discount_value=0,
                valid=False,
                error="Promo code not found",
            )

        coupon = _field(promotion, "coupon")
        percent_off = _field(coupon, "percent_off")
        if percent_off is not None:
            discount_type, discount_value, currency = "percentage", percent_off, None
        else:
            discount_type = "fixed"
            discount_value = _field(coupon, "amount_off") or 0
            currency = (_field(coupon, "currency") or settings.DEFAULT_CURRENCY).upper()

        return PromoCode(
            id=_field(promotion, "id"),
            code=_field(promotion, "code") or code,
            discount_type=discount_type,
            discount_value=discount_value,
            currency=currency,
            valid=bool(_field(promotion, "active", True)) and bool(_field(coupon, "valid", True)),
            expires_at=_field(promotion, "expires_at"),
            max_redemptions=_field(promotion, "max_redemptions"),
            times_redeemed=_field(promotion, "times_redeemed") or 0,
            metadata=_as_dict(_field(promotion, "metadata")),
        )
