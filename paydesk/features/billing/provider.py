"""
Billing provider protocol.

Defines the interface for payment providers (Stripe, etc.).
This allows swapping providers without changing subscription logic.
"""
from typing import Any, Dict, List, Optional, Protocol

from paydesk.models.plan import SubscriptionPlan
from paydesk.models.promo import PromoCode
from paydesk.models.subscription import ProrationBehavior, RemoteSubscription


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Provisioning, updating, canceling and reactivating remote subscriptions
    - Listing purchasable plans
    - Customer portal sessions
    - Promo code lookup
    """

    async def create_remote_subscription(
        self,
        plan_ref: str,
        trial_days: Optional[int] = None,
        promo_code: Optional[str] = None,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> RemoteSubscription:
        """
        Provision a subscription for a plan.

        Args:
            plan_ref: Provider price ID of the plan
            trial_days: Trial length in days (optional)
            promo_code: Promotion code to apply (optional)
            customer_ref: Provider customer ID (optional)
            metadata: Metadata to attach (optional)

        Returns:
            Reference to the remote subscription or checkout session

        Raises:
            BillingProviderError: If provisioning fails
        """
        ...

    async def update_remote_subscription(
        self,
        subscription_ref: str,
        new_plan_ref: str,
        proration_behavior: ProrationBehavior = "create_prorations",
    ) -> None:
        """Switch a remote subscription to another price."""
        ...

    async def cancel_remote_subscription(self, subscription_ref: str, at_period_end: bool = True) -> None:
        """Cancel now, or flag the subscription to end with its current period."""
        ...

    async def reactivate_remote_subscription(self, subscription_ref: str) -> None:
        ...

    async def fetch_remote_plans(self) -> List[SubscriptionPlan]:
        """Active recurring plans ordered by tier, then price."""
        ...

    async def create_customer_portal_session(self, customer_ref: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL
        """
        ...

    async def validate_promo_code(self, code: str) -> PromoCode:
        """Resolve a promotion code. Unknown codes come back with ``valid=False``."""
        ...


class BillingProviderError(Exception):
    """Provider failure carrying the raw provider error payload."""

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.payload: Dict[str, Any] = dict(payload or {})
        self.payload.setdefault("message", message)
