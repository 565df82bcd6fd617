"""
Subscription orchestration service.

Coordinates the subscription lifecycle:
- Plan lookup (plan store first, payment provider as fallback)
- Creation, update, cancellation and reactivation
- Plan changes with proration preview
- Customer portal sessions and promo code checks

Every step runs in order: lookup, validate, remote call, persist. Provider
and store failures are normalized to PaymentError before they leave this
module. All provider-specific code lives behind the BillingProvider protocol.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from paydesk.core.config import settings
from paydesk.core.errors import RecordNotFoundError, StoreError, TableNotFoundError
from paydesk.core.logging import log_event
from paydesk.features.billing.provider import BillingProvider
from paydesk.features.billing.store import SubscriptionStore
from paydesk.features.discounts.calculator import (
    calculate_proration,
    has_reached_usage_limit,
    is_promo_code_expired,
    plan_period,
)
from paydesk.features.discounts.validation import validate_promo_code_format, validate_url
from paydesk.features.payments.error_log import PaymentErrorLog
from paydesk.features.payments.errors import PaymentError, PaymentErrorType, handle_stripe_error
from paydesk.features.payments.retry import PaymentRetryHandler
from paydesk.features.subscriptions.plan_change import get_change_type, validate_plan_change
from paydesk.features.subscriptions.state import (
    SUBSCRIPTION_ERROR_MESSAGES,
    can_cancel_subscription,
    can_reactivate_subscription,
    get_days_until_renewal,
    is_active_status,
    is_canceled_subscription,
)
from paydesk.models.plan import SubscriptionPlan
from paydesk.models.promo import PromoCode
from paydesk.models.subscription import (
    CreateSubscriptionParams,
    SubscriptionChangeRequest,
    SubscriptionChangeResponse,
    SubscriptionStatus,
    UpdateSubscriptionParams,
    UserSubscription,
)

PLANS_TABLE = "subscription_plans"
SUBSCRIPTIONS_TABLE = "subscriptions"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stores without timezone support hand back naive UTC datetimes."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def map_plan_row(row: Dict[str, Any]) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row["id"],
        name=row["name"],
        description=row.get("description"),
        price=row["price"],
        currency=row["currency"],
        interval=row["interval"],
        interval_count=row.get("interval_count") or 1,
        trial_period_days=row.get("trial_period_days"),
        features=row.get("features") or [],
        popular=bool(row.get("popular")),
        provider_price_id=row.get("stripe_price_id"),
        provider_product_id=row.get("stripe_product_id"),
        metadata={key: str(value) for key, value in (row.get("metadata") or {}).items()},
        active=bool(row.get("active", True)),
        tier=row.get("tier") or 0,
    )


def map_subscription_row(row: Dict[str, Any], plan: Optional[SubscriptionPlan] = None) -> UserSubscription:
    return UserSubscription(
        id=row["id"],
        user_id=row["user_id"],
        provider_subscription_id=row.get("stripe_subscription_id"),
        provider_customer_id=row.get("stripe_customer_id"),
        plan_id=row["plan_id"],
        status=row["status"],
        current_period_start=_utc(row["current_period_start"]),
        current_period_end=_utc(row["current_period_end"]),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=_utc(row.get("canceled_at")),
        trial_start=_utc(row.get("trial_start")),
        trial_end=_utc(row.get("trial_end")),
        metadata=row.get("metadata") or {},
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
        plan=plan,
    )


class SubscriptionService:
    """
    Owns the write path for subscription records.

    Args:
        store: Persistence for plans and subscriptions
        provider: Payment provider client
        error_log: Where normalized errors are recorded (a private one if omitted)
        retry_handler: Optional retry policy applied to provider calls
        clock: Returns the current UTC time (for tests)
    """

    def __init__(
        self,
        store: SubscriptionStore,
        provider: BillingProvider,
        error_log: Optional[PaymentErrorLog] = None,
        retry_handler: Optional[PaymentRetryHandler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provider = provider
        self.error_log = error_log if error_log is not None else PaymentErrorLog()
        self.retry_handler = retry_handler
        if retry_handler is not None and retry_handler.error_log is None:
            retry_handler.error_log = self.error_log
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # --- error plumbing -------------------------------------------------

    def _record(self, error: PaymentError, operation: str) -> PaymentError:
        self.error_log.record(error, {"operation": operation, **error.metadata})
        return error

    def _fail(self, error_type: PaymentErrorType, message: str, operation: str, **metadata: Any) -> PaymentError:
        error = PaymentError(error_type, message, metadata={"operation": operation, **metadata})
        return self._record(error, operation)

    async def _call_provider(self, operation: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        async def attempt():
            return await fn(*args, **kwargs)

        try:
            if self.retry_handler is not None:
                return await self.retry_handler.execute(attempt, context=operation)
            return await attempt()
        except Exception as exc:
            error = handle_stripe_error(exc)
            error.metadata.setdefault("source", "provider")
            error.metadata.setdefault("operation", operation)
            self._record(error, operation)
            if error is exc:
                raise
            raise error from exc

    async def _call_store(self, operation: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(*args, **kwargs)
        except PaymentError:
            raise
        except RecordNotFoundError as exc:
            raise self._persistence_error(PaymentErrorType.SUBSCRIPTION_NOT_FOUND, exc, operation) from exc
        except Exception as exc:
            raise self._persistence_error(PaymentErrorType.API_ERROR, exc, operation) from exc

    def _persistence_error(self, error_type: PaymentErrorType, exc: Exception, operation: str) -> PaymentError:
        error = PaymentError(
            error_type,
            f"Persistence failure during {operation}: {exc}",
            code=getattr(exc, "code", None),
            original_error=exc,
            metadata={"source": "persistence", "operation": operation},
            retryable=False,
        )
        return self._record(error, operation)

    # --- lookups --------------------------------------------------------

    async def get_available_plans(self) -> List[SubscriptionPlan]:
        """Active plans by tier from the plan store, else from the provider."""
        try:
            rows = await self.store.select_many(PLANS_TABLE, {"active": True}, order_by=("tier", False))
        except TableNotFoundError:
            log_event(
                "warning",
                "subscription_plans table does not exist, using provider fallback",
                event_type="plans.fallback",
            )
            rows = []
        except StoreError as exc:
            raise self._persistence_error(PaymentErrorType.API_ERROR, exc, "get_available_plans") from exc

        if rows:
            return [map_plan_row(row) for row in rows]

        plans = await self._call_provider("fetch_remote_plans", self.provider.fetch_remote_plans)
        return [plan for plan in plans if plan.active]

    async def _find_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        plans = await self.get_available_plans()
        return next((plan for plan in plans if plan.id == plan_id), None)

    async def _stored_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        """Plan row to embed in a subscription, if the plan store has one."""
        try:
            row = await self.store.select_one(PLANS_TABLE, {"id": plan_id})
        except TableNotFoundError:
            return None
        except StoreError as exc:
            raise self._persistence_error(PaymentErrorType.API_ERROR, exc, "load_plan") from exc
        return map_plan_row(row) if row else None

    async def get_current_subscription(self, user_id: str) -> Optional[UserSubscription]:
        """The user's newest ``active`` subscription, or None."""
        row = await self._call_store(
            "get_current_subscription",
            self.store.select_one,
            SUBSCRIPTIONS_TABLE,
            {"user_id": user_id, "status": SubscriptionStatus.ACTIVE.value},
            order_by=("created_at", True),
        )
        if row is None:
            return None
        return map_subscription_row(row, await self._stored_plan(row["plan_id"]))

    async def _holds_active_subscription(self, user_id: str) -> bool:
        rows = await self._call_store(
            "create_subscription",
            self.store.select_many,
            SUBSCRIPTIONS_TABLE,
            {"user_id": user_id},
        )
        return any(is_active_status(row.get("status")) for row in rows)

    async def _load_subscription(self, subscription_id: str, operation: str) -> Tuple[UserSubscription, Dict[str, Any]]:
        row = await self._call_store(operation, self.store.select_one, SUBSCRIPTIONS_TABLE, {"id": subscription_id})
        if row is None:
            raise self._fail(
                PaymentErrorType.SUBSCRIPTION_NOT_FOUND,
                SUBSCRIPTION_ERROR_MESSAGES["SUBSCRIPTION_NOT_FOUND"],
                operation,
                subscription_id=subscription_id,
            )
        return map_subscription_row(row), row

    def _remote_ref(self, subscription: UserSubscription, operation: str) -> str:
        if not subscription.provider_subscription_id:
            raise self._fail(
                PaymentErrorType.SUBSCRIPTION_NOT_FOUND,
                "Subscription has no provider reference yet",
                operation,
                subscription_id=subscription.id,
            )
        return subscription.provider_subscription_id

    async def _save(self, subscription_id: str, values: Dict[str, Any], operation: str, plan: Optional[SubscriptionPlan] = None) -> UserSubscription:
        values = {**values, "updated_at": self.clock()}
        row = await self._call_store(operation, self.store.update, SUBSCRIPTIONS_TABLE, {"id": subscription_id}, values)
        return map_subscription_row(row, plan)

    # --- lifecycle ------------------------------------------------------

    def _period_bounds(self, plan: SubscriptionPlan, trial_days: int) -> Dict[str, Any]:
        now = self.clock()
        if trial_days > 0:
            trial_end = now + timedelta(days=trial_days)
            return {
                "status": SubscriptionStatus.TRIALING.value,
                "current_period_start": now,
                "current_period_end": trial_end,
                "trial_start": now,
                "trial_end": trial_end,
            }
        return {
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_start": now,
            "current_period_end": now + plan_period(plan),
            "trial_start": None,
            "trial_end": None,
        }

    async def create_subscription(self, params: CreateSubscriptionParams) -> UserSubscription:
        """
        Provision a subscription remotely, then record it locally.

        Raises:
            PaymentError: plan_not_found, invalid_plan_change when the user
                already holds an active subscription, or a normalized
                provider/persistence failure
        """
        operation = "create_subscription"
        log_event("info", "subscription.create.start", user_id=params.user_id, event_type="subscription.create",
                  extra={"plan_id": params.plan_id})

        plan = await self._find_plan(params.plan_id)
        if plan is None:
            raise self._fail(
                PaymentErrorType.PLAN_NOT_FOUND,
                SUBSCRIPTION_ERROR_MESSAGES["PLAN_NOT_FOUND"],
                operation,
                plan_id=params.plan_id,
            )

        if await self._holds_active_subscription(params.user_id):
            raise self._fail(
                PaymentErrorType.INVALID_PLAN_CHANGE,
                SUBSCRIPTION_ERROR_MESSAGES["SUBSCRIPTION_ALREADY_ACTIVE"],
                operation,
                user_id=params.user_id,
            )

        promo_code = None
        if params.promo_code:
            check = validate_promo_code_format(params.promo_code)
            if not check.valid:
                raise self._fail(PaymentErrorType.MISSING_REQUIRED_FIELD, check.error, operation)
            promo_code = check.sanitized.upper()

        trial_days = params.trial_period_days
        if trial_days is None:
            trial_days = plan.trial_period_days or 0

        remote = await self._call_provider(
            "create_remote_subscription",
            self.provider.create_remote_subscription,
            plan.provider_price_id or plan.id,
            trial_days=trial_days or None,
            promo_code=promo_code,
            customer_ref=params.customer_id,
            metadata=params.metadata,
        )

        now = self.clock()
        row = {
            "id": str(uuid.uuid4()),
            "user_id": params.user_id,
            "stripe_subscription_id": remote.subscription_id,
            "stripe_customer_id": params.customer_id,
            "plan_id": plan.id,
            "cancel_at_period_end": False,
            "canceled_at": None,
            "metadata": {**(params.metadata or {}), "checkout_session_id": remote.session_id},
            "created_at": now,
            "updated_at": now,
            **self._period_bounds(plan, trial_days),
        }

        try:
            stored = await self._call_store(operation, self.store.insert, SUBSCRIPTIONS_TABLE, row)
        except PaymentError as error:
            error.metadata["remote_subscription_id"] = remote.subscription_id
            error.metadata["session_id"] = remote.session_id
            log_event(
                "warning",
                "subscription.create.orphaned_remote",
                user_id=params.user_id,
                event_type="subscription.create",
                error_code=error.type.value,
                extra={"remote_subscription_id": remote.subscription_id, "session_id": remote.session_id},
            )
            raise

        subscription = map_subscription_row(stored, plan)
        log_event("info", "subscription.create.done", user_id=params.user_id, subscription_id=subscription.id,
                  event_type="subscription.create", extra={"status": subscription.status.value})
        return subscription

    async def update_subscription(self, subscription_id: str, params: UpdateSubscriptionParams) -> UserSubscription:
        """
        Apply a plan change, cancellation flag or metadata merge.

        A plan change is validated and applied at the provider before any
        local field changes.
        """
        operation = "update_subscription"
        current, row = await self._load_subscription(subscription_id, operation)
        plan = None

        if params.plan_id and params.plan_id != current.plan_id:
            plan = await self._find_plan(params.plan_id)
            if plan is None:
                raise self._fail(
                    PaymentErrorType.PLAN_NOT_FOUND,
                    SUBSCRIPTION_ERROR_MESSAGES["PLAN_NOT_FOUND"],
                    operation,
                    plan_id=params.plan_id,
                )

            validation = validate_plan_change(current, plan)
            if not validation.valid:
                raise self._fail(
                    PaymentErrorType.INVALID_PLAN_CHANGE,
                    validation.error,
                    operation,
                    subscription_id=subscription_id,
                )

            await self._call_provider(
                "update_remote_subscription",
                self.provider.update_remote_subscription,
                self._remote_ref(current, operation),
                plan.provider_price_id or plan.id,
                "create_prorations",
            )

        values: Dict[str, Any] = {}
        if plan is not None:
            values["plan_id"] = plan.id
        if params.cancel_at_period_end is not None:
            values["cancel_at_period_end"] = params.cancel_at_period_end
        if params.metadata:
            values["metadata"] = {**(row.get("metadata") or {}), **params.metadata}

        subscription = await self._save(subscription_id, values, operation, plan)
        log_event("info", "subscription.update.done", user_id=subscription.user_id, subscription_id=subscription_id,
                  event_type="subscription.update", extra={"fields": sorted(values)})
        return subscription

    async def cancel_subscription(self, subscription_id: str, cancel_at_period_end: bool = True) -> UserSubscription:
        """
        Cancel now, or schedule cancellation for the end of the period.

        A scheduled cancellation only sets the flag; the status changes when
        the period ends.
        """
        operation = "cancel_subscription"
        current, _ = await self._load_subscription(subscription_id, operation)

        if not can_cancel_subscription(current):
            raise self._fail(
                PaymentErrorType.SUBSCRIPTION_CANCELED,
                SUBSCRIPTION_ERROR_MESSAGES["SUBSCRIPTION_ALREADY_CANCELED"],
                operation,
                subscription_id=subscription_id,
            )

        await self._call_provider(
            "cancel_remote_subscription",
            self.provider.cancel_remote_subscription,
            self._remote_ref(current, operation),
            cancel_at_period_end,
        )

        values: Dict[str, Any] = {"cancel_at_period_end": cancel_at_period_end}
        if not cancel_at_period_end:
            values["status"] = SubscriptionStatus.CANCELED.value
            values["canceled_at"] = self.clock()

        subscription = await self._save(subscription_id, values, operation)
        log_event("info", "subscription.cancel.done", user_id=subscription.user_id, subscription_id=subscription_id,
                  event_type="subscription.cancel", extra={"at_period_end": cancel_at_period_end})
        return subscription

    async def reactivate_subscription(self, subscription_id: str) -> UserSubscription:
        operation = "reactivate_subscription"
        current, _ = await self._load_subscription(subscription_id, operation)

        if not can_reactivate_subscription(current):
            error_type = (
                PaymentErrorType.SUBSCRIPTION_CANCELED
                if is_canceled_subscription(current)
                else PaymentErrorType.INVALID_PLAN_CHANGE
            )
            raise self._fail(
                error_type,
                SUBSCRIPTION_ERROR_MESSAGES["CANNOT_REACTIVATE"],
                operation,
                subscription_id=subscription_id,
                status=current.status.value,
            )

        await self._call_provider(
            "reactivate_remote_subscription",
            self.provider.reactivate_remote_subscription,
            self._remote_ref(current, operation),
        )

        subscription = await self._save(
            subscription_id,
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "cancel_at_period_end": False,
                "canceled_at": None,
            },
            operation,
        )
        log_event("info", "subscription.reactivate.done", user_id=subscription.user_id,
                  subscription_id=subscription_id, event_type="subscription.reactivate")
        return subscription

    async def change_subscription_plan(self, request: SubscriptionChangeRequest) -> SubscriptionChangeResponse:
        """
        Move a subscription to another plan.

        Upgrades and lateral moves take effect now, downgrades at the end of
        the current period. ``proration_amount`` is the net charge for the
        remaining days of the period (negative for a credit).
        """
        operation = "change_subscription_plan"
        current, _ = await self._load_subscription(request.subscription_id, operation)

        plans = await self.get_available_plans()
        current_plan = next((plan for plan in plans if plan.id == current.plan_id), None)
        new_plan = next((plan for plan in plans if plan.id == request.new_plan_id), None)
        if current_plan is None or new_plan is None:
            raise self._fail(
                PaymentErrorType.PLAN_NOT_FOUND,
                SUBSCRIPTION_ERROR_MESSAGES["PLAN_NOT_FOUND"],
                operation,
                plan_id=request.new_plan_id if new_plan is None else current.plan_id,
            )

        validation = validate_plan_change(current, new_plan)
        if not validation.valid:
            raise self._fail(
                PaymentErrorType.INVALID_PLAN_CHANGE,
                validation.error,
                operation,
                subscription_id=request.subscription_id,
            )

        change_type = get_change_type(current_plan, new_plan)
        now = self.clock()

        proration_amount = 0
        if request.proration_behavior != "none":
            days_remaining = get_days_until_renewal(current, now)
            proration_amount = calculate_proration(current_plan, new_plan, days_remaining).net_amount

        await self._call_provider(
            "update_remote_subscription",
            self.provider.update_remote_subscription,
            self._remote_ref(current, operation),
            new_plan.provider_price_id or new_plan.id,
            request.proration_behavior,
        )

        subscription = await self._save(request.subscription_id, {"plan_id": new_plan.id}, operation, new_plan)
        effective_date = current.current_period_end if change_type == "downgrade" else now

        log_event("info", "subscription.change_plan.done", user_id=subscription.user_id,
                  subscription_id=subscription.id, event_type="subscription.change_plan",
                  extra={"change_type": change_type, "proration_amount": proration_amount})
        return SubscriptionChangeResponse(
            subscription=subscription,
            proration_amount=proration_amount,
            effective_date=effective_date,
            change_type=change_type,
        )

    # --- provider passthroughs -----------------------------------------

    async def create_customer_portal_session(self, customer_id: str, return_url: Optional[str] = None) -> str:
        """Portal URL for the customer's self-service billing page."""
        operation = "create_customer_portal_session"
        check = validate_url(return_url or settings.PORTAL_RETURN_URL, "Return URL")
        if not check.valid:
            raise self._fail(PaymentErrorType.MISSING_REQUIRED_FIELD, check.error, operation)

        return await self._call_provider(
            operation,
            self.provider.create_customer_portal_session,
            customer_id,
            check.sanitized,
        )

    async def validate_promo_code(self, code: str) -> PromoCode:
        """Resolve a promo code; malformed, expired or used-up codes come back invalid."""
        check = validate_promo_code_format(code)
        if not check.valid:
            return PromoCode(
                code=code if isinstance(code, str) else "",
                discount_type="percentage",
                discount_value=0,
                valid=False,
                error=check.error,
            )

        promo = await self._call_provider(
            "validate_promo_code",
            self.provider.validate_promo_code,
            check.sanitized.upper(),
        )
        if not promo.valid:
            return promo
        if is_promo_code_expired(promo.expires_at, self.clock()):
            return promo.model_copy(update={"valid": False, "error": "Promo code has expired"})
        if has_reached_usage_limit(promo.times_redeemed, promo.max_redemptions):
            return promo.model_copy(update={"valid": False, "error": "Promo code has reached its usage limit"})
        return promo
