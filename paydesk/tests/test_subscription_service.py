"""
Test subscription orchestration.

Runs against an in-memory SQLite store and a fake provider (no real API calls).
"""
import logging
from datetime import timedelta

import pytest
from sqlalchemy import insert, select

from paydesk.core.database import subscription_plans, subscriptions
from paydesk.core.errors import StoreError
from paydesk.features.billing.provider import BillingProviderError
from paydesk.features.billing.service import SubscriptionService
from paydesk.features.payments.error_log import PaymentErrorLog
from paydesk.features.payments.errors import PaymentError, PaymentErrorType
from paydesk.features.payments.retry import PaymentRetryHandler
from paydesk.models.promo import PromoCode
from paydesk.models.subscription import (
    CreateSubscriptionParams,
    SubscriptionChangeRequest,
    SubscriptionStatus,
    UpdateSubscriptionParams,
)
from paydesk.tests.mocks import NOW, make_subscription, subscription_row


def stored_row(engine, subscription_id):
    with engine.connect() as conn:
        return conn.execute(select(subscriptions).where(subscriptions.c.id == subscription_id)).mappings().first()


@pytest.mark.asyncio
async def test_plans_come_from_store_by_tier(service, seed_plans, provider):
    plans = await service.get_available_plans()

    assert [plan.tier for plan in plans] == [1, 2, 2, 5]
    assert plans[0].id == "basic"
    assert plans[0].provider_price_id == "price_basic"
    assert provider.called("fetch_remote_plans") == []


@pytest.mark.asyncio
async def test_plans_fall_back_to_provider_when_store_empty(service, provider):
    plans = await service.get_available_plans()

    assert len(plans) == 4
    assert len(provider.called("fetch_remote_plans")) == 1


@pytest.mark.asyncio
async def test_plans_fall_back_when_table_missing(service, engine, provider):
    subscription_plans.drop(engine)

    plans = await service.get_available_plans()

    assert plans[0].id == "basic"
    assert len(provider.called("fetch_remote_plans")) == 1


@pytest.mark.asyncio
async def test_current_subscription_absent_is_none(service, seed_plans):
    assert await service.get_current_subscription("user_alice") is None


@pytest.mark.asyncio
async def test_current_subscription_embeds_plan(service, seed_plans, seed_subscription):
    seed_subscription(make_subscription(plan_id="pro"))

    current = await service.get_current_subscription("user_alice")

    assert current.plan_id == "pro"
    assert current.plan.name == "Pro"
    assert current.current_period_end.tzinfo is not None


@pytest.mark.asyncio
async def test_create_subscription_active(service, seed_plans, provider, engine, fixed_now):
    sub = await service.create_subscription(CreateSubscriptionParams(
        plan_id="pro", user_id="user_alice", customer_id="cus_alice", metadata={"ref": "launch"},
    ))

    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_start == fixed_now
    assert sub.current_period_end == fixed_now + timedelta(days=30)
    assert sub.trial_end is None
    assert sub.provider_subscription_id == "sub_remote_1"
    assert sub.metadata == {"ref": "launch", "checkout_session_id": "cs_test_1"}
    assert sub.plan.id == "pro"

    (call,) = provider.called("create_remote_subscription")
    assert call[1] == "price_pro"
    assert stored_row(engine, sub.id)["status"] == "active"


@pytest.mark.asyncio
async def test_create_subscription_with_trial(service, seed_plans, fixed_now):
    sub = await service.create_subscription(CreateSubscriptionParams(
        plan_id="basic", user_id="user_alice", trial_period_days=14,
    ))

    assert sub.status == SubscriptionStatus.TRIALING
    assert sub.trial_start == fixed_now
    assert sub.trial_end == fixed_now + timedelta(days=14)
    assert sub.current_period_end == sub.trial_end


@pytest.mark.asyncio
async def test_create_subscription_yearly_period(service, seed_plans, fixed_now):
    sub = await service.create_subscription(CreateSubscriptionParams(plan_id="enterprise", user_id="user_alice"))
    assert sub.current_period_end == fixed_now + timedelta(days=365)


@pytest.mark.asyncio
async def test_create_subscription_unknown_plan(service, seed_plans, provider, error_log):
    with pytest.raises(PaymentError) as exc_info:
        await service.create_subscription(CreateSubscriptionParams(plan_id="gold", user_id="user_alice"))

    assert exc_info.value.type == PaymentErrorType.PLAN_NOT_FOUND
    assert provider.called("create_remote_subscription") == []
    assert error_log.entries()[-1]["type"] == "plan_not_found"


@pytest.mark.asyncio
async def test_create_subscription_rejects_second_active(service, seed_plans, seed_subscription, provider):
    """A trialing subscription counts as active."""
    seed_subscription(make_subscription(status="trialing", trial_end=NOW + timedelta(days=3)))

    with pytest.raises(PaymentError) as exc_info:
        await service.create_subscription(CreateSubscriptionParams(plan_id="pro", user_id="user_alice"))

    assert exc_info.value.type == PaymentErrorType.INVALID_PLAN_CHANGE
    assert provider.called("create_remote_subscription") == []


@pytest.mark.asyncio
async def test_create_subscription_provider_failure_leaves_no_record(service, seed_plans, provider, engine):
    provider.fail("create_remote_subscription", BillingProviderError(
        "declined", {"type": "card_error", "decline_code": "insufficient_funds"},
    ))

    with pytest.raises(PaymentError) as exc_info:
        await service.create_subscription(CreateSubscriptionParams(plan_id="pro", user_id="user_alice"))

    error = exc_info.value
    assert error.type == PaymentErrorType.INSUFFICIENT_FUNDS
    assert error.metadata["source"] == "provider"
    assert error.metadata["operation"] == "create_remote_subscription"
    with engine.connect() as conn:
        assert conn.execute(select(subscriptions)).fetchall() == []


@pytest.mark.asyncio
async def test_create_subscription_persistence_failure_is_tagged(service, seed_plans, store, monkeypatch):
    async def broken_insert(table, values):
        raise StoreError("disk full")

    monkeypatch.setattr(store, "insert", broken_insert)

    with pytest.raises(PaymentError) as exc_info:
        await service.create_subscription(CreateSubscriptionParams(plan_id="pro", user_id="user_alice"))

    error = exc_info.value
    assert error.type == PaymentErrorType.API_ERROR
    assert error.metadata["source"] == "persistence"
    assert error.metadata["remote_subscription_id"] == "sub_remote_1"
    assert error.retryable is False


@pytest.mark.asyncio
async def test_create_subscription_retries_transient_provider_errors(store, seed_plans, provider, error_log, clock):
    provider.fail("create_remote_subscription", ConnectionError("reset"))
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    service = SubscriptionService(
        store, provider, error_log=error_log, clock=clock,
        retry_handler=PaymentRetryHandler(max_retries=3, sleep=fake_sleep, random_fn=lambda: 0.0),
    )

    sub = await service.create_subscription(CreateSubscriptionParams(plan_id="pro", user_id="user_alice"))

    assert sub.status == SubscriptionStatus.ACTIVE
    assert len(provider.called("create_remote_subscription")) == 2
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_retries_are_recorded_in_service_error_log(store, seed_plans, provider, error_log, clock):
    provider.fail("create_remote_subscription", ConnectionError("reset"))

    async def fake_sleep(delay):
        return None

    handler = PaymentRetryHandler(max_retries=3, sleep=fake_sleep, random_fn=lambda: 0.0)
    service = SubscriptionService(store, provider, error_log=error_log, clock=clock, retry_handler=handler)

    await service.create_subscription(CreateSubscriptionParams(plan_id="pro", user_id="user_alice"))

    assert handler.error_log is error_log
    (entry,) = error_log.entries()
    assert entry["type"] == "network_error"
    assert entry["context"] == {"context": "create_remote_subscription", "attempt": 1, "retry_after": 1.0}


def test_retry_handler_keeps_its_own_error_log(store, provider, error_log):
    own_log = PaymentErrorLog(capacity=5, logger=logging.getLogger("paydesk.test"))
    handler = PaymentRetryHandler(max_retries=2, error_log=own_log)

    SubscriptionService(store, provider, error_log=error_log, retry_handler=handler)

    assert handler.error_log is own_log


@pytest.mark.asyncio
async def test_create_subscription_ignores_malformed_inactive_rows(service, seed_plans, engine):
    """Rows written elsewhere are classified by status alone."""
    row = subscription_row(make_subscription(id="broken", status="canceled"))
    row["current_period_end"] = row["current_period_start"] - timedelta(days=1)
    with engine.begin() as conn:
        conn.execute(insert(subscriptions).values(**row))

    sub = await service.create_subscription(CreateSubscriptionParams(plan_id="pro", user_id="user_alice"))

    assert sub.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_create_subscription_rejects_malformed_active_row(service, seed_plans, engine, provider):
    row = subscription_row(make_subscription(id="broken", status="trialing", trial_end=NOW + timedelta(days=3)))
    row["trial_end"] = None
    with engine.begin() as conn:
        conn.execute(insert(subscriptions).values(**row))

    with pytest.raises(PaymentError) as exc_info:
        await service.create_subscription(CreateSubscriptionParams(plan_id="pro", user_id="user_alice"))

    assert exc_info.value.type == PaymentErrorType.INVALID_PLAN_CHANGE
    assert provider.called("create_remote_subscription") == []


@pytest.mark.asyncio
async def test_update_subscription_merges_metadata(service, seed_plans, seed_subscription):
    seed_subscription(make_subscription(metadata={"a": "1", "b": "2"}))

    sub = await service.update_subscription("sub_local_1", UpdateSubscriptionParams(
        metadata={"b": "3", "c": "4"}, cancel_at_period_end=True,
    ))

    assert sub.metadata == {"a": "1", "b": "3", "c": "4"}
    assert sub.cancel_at_period_end is True


@pytest.mark.asyncio
async def test_update_subscription_plan_change_calls_provider_first(service, seed_plans, seed_subscription, provider):
    seed_subscription(make_subscription(plan_id="pro"))

    sub = await service.update_subscription("sub_local_1", UpdateSubscriptionParams(plan_id="enterprise"))

    assert sub.plan_id == "enterprise"
    assert provider.called("update_remote_subscription") == [
        ("update_remote_subscription", "sub_remote_1", "price_enterprise", "create_prorations"),
    ]


@pytest.mark.asyncio
async def test_update_subscription_invalid_plan_change(service, seed_plans, seed_subscription, provider, engine):
    seed_subscription(make_subscription(status="unpaid", plan_id="pro"))

    with pytest.raises(PaymentError) as exc_info:
        await service.update_subscription("sub_local_1", UpdateSubscriptionParams(plan_id="basic"))

    assert exc_info.value.type == PaymentErrorType.INVALID_PLAN_CHANGE
    assert exc_info.value.message == "Cannot change plan for inactive subscription"
    assert provider.called("update_remote_subscription") == []
    assert stored_row(engine, "sub_local_1")["plan_id"] == "pro"


@pytest.mark.asyncio
async def test_update_missing_subscription(service, seed_plans):
    with pytest.raises(PaymentError) as exc_info:
        await service.update_subscription("nope", UpdateSubscriptionParams(metadata={"a": "1"}))
    assert exc_info.value.type == PaymentErrorType.SUBSCRIPTION_NOT_FOUND


@pytest.mark.asyncio
async def test_cancel_at_period_end_keeps_status(service, seed_plans, seed_subscription, provider):
    seed_subscription(make_subscription())

    sub = await service.cancel_subscription("sub_local_1")

    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.cancel_at_period_end is True
    assert sub.canceled_at is None
    assert provider.called("cancel_remote_subscription") == [("cancel_remote_subscription", "sub_remote_1", True)]


@pytest.mark.asyncio
async def test_cancel_immediately(service, seed_plans, seed_subscription, fixed_now):
    seed_subscription(make_subscription())

    sub = await service.cancel_subscription("sub_local_1", cancel_at_period_end=False)

    assert sub.status == SubscriptionStatus.CANCELED
    assert sub.canceled_at == fixed_now
    assert sub.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_cancel_twice_is_rejected(service, seed_plans, seed_subscription, provider):
    seed_subscription(make_subscription(cancel_at_period_end=True))

    with pytest.raises(PaymentError) as exc_info:
        await service.cancel_subscription("sub_local_1")

    assert exc_info.value.type == PaymentErrorType.SUBSCRIPTION_CANCELED
    assert provider.called("cancel_remote_subscription") == []


@pytest.mark.asyncio
async def test_cancel_provider_failure_leaves_record_unchanged(service, seed_plans, seed_subscription, provider, engine):
    seed_subscription(make_subscription())
    provider.fail("cancel_remote_subscription", BillingProviderError("bad key", {"type": "authentication_error"}))

    with pytest.raises(PaymentError) as exc_info:
        await service.cancel_subscription("sub_local_1")

    assert exc_info.value.type == PaymentErrorType.CONFIGURATION_ERROR
    assert stored_row(engine, "sub_local_1")["cancel_at_period_end"] is False


@pytest.mark.asyncio
async def test_reactivate_scheduled_cancellation(service, seed_plans, seed_subscription, provider):
    seed_subscription(make_subscription(status="canceled", cancel_at_period_end=True, canceled_at=NOW))

    sub = await service.reactivate_subscription("sub_local_1")

    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.cancel_at_period_end is False
    assert sub.canceled_at is None
    assert len(provider.called("reactivate_remote_subscription")) == 1


@pytest.mark.asyncio
async def test_reactivate_immediate_cancellation_rejected(service, seed_plans, seed_subscription, provider):
    seed_subscription(make_subscription(status="canceled", cancel_at_period_end=False, canceled_at=NOW))

    with pytest.raises(PaymentError) as exc_info:
        await service.reactivate_subscription("sub_local_1")

    assert exc_info.value.type == PaymentErrorType.SUBSCRIPTION_CANCELED
    assert provider.called("reactivate_remote_subscription") == []


@pytest.mark.asyncio
async def test_change_plan_upgrade_is_immediate(service, seed_plans, seed_subscription, provider, fixed_now):
    seed_subscription(make_subscription(plan_id="basic"))

    response = await service.change_subscription_plan(SubscriptionChangeRequest(
        subscription_id="sub_local_1", new_plan_id="pro",
    ))

    assert response.change_type == "upgrade"
    assert response.effective_date == fixed_now
    # 15 days left: charge round(2500/30*15)=1250, credit round(1000/30*15)=500
    assert response.proration_amount == 750
    assert response.subscription.plan_id == "pro"
    assert provider.called("update_remote_subscription")[0][3] == "create_prorations"


@pytest.mark.asyncio
async def test_change_plan_downgrade_at_period_end(service, seed_plans, seed_subscription):
    current = seed_subscription(make_subscription(plan_id="pro"))

    response = await service.change_subscription_plan(SubscriptionChangeRequest(
        subscription_id="sub_local_1", new_plan_id="basic", proration_behavior="none",
    ))

    assert response.change_type == "downgrade"
    assert response.effective_date == current.current_period_end
    assert response.proration_amount == 0


@pytest.mark.asyncio
async def test_change_plan_lateral_is_immediate(service, seed_plans, seed_subscription, fixed_now):
    seed_subscription(make_subscription(plan_id="pro"))

    response = await service.change_subscription_plan(SubscriptionChangeRequest(
        subscription_id="sub_local_1", new_plan_id="pro_plus",
    ))

    assert response.change_type == "lateral"
    assert response.effective_date == fixed_now


@pytest.mark.asyncio
async def test_change_plan_to_same_plan_rejected(service, seed_plans, seed_subscription, provider):
    seed_subscription(make_subscription(plan_id="pro"))

    with pytest.raises(PaymentError) as exc_info:
        await service.change_subscription_plan(SubscriptionChangeRequest(
            subscription_id="sub_local_1", new_plan_id="pro",
        ))

    assert exc_info.value.type == PaymentErrorType.INVALID_PLAN_CHANGE
    assert provider.called("update_remote_subscription") == []


@pytest.mark.asyncio
async def test_portal_session_uses_default_return_url(service, provider):
    url = await service.create_customer_portal_session("cus_alice")

    assert url == "https://billing.example.com/session/cus_alice"
    (call,) = provider.called("create_customer_portal_session")
    assert call[2].startswith("http")


@pytest.mark.asyncio
async def test_portal_session_rejects_bad_return_url(service, provider):
    with pytest.raises(PaymentError) as exc_info:
        await service.create_customer_portal_session("cus_alice", "javascript:alert(1)")

    assert exc_info.value.type == PaymentErrorType.MISSING_REQUIRED_FIELD
    assert provider.called("create_customer_portal_session") == []


@pytest.mark.asyncio
async def test_validate_promo_code(service, provider, fixed_now):
    provider.promo_codes = {
        "SAVE20": PromoCode(code="SAVE20", discount_type="percentage", discount_value=20),
        "OLD": PromoCode(code="OLD", discount_type="percentage", discount_value=10,
                         expires_at=int(fixed_now.timestamp()) - 60),
        "USEDUP": PromoCode(code="USEDUP", discount_type="fixed", discount_value=500, currency="USD",
                            max_redemptions=3, times_redeemed=3),
    }

    assert (await service.validate_promo_code("save20")).valid is True
    assert (await service.validate_promo_code("OLD")).error == "Promo code has expired"
    assert (await service.validate_promo_code("USEDUP")).error == "Promo code has reached its usage limit"
    assert (await service.validate_promo_code("MISSING")).valid is False

    malformed = await service.validate_promo_code("bad code!")
    assert malformed.valid is False
    assert malformed.error == "Promo code contains invalid characters"
    assert len(provider.called("validate_promo_code")) == 4
