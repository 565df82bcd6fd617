# paydesk/conftest.py
import logging

import pytest
from sqlalchemy import insert

from paydesk.core.database import (
    create_all_tables,
    create_store_engine,
    drop_all_tables,
    subscription_plans,
    subscriptions,
)
from paydesk.features.billing.service import SubscriptionService
from paydesk.features.billing.store import SqlStore
from paydesk.features.payments.error_log import PaymentErrorLog
from paydesk.tests.mocks import NOW, FakeProvider, make_plan, plan_row, subscription_row


@pytest.fixture
def fixed_now():
    """The instant every test treats as 'now'."""
    return NOW


@pytest.fixture
def clock(fixed_now):
    return lambda: fixed_now


@pytest.fixture
def engine():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps the single connection alive across the worker threads
    the store runs its queries on.
    """
    eng = create_store_engine("sqlite://")
    create_all_tables(eng)
    yield eng
    drop_all_tables(eng)
    eng.dispose()


@pytest.fixture
def store(engine):
    return SqlStore(engine)


@pytest.fixture
def catalog():
    """Four plans: two tiers apart, one lateral pair, one yearly."""
    return [
        make_plan(id="basic", name="Basic", price=1000, tier=1, features=["reports"], provider_price_id="price_basic"),
        make_plan(id="pro", name="Pro", price=2500, tier=2, provider_price_id="price_pro"),
        make_plan(id="pro_plus", name="Pro Plus", price=2900, tier=2, provider_price_id="price_pro_plus"),
        make_plan(id="enterprise", name="Enterprise", price=100000, interval="year", tier=5,
                  features=["reports", "exports", "sso"], provider_price_id="price_enterprise"),
    ]


@pytest.fixture
def seed_plans(engine, catalog):
    """Write the catalog into the plan store."""
    with engine.begin() as conn:
        conn.execute(insert(subscription_plans), [plan_row(plan) for plan in catalog])
    return catalog


@pytest.fixture
def seed_subscription(engine):
    """Insert a UserSubscription row directly, bypassing the service."""
    def _seed(subscription):
        with engine.begin() as conn:
            conn.execute(insert(subscriptions).values(**subscription_row(subscription)))
        return subscription
    return _seed


@pytest.fixture
def provider(catalog):
    return FakeProvider(plans=catalog)


@pytest.fixture
def error_log():
    return PaymentErrorLog(capacity=10, logger=logging.getLogger("paydesk.test"))


@pytest.fixture
def service(store, provider, error_log, clock):
    return SubscriptionService(store, provider, error_log=error_log, clock=clock)
