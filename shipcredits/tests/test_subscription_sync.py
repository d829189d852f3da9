"""Pull-based subscription sync against the payment processor."""
from __future__ import annotations

from datetime import timedelta

import pytest

from shipcredits.app.credits import (
    ProviderUnavailableError,
    ReconciliationOutcome,
    SubscriptionStatus,
)
from shipcredits.tests.fakes import (
    VALID_SIGNATURE,
    FakePaymentProvider,
    FrozenClock,
    InMemoryCreditRepository,
    build_service,
    monthly_subscription,
    provider_event_payload,
)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def repository() -> InMemoryCreditRepository:
    repo = InMemoryCreditRepository()
    repo.add_plan("starter", 100)
    repo.add_plan("pro", 500)
    repo.save_billing_customer("cust-1", provider_customer_id="cus_1", email=None)
    return repo


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def service(repository, provider, clock):
    return build_service(repository=repository, provider=provider, clock=clock)


def _remote(start, *, sub_id="sub_1", status="active", price="starter", days=30):
    return {
        "id": sub_id,
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "metadata": {},
        "items": {
            "data": [
                {
                    "price": {"id": "price_123", "lookup_key": price},
                    "current_period_start": int(start.timestamp()),
                    "current_period_end": int((start + timedelta(days=days)).timestamp()),
                }
            ]
        },
    }


def test_sync_without_processor_customer_is_a_no_op(service, provider):
    result = service.sync_subscription("cust-2")

    assert result.customer_id == "cust-2"
    assert result.synced == 0
    assert result.subscription is None
    assert provider.calls["list_subscriptions"] == 0


def test_sync_repairs_period_after_missed_renewal(service, repository, provider, clock):
    repository.add_subscription(
        monthly_subscription("cust-1", start=clock.now - timedelta(days=31), subscription_id="sub_1")
    )
    renewed_start = clock.now - timedelta(days=1)
    provider.subscriptions["cus_1"] = [_remote(renewed_start)]

    result = service.sync_subscription("cust-1")

    assert result.synced == 1
    assert result.subscription.subscription_id == "sub_1"
    assert result.subscription.current_period_start == renewed_start
    assert result.subscription.current_period_end == renewed_start + timedelta(days=30)
    assert repository.get_subscription("sub_1").last_event_at == clock.now
    assert service.get_balance("cust-1").monthly_credits == 100


def test_sync_never_rewinds_a_renewed_period(service, repository, provider, clock):
    current = repository.add_subscription(
        monthly_subscription("cust-1", start=clock.now - timedelta(days=1), subscription_id="sub_1")
    )
    provider.subscriptions["cus_1"] = [_remote(clock.now - timedelta(days=31))]

    result = service.sync_subscription("cust-1")

    assert result.subscription.current_period_start == current.current_period_start
    assert result.subscription.current_period_end == current.current_period_end


def test_sync_applies_cancellation(service, repository, provider, clock):
    repository.add_subscription(
        monthly_subscription("cust-1", start=clock.now - timedelta(days=1), subscription_id="sub_1")
    )
    provider.subscriptions["cus_1"] = [_remote(clock.now - timedelta(days=1), status="canceled")]

    result = service.sync_subscription("cust-1")

    assert result.subscription is None
    assert repository.get_subscription("sub_1").status == SubscriptionStatus.CANCELED
    assert service.available_credits("cust-1") == 0


def test_sync_keeps_newest_active_subscription(service, repository, provider, clock):
    provider.subscriptions["cus_1"] = [
        _remote(clock.now - timedelta(days=1), sub_id="sub_new", price="pro"),
        _remote(clock.now - timedelta(days=20), sub_id="sub_old"),
        _remote(clock.now - timedelta(days=2), sub_id="sub_lapsed", status="past_due"),
    ]

    result = service.sync_subscription("cust-1")

    assert result.synced == 3
    assert result.subscription.subscription_id == "sub_new"
    assert repository.get_subscription("sub_old").status == SubscriptionStatus.INACTIVE
    assert repository.get_subscription("sub_lapsed").status == SubscriptionStatus.INACTIVE
    assert service.get_balance("cust-1").monthly_credits == 500


def test_sync_retries_unavailable_processor(service, provider, clock):
    provider.subscriptions["cus_1"] = [_remote(clock.now - timedelta(days=1))]
    provider.unavailable["list_subscriptions"] = 1

    result = service.sync_subscription("cust-1")

    assert result.subscription is not None
    assert provider.calls["list_subscriptions"] == 2


def test_sync_surfaces_processor_outage(service, repository, provider, clock):
    provider.unavailable["list_subscriptions"] = 5

    with pytest.raises(ProviderUnavailableError):
        service.sync_subscription("cust-1")

    assert repository.get_subscription("sub_1") is None


def test_webhook_older_than_sync_is_stale(service, repository, provider, clock):
    provider.subscriptions["cus_1"] = [_remote(clock.now - timedelta(days=1), price="pro")]
    service.sync_subscription("cust-1")
    old_event = _remote(clock.now - timedelta(days=1), status="past_due")
    payload = provider_event_payload(
        "evt_old", "customer.subscription.updated", old_event, created=int((clock.now - timedelta(minutes=1)).timestamp())
    )

    _, outcome = service.handle_webhook(payload, VALID_SIGNATURE)

    assert outcome == ReconciliationOutcome.STALE
    subscription = repository.get_subscription("sub_1")
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.plan_id == "pro"
