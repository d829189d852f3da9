from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from shipcredits.app.credits import (
    AutoRechargeReason,
    AutoRechargeSettings,
    BillingTransactionStatus,
    BillingTransactionType,
    CreditAuditEventType,
    ProviderUnavailableError,
)
from shipcredits.app.credits.auto_recharge import add_months
from shipcredits.tests.fakes import (
    FakePaymentProvider,
    FrozenClock,
    InMemoryCreditRepository,
    build_service,
    completed_purchase,
)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def repository(clock) -> InMemoryCreditRepository:
    repo = InMemoryCreditRepository()
    repo.insert_purchase(
        completed_purchase("cust-1", credits=40, expires_at=clock.now + timedelta(days=10), created_at=clock.now)
    )
    return repo


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def service(repository, provider, clock):
    return build_service(repository=repository, provider=provider, clock=clock)


def _enable(repository, *, enabled=True, payment_method_id="pm_1", threshold=100, amount=500):
    return repository.save_auto_recharge_settings(
        AutoRechargeSettings(
            customer_id="cust-1",
            enabled=enabled,
            min_credits_threshold=threshold,
            recharge_amount=amount,
            payment_method_id=payment_method_id,
        )
    )


def test_recharges_when_balance_below_threshold(service, repository, provider, clock):
    _enable(repository)

    result = service.check_and_trigger_auto_recharge("cust-1")

    assert result.triggered is True
    assert result.reason == AutoRechargeReason.RECHARGED
    assert result.available_credits == 540
    (charge,) = provider.charges
    assert charge["amount"] == 12500
    assert charge["payment_method"] == "pm_1"
    assert charge["idempotency_key"] == "auto-recharge:cust-1:pm_1:1"
    purchase = result.purchase
    assert purchase.is_auto_recharge is True
    assert purchase.credits_amount == 500
    assert purchase.price_per_credit_cents == 25
    assert purchase.expires_at == add_months(clock.now, 6)
    (transaction,) = repository.transactions
    assert transaction.type == BillingTransactionType.AUTO_RECHARGE
    assert transaction.status == BillingTransactionStatus.SUCCEEDED
    assert transaction.credits_added == 500
    assert service.available_credits("cust-1") == 540
    assert service.event_logger.events[-1].event_type == CreditAuditEventType.AUTO_RECHARGE_SUCCEEDED


def test_second_check_after_recharge_does_nothing(service, repository, provider):
    _enable(repository)
    service.check_and_trigger_auto_recharge("cust-1")

    again = service.check_and_trigger_auto_recharge("cust-1")

    assert again.triggered is False
    assert again.reason == AutoRechargeReason.ABOVE_THRESHOLD
    assert len(provider.charges) == 1


def test_declined_charge_records_failure_and_notifies(service, repository, provider):
    _enable(repository)
    provider.decline_charges = True

    result = service.check_and_trigger_auto_recharge("cust-1")

    assert result.triggered is False
    assert result.reason == AutoRechargeReason.PAYMENT_DECLINED
    assert result.available_credits == 40
    assert result.message == "Your card was declined."
    (transaction,) = repository.transactions
    assert transaction.status == BillingTransactionStatus.FAILED
    assert transaction.credits_added == 0
    assert [p for p in repository.purchases.values() if p.is_auto_recharge] == []
    (settings, reason) = service.notifier.auto_recharge_failures[0]
    assert settings.customer_id == "cust-1"
    assert reason == "Your card was declined."
    assert service.available_credits("cust-1") == 40


def test_retry_after_decline_uses_new_idempotency_key(service, repository, provider):
    _enable(repository)
    provider.decline_charges = True
    service.check_and_trigger_auto_recharge("cust-1")
    provider.decline_charges = False

    result = service.check_and_trigger_auto_recharge("cust-1")

    assert result.reason == AutoRechargeReason.RECHARGED
    assert [charge["idempotency_key"] for charge in provider.charges] == [
        "auto-recharge:cust-1:pm_1:1",
        "auto-recharge:cust-1:pm_1:2",
    ]


def test_disabled_settings_skip(service, repository, provider):
    _enable(repository, enabled=False)

    result = service.check_and_trigger_auto_recharge("cust-1")

    assert result.reason == AutoRechargeReason.DISABLED
    assert provider.charges == []


def test_missing_settings_count_as_disabled(service, provider):
    assert service.check_and_trigger_auto_recharge("cust-1").reason == AutoRechargeReason.DISABLED
    assert provider.customers == []


def test_no_payment_method_skip(service, repository, provider):
    _enable(repository, payment_method_id=None)

    result = service.check_and_trigger_auto_recharge("cust-1")

    assert result.reason == AutoRechargeReason.NO_PAYMENT_METHOD
    assert provider.charges == []


def test_balance_at_threshold_does_not_recharge(service, repository, provider):
    _enable(repository, threshold=50)
    for _ in range(30):
        service.consume_credit("cust-1")
    assert service.available_credits("cust-1") == 10
    repository.insert_purchase(
        completed_purchase(
            "cust-1",
            credits=40,
            expires_at=service.clock() + timedelta(days=3),
            created_at=service.clock(),
            purchase_id="cp_topup",
        )
    )

    result = service.check_and_trigger_auto_recharge("cust-1")

    assert result.reason == AutoRechargeReason.ABOVE_THRESHOLD
    assert result.available_credits == 50
    assert provider.charges == []


def test_network_failure_on_charge_is_not_retried(service, repository, provider):
    _enable(repository)
    provider.unavailable["charge_off_session"] = 1

    with pytest.raises(ProviderUnavailableError):
        service.check_and_trigger_auto_recharge("cust-1")

    assert provider.calls["charge_off_session"] == 1
    assert repository.transactions == []
    assert service.available_credits("cust-1") == 40


def test_concurrent_checks_charge_once(service, repository, provider):
    _enable(repository)
    repository.read_delay = 0.002
    start = threading.Barrier(5)
    reasons = []

    def worker() -> None:
        start.wait()
        reasons.append(service.check_and_trigger_auto_recharge("cust-1").reason)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert reasons.count(AutoRechargeReason.RECHARGED) == 1
    assert reasons.count(AutoRechargeReason.ABOVE_THRESHOLD) == 4
    assert len(provider.charges) == 1


@pytest.mark.parametrize(
    ("moment", "months", "expected"),
    [
        (datetime(2026, 1, 31, tzinfo=timezone.utc), 1, datetime(2026, 2, 28, tzinfo=timezone.utc)),
        (datetime(2026, 8, 15, tzinfo=timezone.utc), 6, datetime(2027, 2, 15, tzinfo=timezone.utc)),
        (datetime(2027, 12, 1, tzinfo=timezone.utc), 1, datetime(2028, 1, 1, tzinfo=timezone.utc)),
    ],
)
def test_add_months_clamps_to_month_end(moment, months, expected):
    assert add_months(moment, months) == expected
