from __future__ import annotations

import pytest

from shipcredits.app.credits import (
    PaymentDeclinedError,
    ProviderUnavailableError,
    load_credit_config,
    price_per_credit_cents,
    quote_credits,
)
from shipcredits.app.credits.retry import call_with_retry, poll_until


@pytest.mark.parametrize(
    ("quantity", "unit"),
    [
        (10, 35),
        (99, 35),
        (100, 30),
        (499, 30),
        (500, 25),
        (999, 25),
        (1000, 22),
        (2499, 22),
        (2500, 20),
        (5000, 20),
    ],
)
def test_price_tiers(quantity, unit):
    assert price_per_credit_cents(quantity) == unit


def test_quote_multiplies_unit_price():
    quote = quote_credits(750)

    assert quote.price_per_credit_cents == 25
    assert quote.total_cents == 18750
    assert quote.to_dict() == {"credits_amount": 750, "price_per_credit_cents": 25, "total_cents": 18750}


def test_quote_rejects_non_positive_quantities():
    with pytest.raises(ValueError):
        quote_credits(0)


def test_config_defaults():
    config = load_credit_config({})

    assert config.provider_name == "sandbox"
    assert config.currency == "brl"
    assert config.provider_max_attempts == 2
    assert config.auto_recharge_expiry_months == 6
    assert config.purchase_fallback_expiry_days == 30
    assert config.app_base_url == "http://localhost:5173"


def test_config_reads_environment_overrides():
    config = load_credit_config(
        {
            "CREDITS_CURRENCY": "USD",
            "APP_BASE_URL": "https://ship.example.com/",
            "PROVIDER_MAX_ATTEMPTS": "5",
            "CREDIT_CONFIRM_TIMEOUT": "2.5",
            "AUTO_RECHARGE_EXPIRY_MONTHS": "3",
        }
    )

    assert config.currency == "usd"
    assert config.app_base_url == "https://ship.example.com"
    assert config.provider_max_attempts == 2
    assert config.confirm_timeout_seconds == 2.5
    assert config.auto_recharge_expiry_months == 3


def test_stripe_config_requires_credentials():
    with pytest.raises(ValueError):
        load_credit_config({"PAYMENT_PROVIDER": "stripe", "STRIPE_SECRET_KEY": "sk_test"})


def test_config_rejects_malformed_numbers():
    with pytest.raises(ValueError):
        load_credit_config({"PURCHASE_FALLBACK_EXPIRY_DAYS": "thirty"})


def test_call_with_retry_retries_network_failure_once():
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise ProviderUnavailableError()
        return "ok"

    result = call_with_retry(flaky, operation="test", max_attempts=2, backoff_seconds=0.5, sleep=sleeps.append)

    assert result == "ok"
    assert len(attempts) == 2
    assert sleeps == [0.5]


def test_call_with_retry_gives_up_after_max_attempts():
    calls = []

    def down():
        calls.append(1)
        raise ProviderUnavailableError()

    with pytest.raises(ProviderUnavailableError):
        call_with_retry(down, operation="test", max_attempts=2, backoff_seconds=0, sleep=lambda _: None)
    assert len(calls) == 2


def test_call_with_retry_never_retries_declines():
    calls = []

    def declined():
        calls.append(1)
        raise PaymentDeclinedError()

    with pytest.raises(PaymentDeclinedError):
        call_with_retry(declined, operation="test", max_attempts=2, sleep=lambda _: None)
    assert len(calls) == 1


def test_poll_until_returns_first_result():
    values = iter([None, None, "settled"])
    ticks = iter(range(100))

    result = poll_until(lambda: next(values), timeout=10, interval=1, clock=lambda: next(ticks), sleep=lambda _: None)

    assert result == "settled"


def test_poll_until_times_out():
    now = [0.0]
    checks = []

    def advance(seconds):
        now[0] += seconds

    def check():
        checks.append(now[0])
        return None

    result = poll_until(check, timeout=3, interval=1, clock=lambda: now[0], sleep=advance)

    assert result is None
    assert checks == [0.0, 1.0, 2.0, 3.0]
