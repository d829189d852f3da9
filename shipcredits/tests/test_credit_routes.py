from __future__ import annotations

import json
from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.testclient import TestClient

from shipcredits.app.credits import AutoRechargeSettings, CreditPurchaseStatus
from shipcredits.app.routes import billing as billing_routes
from shipcredits.app.routes import credits as credits_routes
from shipcredits.app.schemas.billing import ConfirmPurchaseRequest, CreditCheckoutRequest
from shipcredits.app.schemas.credits import (
    AutoRechargeSettingsUpdate,
    ConfirmPaymentSetupRequest,
    ConsumeCreditRequest,
    PaymentSetupRequest,
)
from shipcredits.tests.fakes import (
    VALID_SIGNATURE,
    FrozenClock,
    InMemoryCreditRepository,
    build_service,
    completed_purchase,
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
    return repo


@pytest.fixture
def service(monkeypatch, repository, clock):
    credit_service = build_service(repository=repository, clock=clock)
    monkeypatch.setattr(credits_routes, "get_credit_service", lambda: credit_service)
    monkeypatch.setattr(billing_routes, "get_credit_service", lambda: credit_service)
    return credit_service


@pytest.fixture
def user():
    return SimpleNamespace(id=7, email="ops@example.com")


def test_balance_routes_report_derived_values(service, repository, clock, user):
    repository.add_subscription(monthly_subscription("7", start=clock.now - timedelta(days=1)))
    repository.insert_purchase(
        completed_purchase("7", credits=25, expires_at=clock.now + timedelta(days=5), created_at=clock.now)
    )
    service.consume_credit("7")

    balance = credits_routes.get_balance(current_user=user)
    available = credits_routes.get_available_credits(current_user=user)
    used = credits_routes.get_used_credits(current_user=user)

    assert balance.model_dump(by_alias=True) == {
        "monthlyCredits": 100,
        "monthlyUsed": 1,
        "monthlyRemaining": 99,
        "extraRemaining": 25,
        "totalAvailable": 124,
        "totalUsed": 1,
    }
    assert available.credits == 124
    assert used.credits == 1


def test_consume_route_returns_result_and_schedules_recharge_check(service, repository, clock, user):
    repository.insert_purchase(
        completed_purchase("7", credits=5, expires_at=clock.now + timedelta(days=5), created_at=clock.now)
    )
    tasks = BackgroundTasks()

    response = credits_routes.consume_credit(
        ConsumeCreditRequest(idempotencyKey="label-1", metadata={"carrier": "correios"}),
        tasks,
        current_user=user,
    )

    assert response.success is True
    assert response.outcome == "consumed"
    assert response.remaining_credits == 4
    assert response.source_type == "purchase"
    (task,) = tasks.tasks
    assert task.func == service.check_and_trigger_auto_recharge
    assert task.args == ("7",)


def test_consume_route_skips_recharge_check_with_large_balance(service, repository, clock, user):
    repository.insert_purchase(
        completed_purchase("7", credits=2000, expires_at=clock.now + timedelta(days=5), created_at=clock.now)
    )
    tasks = BackgroundTasks()

    credits_routes.consume_credit(ConsumeCreditRequest(), tasks, current_user=user)

    assert tasks.tasks == []


def test_consume_route_maps_insufficient_balance_to_402_and_still_checks_recharge(service, user):
    tasks = BackgroundTasks()

    response = credits_routes.consume_credit(ConsumeCreditRequest(), tasks, current_user=user)

    assert response.status_code == 402
    assert json.loads(response.body) == {
        "detail": {"error": "INSUFFICIENT_BALANCE", "message": "No credits available"}
    }
    assert response.background is tasks
    assert len(tasks.tasks) == 1


def test_settings_routes_round_trip(service, user):
    initial = credits_routes.get_auto_recharge_settings(current_user=user)
    updated = credits_routes.update_auto_recharge_settings(
        AutoRechargeSettingsUpdate(enabled=True, minCreditsThreshold=150, rechargeAmount=800),
        current_user=user,
    )

    assert initial.enabled is False
    assert initial.has_payment_method is False
    assert updated.model_dump(by_alias=True, include={"enabled", "min_credits_threshold", "recharge_amount"}) == {
        "enabled": True,
        "minCreditsThreshold": 150,
        "rechargeAmount": 800,
    }


def test_payment_setup_routes(service, user):
    session = credits_routes.setup_payment_method(PaymentSetupRequest(), current_user=user)
    settings = credits_routes.confirm_payment_setup(
        ConfirmPaymentSetupRequest(sessionId=session.session_id),
        current_user=user,
    )
    removed = credits_routes.remove_payment_method(current_user=user)

    assert session.url.startswith("https://provider.test/setup/")
    assert settings.has_payment_method is True
    assert settings.payment_method.last4 == "4242"
    assert removed.has_payment_method is False


def test_auto_recharge_check_route(service, repository, user):
    repository.save_auto_recharge_settings(
        AutoRechargeSettings(customer_id="7", enabled=True, payment_method_id="pm_1", recharge_amount=100)
    )

    response = credits_routes.check_auto_recharge(current_user=user)

    assert response.triggered is True
    assert response.reason == "recharged"
    assert response.credits_added == 100
    assert response.available_credits == 100


def test_checkout_and_confirm_routes(service, user):
    checkout = billing_routes.create_credit_purchase_checkout(
        CreditCheckoutRequest(creditsAmount=500),
        current_user=user,
    )
    service.provider.mark_paid(checkout.session_id)

    confirmed = billing_routes.confirm_credit_purchase(
        ConfirmPurchaseRequest(sessionId=checkout.session_id),
        current_user=user,
    )

    assert checkout.purchase.price_per_credit_cents == 25
    assert checkout.purchase.price_cents == 12500
    assert checkout.checkout_url
    assert confirmed.status == CreditPurchaseStatus.COMPLETED.value
    assert service.available_credits("7") == 500


def test_confirm_route_maps_unknown_session_to_404(service, user):
    with pytest.raises(HTTPException) as excinfo:
        billing_routes.confirm_credit_purchase(ConfirmPurchaseRequest(sessionId="cs_missing"), current_user=user)

    assert excinfo.value.status_code == 404


def test_transactions_route_lists_history(service, user):
    checkout = billing_routes.create_credit_purchase_checkout(CreditCheckoutRequest(creditsAmount=10), current_user=user)
    service.provider.mark_paid(checkout.session_id)
    service.confirm_credit_purchase("7", checkout.session_id)

    response = billing_routes.list_transactions(
        limit=20, offset=0, type=None, transaction_status=None, current_user=user
    )

    assert response.total == 1
    assert response.transactions[0].credits_added == 10
    assert response.transactions[0].amount_cents == 350


def test_portal_route_defaults_return_url(service, user):
    response = billing_routes.create_portal_session(billing_routes.PortalSessionRequest(), current_user=user)

    assert response.url.startswith("https://provider.test/portal/")


def test_subscription_sync_route_reports_active_subscription(service, repository, clock, user):
    repository.save_billing_customer("7", provider_customer_id="cus_7", email=None)
    start = clock.now - timedelta(days=1)
    service.provider.subscriptions["cus_7"] = [
        {
            "id": "sub_7",
            "status": "active",
            "current_period_start": int(start.timestamp()),
            "current_period_end": int((start + timedelta(days=30)).timestamp()),
            "items": {"data": [{"price": {"id": "price_1", "lookup_key": "starter"}}]},
        }
    ]

    response = billing_routes.sync_subscription(current_user=user)

    assert response.model_dump(by_alias=True) == {
        "subscribed": True,
        "synced": 1,
        "subscriptionId": "sub_7",
        "planId": "starter",
        "currentPeriodStart": start,
        "currentPeriodEnd": start + timedelta(days=30),
        "cancelAtPeriodEnd": False,
    }


def test_subscription_sync_route_without_processor_customer(service, user):
    response = billing_routes.sync_subscription(current_user=user)

    assert response.subscribed is False
    assert response.synced == 0


@pytest.fixture
def client(service) -> TestClient:
    app = FastAPI()
    app.include_router(billing_routes.router)
    return TestClient(app)


def test_webhook_endpoint_applies_event_once(client, service):
    checkout = service.create_credit_purchase_checkout(
        "7", credits_amount=100, success_url="https://app.test/ok", cancel_url="https://app.test/cancel"
    )
    session = service.provider.mark_paid(checkout.purchase.provider_session_id)
    payload = provider_event_payload("evt_http", "checkout.session.completed", session, created=0)

    first = client.post("/api/billing/webhook", content=payload, headers={"stripe-signature": VALID_SIGNATURE})
    second = client.post("/api/billing/webhook", content=payload, headers={"stripe-signature": VALID_SIGNATURE})

    assert first.status_code == 200
    assert first.json() == {"received": True, "outcome": "applied"}
    assert second.json() == {"received": True, "outcome": "duplicate"}
    assert service.available_credits("7") == 100


def test_webhook_endpoint_rejects_bad_signature(client, repository):
    payload = provider_event_payload("evt_bad", "invoice.paid", {"id": "in_1"}, created=0)

    response = client.post("/api/billing/webhook", content=payload, headers={"stripe-signature": "t=1,v1=nope"})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_signature"
    assert repository.store.provider_events == {}
