"""API routes exposing credit balances, consumption and auto-recharge."""
from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Cookie, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from ... import app_context
from ..credits import ConsumptionOutcome, CreditError
from ..credits.pricing import MAX_RECHARGE_THRESHOLD
from ..schemas.credits import (
    AutoRechargeCheckResponse,
    AutoRechargeSettingsResponse,
    AutoRechargeSettingsUpdate,
    ConfirmPaymentSetupRequest,
    ConsumeCreditRequest,
    ConsumeCreditResponse,
    CreditBalanceResponse,
    CreditCountResponse,
    PaymentSetupRequest,
    PaymentSetupResponse,
)
from ..services.billing import get_credit_service

logger = logging.getLogger("credits")

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def _customer_id(current_user) -> str:
    return str(current_user.id)


router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("/balance", response_model=CreditBalanceResponse)
def get_balance(*, current_user=Depends(_get_current_user)) -> CreditBalanceResponse:
    balance = get_credit_service().get_balance(_customer_id(current_user))
    return CreditBalanceResponse.from_balance(balance)


@router.get("/available", response_model=CreditCountResponse)
def get_available_credits(*, current_user=Depends(_get_current_user)) -> CreditCountResponse:
    return CreditCountResponse(credits=get_credit_service().available_credits(_customer_id(current_user)))


@router.get("/used", response_model=CreditCountResponse)
def get_used_credits(*, current_user=Depends(_get_current_user)) -> CreditCountResponse:
    return CreditCountResponse(credits=get_credit_service().used_credits(_customer_id(current_user)))


@router.post("/consume", response_model=ConsumeCreditResponse)
def consume_credit(
    payload: ConsumeCreditRequest,
    background_tasks: BackgroundTasks,
    *,
    current_user=Depends(_get_current_user),
) -> ConsumeCreditResponse:
    service = get_credit_service()
    customer_id = _customer_id(current_user)
    try:
        result = service.consume_credit(
            customer_id,
            idempotency_key=payload.idempotency_key,
            metadata=payload.metadata,
        )
    except CreditError as exc:
        raise exc.to_http_exception() from exc

    # No configurable threshold exceeds MAX_RECHARGE_THRESHOLD.
    if result.remaining_credits is not None and result.remaining_credits < MAX_RECHARGE_THRESHOLD:
        background_tasks.add_task(service.check_and_trigger_auto_recharge, customer_id)

    if result.outcome == ConsumptionOutcome.INSUFFICIENT_BALANCE:
        # A raised HTTPException would drop the scheduled recharge check.
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={"detail": {"error": result.outcome.value, "message": result.message}},
            background=background_tasks,
        )
    return ConsumeCreditResponse.from_result(result)


@router.get("/auto-recharge/settings", response_model=AutoRechargeSettingsResponse)
def get_auto_recharge_settings(*, current_user=Depends(_get_current_user)) -> AutoRechargeSettingsResponse:
    settings = get_credit_service().get_auto_recharge_settings(_customer_id(current_user))
    return AutoRechargeSettingsResponse.from_settings(settings)


@router.put("/auto-recharge/settings", response_model=AutoRechargeSettingsResponse)
def update_auto_recharge_settings(
    payload: AutoRechargeSettingsUpdate,
    *,
    current_user=Depends(_get_current_user),
) -> AutoRechargeSettingsResponse:
    try:
        settings = get_credit_service().update_auto_recharge_settings(
            _customer_id(current_user),
            enabled=payload.enabled,
            min_credits_threshold=payload.min_credits_threshold,
            recharge_amount=payload.recharge_amount,
        )
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    return AutoRechargeSettingsResponse.from_settings(settings)


@router.post("/auto-recharge/setup", response_model=PaymentSetupResponse)
def setup_payment_method(
    payload: PaymentSetupRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PaymentSetupResponse:
    service = get_credit_service()
    base_url = service.config.app_base_url
    try:
        session = service.setup_payment_method(
            _customer_id(current_user),
            success_url=payload.success_url
            or f"{base_url}/credits?setup=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=payload.cancel_url or f"{base_url}/credits?setup=cancelled",
            email=getattr(current_user, "email", None),
        )
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    return PaymentSetupResponse.from_session(session)


@router.post("/auto-recharge/confirm-setup", response_model=AutoRechargeSettingsResponse)
def confirm_payment_setup(
    payload: ConfirmPaymentSetupRequest,
    *,
    current_user=Depends(_get_current_user),
) -> AutoRechargeSettingsResponse:
    try:
        settings = get_credit_service().confirm_payment_setup(_customer_id(current_user), payload.session_id)
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return AutoRechargeSettingsResponse.from_settings(settings)


@router.delete("/auto-recharge/payment-method", response_model=AutoRechargeSettingsResponse)
def remove_payment_method(*, current_user=Depends(_get_current_user)) -> AutoRechargeSettingsResponse:
    try:
        settings = get_credit_service().remove_payment_method(_customer_id(current_user))
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    return AutoRechargeSettingsResponse.from_settings(settings)


@router.post("/auto-recharge/check", response_model=AutoRechargeCheckResponse)
def check_auto_recharge(*, current_user=Depends(_get_current_user)) -> AutoRechargeCheckResponse:
    try:
        result = get_credit_service().check_and_trigger_auto_recharge(_customer_id(current_user))
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    return AutoRechargeCheckResponse.from_result(result)
