"""API schemas for credit balance, consumption and auto-recharge endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..credits import (
    AutoRechargeResult,
    AutoRechargeSettings,
    ConsumptionResult,
    CreditBalance,
    PaymentMethodDetails,
    SetupSession,
)
from ..credits.pricing import (
    MAX_RECHARGE_AMOUNT,
    MAX_RECHARGE_THRESHOLD,
    MIN_RECHARGE_AMOUNT,
    MIN_RECHARGE_THRESHOLD,
)


class CreditBalanceResponse(BaseModel):
    monthly_credits: int = Field(alias="monthlyCredits")
    monthly_used: int = Field(alias="monthlyUsed")
    monthly_remaining: int = Field(alias="monthlyRemaining")
    extra_remaining: int = Field(alias="extraRemaining")
    total_available: int = Field(alias="totalAvailable")
    total_used: int = Field(alias="totalUsed")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_balance(cls, balance: CreditBalance) -> "CreditBalanceResponse":
        return cls(
            monthly_credits=balance.monthly_credits,
            monthly_used=balance.monthly_used,
            monthly_remaining=balance.monthly_remaining,
            extra_remaining=balance.extra_remaining,
            total_available=balance.total_available,
            total_used=balance.total_used,
        )


class CreditCountResponse(BaseModel):
    credits: int


class ConsumeCreditRequest(BaseModel):
    idempotency_key: Optional[str] = Field(alias="idempotencyKey", default=None, min_length=1, max_length=255)
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class ConsumeCreditResponse(BaseModel):
    success: bool
    outcome: str
    message: str
    remaining_credits: Optional[int] = Field(alias="remainingCredits", default=None)
    usage_event_id: Optional[str] = Field(alias="usageEventId", default=None)
    source_type: Optional[str] = Field(alias="sourceType", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ConsumptionResult) -> "ConsumeCreditResponse":
        event = result.usage_event
        return cls(
            success=result.success,
            outcome=result.outcome.value,
            message=result.message,
            remaining_credits=result.remaining_credits,
            usage_event_id=event.event_id if event else None,
            source_type=event.source_type.value if event else None,
        )


class PaymentMethodResponse(BaseModel):
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = Field(alias="expMonth", default=None)
    exp_year: Optional[int] = Field(alias="expYear", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_details(cls, details: PaymentMethodDetails) -> "PaymentMethodResponse":
        return cls(
            brand=details.brand,
            last4=details.last4,
            exp_month=details.exp_month,
            exp_year=details.exp_year,
        )


class AutoRechargeSettingsResponse(BaseModel):
    enabled: bool
    min_credits_threshold: int = Field(alias="minCreditsThreshold")
    recharge_amount: int = Field(alias="rechargeAmount")
    has_payment_method: bool = Field(alias="hasPaymentMethod")
    payment_method: Optional[PaymentMethodResponse] = Field(alias="paymentMethod", default=None)
    updated_at: Optional[datetime] = Field(alias="updatedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_settings(cls, settings: AutoRechargeSettings) -> "AutoRechargeSettingsResponse":
        details = settings.payment_method_details
        return cls(
            enabled=settings.enabled,
            min_credits_threshold=settings.min_credits_threshold,
            recharge_amount=settings.recharge_amount,
            has_payment_method=settings.has_payment_method,
            payment_method=PaymentMethodResponse.from_details(details) if details else None,
            updated_at=settings.updated_at,
        )


class AutoRechargeSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    min_credits_threshold: Optional[int] = Field(
        alias="minCreditsThreshold",
        default=None,
        ge=MIN_RECHARGE_THRESHOLD,
        le=MAX_RECHARGE_THRESHOLD,
    )
    recharge_amount: Optional[int] = Field(
        alias="rechargeAmount",
        default=None,
        ge=MIN_RECHARGE_AMOUNT,
        le=MAX_RECHARGE_AMOUNT,
    )

    model_config = ConfigDict(populate_by_name=True)


class PaymentSetupRequest(BaseModel):
    success_url: Optional[str] = Field(alias="successUrl", default=None)
    cancel_url: Optional[str] = Field(alias="cancelUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PaymentSetupResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    url: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: SetupSession) -> "PaymentSetupResponse":
        return cls(session_id=session.session_id, url=session.url)


class ConfirmPaymentSetupRequest(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class AutoRechargeCheckResponse(BaseModel):
    triggered: bool
    reason: str
    available_credits: Optional[int] = Field(alias="availableCredits", default=None)
    credits_added: int = Field(alias="creditsAdded", default=0)
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: AutoRechargeResult) -> "AutoRechargeCheckResponse":
        return cls(
            triggered=result.triggered,
            reason=result.reason.value,
            available_credits=result.available_credits,
            credits_added=result.purchase.credits_amount if result.purchase else 0,
            message=result.message,
        )
