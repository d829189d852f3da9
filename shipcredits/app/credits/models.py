"""Domain models for the credit ledger."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Lifecycle state of a customer's subscription."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELED = "canceled"


class CreditPurchaseStatus(str, Enum):
    """Lifecycle status for a purchased credit pack."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class UsageSourceType(str, Enum):
    """Where a consumed credit was drawn from."""

    MONTHLY = "monthly"
    PURCHASE = "purchase"


class BillingTransactionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BillingTransactionType(str, Enum):
    CREDIT_PURCHASE = "credit_purchase"
    AUTO_RECHARGE = "auto_recharge"
    SUBSCRIPTION = "subscription"


class ProviderEventType(str, Enum):
    """Payment processor events the ledger reacts to."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    CHECKOUT_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
    CHECKOUT_EXPIRED = "checkout.session.expired"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> "ProviderEventType":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class ConsumptionOutcome(str, Enum):
    CONSUMED = "consumed"
    DUPLICATE = "duplicate"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"
    UNMATCHED = "unmatched"


class AutoRechargeReason(str, Enum):
    DISABLED = "disabled"
    NO_PAYMENT_METHOD = "no_payment_method"
    ABOVE_THRESHOLD = "above_threshold"
    RECHARGED = "recharged"
    PAYMENT_DECLINED = "payment_declined"


class Plan(BaseModel):
    """Immutable plan reference data."""

    plan_id: str
    name: str = ""
    monthly_credits: int = Field(default=0, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Subscription(BaseModel):
    """Subscription state synchronized from the payment processor."""

    subscription_id: str
    customer_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def has_period(self) -> bool:
        return self.current_period_start is not None and self.current_period_end is not None


class CreditPurchase(BaseModel):
    """A purchased pack of credits with a fixed expiration."""

    purchase_id: str
    customer_id: str
    credits_amount: int = Field(gt=0)
    price_cents: int = Field(default=0, ge=0)
    price_per_credit_cents: int = Field(default=0, ge=0)
    currency: str = "BRL"
    status: CreditPurchaseStatus = CreditPurchaseStatus.PENDING
    expires_at: datetime
    is_auto_recharge: bool = False
    provider_session_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    def is_spendable(self, now: datetime) -> bool:
        """Return ``True`` when the pack is paid for and not yet expired."""
        return self.status == CreditPurchaseStatus.COMPLETED and self.expires_at > now


class UsageEvent(BaseModel):
    """Immutable ledger entry recording one consumed credit."""

    event_id: str
    customer_id: str
    source_type: UsageSourceType
    purchase_id: Optional[str] = None
    subscription_period_start: Optional[datetime] = None
    subscription_period_end: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_attribution(self) -> "UsageEvent":
        if self.source_type == UsageSourceType.PURCHASE:
            if not self.purchase_id:
                raise ValueError("purchase usage requires purchase_id")
            if self.subscription_period_start or self.subscription_period_end:
                raise ValueError("purchase usage cannot pin a subscription period")
        else:
            if self.purchase_id:
                raise ValueError("monthly usage cannot reference a purchase")
            if not (self.subscription_period_start and self.subscription_period_end):
                raise ValueError("monthly usage requires the subscription period")
        return self


class PaymentMethodDetails(BaseModel):
    """Display metadata for a stored card."""

    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AutoRechargeSettings(BaseModel):
    """Per-customer auto-recharge policy."""

    customer_id: str
    enabled: bool = False
    min_credits_threshold: int = Field(default=100, ge=50, le=1000)
    recharge_amount: int = Field(default=500, ge=100, le=5000)
    payment_method_id: Optional[str] = None
    payment_method_details: Optional[PaymentMethodDetails] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def has_payment_method(self) -> bool:
        return bool(self.payment_method_id)


class BillingTransaction(BaseModel):
    """Append-only audit record of money movement."""

    transaction_id: str
    customer_id: str
    amount_cents: int = Field(default=0, ge=0)
    currency: str = "BRL"
    status: BillingTransactionStatus
    type: BillingTransactionType
    credits_added: int = Field(default=0, ge=0)
    description: Optional[str] = None
    provider_payment_id: Optional[str] = None
    provider_invoice_id: Optional[str] = None
    provider_session_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class ProviderEvent(BaseModel):
    """Verified payment processor event, normalized for reconciliation."""

    event_id: str
    event_type: ProviderEventType
    raw_type: str
    data: Dict[str, object]
    created_at: datetime = Field(default_factory=_utcnow)
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreditBalance(BaseModel):
    """Derived balance for a customer at a point in time."""

    customer_id: str
    monthly_credits: int = 0
    monthly_used: int = 0
    monthly_remaining: int = 0
    extra_remaining: int = 0
    total_available: int = 0
    total_used: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ConsumptionResult(BaseModel):
    """Outcome of a single consumption attempt."""

    success: bool
    outcome: ConsumptionOutcome
    message: str
    remaining_credits: Optional[int] = None
    usage_event: Optional[UsageEvent] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AutoRechargeResult(BaseModel):
    """Outcome of an auto-recharge evaluation."""

    triggered: bool
    reason: AutoRechargeReason
    available_credits: Optional[int] = None
    purchase: Optional[CreditPurchase] = None
    transaction: Optional[BillingTransaction] = None
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSession(BaseModel):
    """Return value of a credit checkout creation request."""

    purchase: CreditPurchase
    checkout_url: str
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SetupSession(BaseModel):
    """Hosted payment-method setup session."""

    session_id: str
    url: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class TransactionPage(BaseModel):
    transactions: list[BillingTransaction]
    total: int
    limit: int
    offset: int

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionSyncResult(BaseModel):
    """Subscriptions refreshed from the processor for one customer."""

    customer_id: str
    synced: int = 0
    subscription: Optional[Subscription] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreditAuditEventType(str, Enum):
    """Audit event categories emitted by the credit subsystem."""

    CREDIT_CONSUMED = "credit_consumed"
    PURCHASE_COMPLETED = "purchase_completed"
    PURCHASE_FAILED = "purchase_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    AUTO_RECHARGE_SUCCEEDED = "auto_recharge_succeeded"
    AUTO_RECHARGE_FAILED = "auto_recharge_failed"
    PAYMENT_METHOD_ADDED = "payment_method_added"
    PAYMENT_METHOD_REMOVED = "payment_method_removed"


class CreditAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: CreditAuditEventType
    customer_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)
