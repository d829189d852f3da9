"""API schemas for credit purchases, billing history and webhooks."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..credits import BillingTransaction, CheckoutSession, CreditPurchase, SubscriptionSyncResult, TransactionPage
from ..credits.pricing import MAX_PURCHASE_CREDITS, MIN_PURCHASE_CREDITS


class CreditCheckoutRequest(BaseModel):
    credits_amount: int = Field(alias="creditsAmount", ge=MIN_PURCHASE_CREDITS, le=MAX_PURCHASE_CREDITS)
    success_url: Optional[str] = Field(alias="successUrl", default=None)
    cancel_url: Optional[str] = Field(alias="cancelUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CreditPurchaseResponse(BaseModel):
    purchase_id: str = Field(alias="purchaseId")
    credits_amount: int = Field(alias="creditsAmount")
    price_cents: int = Field(alias="priceCents")
    price_per_credit_cents: int = Field(alias="pricePerCreditCents")
    currency: str
    status: str
    expires_at: datetime = Field(alias="expiresAt")
    is_auto_recharge: bool = Field(alias="isAutoRecharge", default=False)
    completed_at: Optional[datetime] = Field(alias="completedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_purchase(cls, purchase: CreditPurchase) -> "CreditPurchaseResponse":
        return cls(
            purchase_id=purchase.purchase_id,
            credits_amount=purchase.credits_amount,
            price_cents=purchase.price_cents,
            price_per_credit_cents=purchase.price_per_credit_cents,
            currency=purchase.currency,
            status=purchase.status.value,
            expires_at=purchase.expires_at,
            is_auto_recharge=purchase.is_auto_recharge,
            completed_at=purchase.completed_at,
        )


class CreditCheckoutResponse(BaseModel):
    purchase: CreditPurchaseResponse
    session_id: Optional[str] = Field(alias="sessionId", default=None)
    checkout_url: str = Field(alias="checkoutUrl")
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_checkout(cls, session: CheckoutSession) -> "CreditCheckoutResponse":
        return cls(
            purchase=CreditPurchaseResponse.from_purchase(session.purchase),
            session_id=session.purchase.provider_session_id,
            checkout_url=session.checkout_url,
            expires_at=session.expires_at,
        )


class ConfirmPurchaseRequest(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionRequest(BaseModel):
    return_url: Optional[str] = Field(alias="returnUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionResponse(BaseModel):
    url: str
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)


class BillingTransactionResponse(BaseModel):
    id: str
    amount_cents: int = Field(alias="amountCents")
    currency: str
    status: str
    type: str
    credits_added: int = Field(alias="creditsAdded")
    description: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_transaction(cls, transaction: BillingTransaction) -> "BillingTransactionResponse":
        return cls(
            id=transaction.transaction_id,
            amount_cents=transaction.amount_cents,
            currency=transaction.currency,
            status=transaction.status.value,
            type=transaction.type.value,
            credits_added=transaction.credits_added,
            description=transaction.description,
            metadata=dict(transaction.metadata),
            created_at=transaction.created_at,
        )


class TransactionListResponse(BaseModel):
    transactions: List[BillingTransactionResponse]
    total: int
    limit: int
    offset: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_page(cls, page: TransactionPage) -> "TransactionListResponse":
        return cls(
            transactions=[BillingTransactionResponse.from_transaction(item) for item in page.transactions],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        )


class SubscriptionSyncResponse(BaseModel):
    subscribed: bool
    synced: int
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    plan_id: Optional[str] = Field(alias="planId", default=None)
    current_period_start: Optional[datetime] = Field(alias="currentPeriodStart", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd", default=False)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SubscriptionSyncResult) -> "SubscriptionSyncResponse":
        subscription = result.subscription
        if subscription is None:
            return cls(subscribed=False, synced=result.synced)
        return cls(
            subscribed=True,
            synced=result.synced,
            subscription_id=subscription.subscription_id,
            plan_id=subscription.plan_id,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
        )


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
