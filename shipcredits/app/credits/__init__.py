"""Credit ledger package: balances, consumption, purchases and auto-recharge."""

from .auto_recharge import AutoRechargeMonitor
from .balance import Attribution, BalanceCalculator, BalanceSnapshot, PurchaseCapacity, summarize_balance
from .config import CreditConfig, load_credit_config
from .exceptions import (
    CreditError,
    CreditNotFoundError,
    CreditValidationError,
    PaymentDeclinedError,
    PaymentProviderError,
    ProviderUnavailableError,
    WebhookSignatureError,
)
from .models import (
    AutoRechargeReason,
    AutoRechargeResult,
    AutoRechargeSettings,
    BillingTransaction,
    BillingTransactionStatus,
    BillingTransactionType,
    CheckoutSession,
    ConsumptionOutcome,
    ConsumptionResult,
    CreditAuditEvent,
    CreditAuditEventType,
    CreditBalance,
    CreditPurchase,
    CreditPurchaseStatus,
    PaymentMethodDetails,
    Plan,
    ProviderEvent,
    ProviderEventType,
    ReconciliationOutcome,
    SetupSession,
    Subscription,
    SubscriptionStatus,
    SubscriptionSyncResult,
    TransactionPage,
    UsageEvent,
    UsageSourceType,
)
from .pricing import CreditQuote, price_per_credit_cents, quote_credits
from .reconciliation import ReconciliationHandler, parse_provider_event
from .service import (
    CreditEventLogger,
    CreditNotifier,
    CreditRepository,
    CreditService,
    PaymentProvider,
)

__all__ = [
    "Attribution",
    "AutoRechargeMonitor",
    "AutoRechargeReason",
    "AutoRechargeResult",
    "AutoRechargeSettings",
    "BalanceCalculator",
    "BalanceSnapshot",
    "BillingTransaction",
    "BillingTransactionStatus",
    "BillingTransactionType",
    "CheckoutSession",
    "ConsumptionOutcome",
    "ConsumptionResult",
    "CreditAuditEvent",
    "CreditAuditEventType",
    "CreditBalance",
    "CreditConfig",
    "CreditError",
    "CreditEventLogger",
    "CreditNotFoundError",
    "CreditNotifier",
    "CreditPurchase",
    "CreditPurchaseStatus",
    "CreditQuote",
    "CreditRepository",
    "CreditService",
    "CreditValidationError",
    "PaymentDeclinedError",
    "PaymentMethodDetails",
    "PaymentProvider",
    "PaymentProviderError",
    "Plan",
    "ProviderEvent",
    "ProviderEventType",
    "ProviderUnavailableError",
    "PurchaseCapacity",
    "ReconciliationHandler",
    "ReconciliationOutcome",
    "SetupSession",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionSyncResult",
    "TransactionPage",
    "UsageEvent",
    "UsageSourceType",
    "WebhookSignatureError",
    "load_credit_config",
    "parse_provider_event",
    "price_per_credit_cents",
    "quote_credits",
    "summarize_balance",
]
