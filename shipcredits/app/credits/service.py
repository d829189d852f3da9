"""Core service coordinating credit consumption, purchases and payment methods."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from .auto_recharge import AutoRechargeMonitor
from .balance import BalanceCalculator
from .config import CreditConfig
from .customers import ensure_provider_customer
from .exceptions import (
    CreditNotFoundError,
    CreditValidationError,
    PaymentProviderError,
    ProviderUnavailableError,
)
from .models import (
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
    ReconciliationOutcome,
    SetupSession,
    Subscription,
    SubscriptionSyncResult,
    TransactionPage,
    UsageEvent,
)
from .pricing import (
    MAX_PURCHASE_CREDITS,
    MAX_RECHARGE_AMOUNT,
    MAX_RECHARGE_THRESHOLD,
    MIN_PURCHASE_CREDITS,
    MIN_RECHARGE_AMOUNT,
    MIN_RECHARGE_THRESHOLD,
    CreditQuote,
    quote_credits,
)
from .reconciliation import ReconciliationHandler
from .retry import call_with_retry, poll_until

logger = logging.getLogger(__name__)

MAX_TRANSACTION_PAGE = 100


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def create_customer(self, *, customer_id: str, email: Optional[str]) -> str:
        """Create a processor customer and return its id."""

    def create_checkout_session(
        self,
        *,
        provider_customer_id: str,
        quote: CreditQuote,
        currency: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        """Create a hosted one-time payment session for a credit pack."""

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, object]:
        """Return the current state of a checkout session."""

    def create_setup_session(
        self,
        *,
        provider_customer_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        """Create a hosted session that saves a card for off-session charges."""

    def retrieve_setup_payment_method(self, session_id: str) -> Dict[str, object]:
        """Return the payment method captured by a completed setup session."""

    def detach_payment_method(self, payment_method_id: str) -> None:
        ...

    def charge_off_session(
        self,
        *,
        provider_customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> Dict[str, object]:
        """Charge a saved card without the customer present."""

    def create_billing_portal_session(self, *, provider_customer_id: str, return_url: str) -> Dict[str, object]:
        ...

    def list_subscriptions(self, provider_customer_id: str) -> List[Dict[str, object]]:
        """Return the customer's subscriptions shaped like webhook subscription objects."""

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        """Verify and parse a webhook delivery."""


class CreditNotifier(Protocol):
    """Dispatches credit related notifications to end users."""

    def notify_auto_recharge_failed(self, settings: AutoRechargeSettings, reason: str) -> None:
        ...

    def notify_payment_failed(self, transaction: BillingTransaction) -> None:
        ...


class CreditEventLogger(Protocol):
    """Captures structured credit audit events."""

    def log(self, event: CreditAuditEvent) -> None:
        ...


class CreditRepository(Protocol):
    """Persistence operations required by the credit services.

    ``transaction`` yields a repository bound to a single database transaction.
    Passing a ``customer_id`` additionally serializes the block against every
    other block locked on the same customer.
    """

    def transaction(self, customer_id: Optional[str] = None) -> ContextManager["CreditRepository"]:
        ...

    # Subscriptions and plans
    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    def get_active_subscription(self, customer_id: str) -> Optional[Subscription]:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def deactivate_other_subscriptions(self, customer_id: str, *, keep_subscription_id: str) -> int:
        ...

    # Usage ledger
    def count_monthly_usage(self, customer_id: str, *, period_start: datetime, period_end: datetime) -> int:
        ...

    def count_purchase_usage(self, purchase_ids: Sequence[str]) -> Dict[str, int]:
        ...

    def insert_usage_event(self, event: UsageEvent) -> UsageEvent:
        ...

    def get_usage_event_by_key(self, customer_id: str, idempotency_key: str) -> Optional[UsageEvent]:
        ...

    # Purchases
    def list_spendable_purchases(self, customer_id: str, *, now: datetime) -> Sequence[CreditPurchase]:
        ...

    def insert_purchase(self, purchase: CreditPurchase) -> CreditPurchase:
        ...

    def get_purchase(self, purchase_id: str) -> Optional[CreditPurchase]:
        ...

    def get_purchase_by_session(self, session_id: str) -> Optional[CreditPurchase]:
        ...

    def attach_checkout_session(self, purchase_id: str, session_id: str) -> Optional[CreditPurchase]:
        ...

    def transition_purchase(
        self,
        purchase_id: str,
        *,
        from_status: CreditPurchaseStatus,
        to_status: CreditPurchaseStatus,
        provider_payment_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Optional[CreditPurchase]:
        """Compare-and-set the purchase status, returning ``None`` if it moved."""

    # Auto-recharge
    def get_auto_recharge_settings(self, customer_id: str) -> Optional[AutoRechargeSettings]:
        ...

    def save_auto_recharge_settings(self, settings: AutoRechargeSettings) -> AutoRechargeSettings:
        ...

    # Billing history
    def record_transaction(self, transaction: BillingTransaction) -> BillingTransaction:
        ...

    def count_auto_recharge_attempts(self, customer_id: str) -> int:
        ...

    def list_transactions(
        self,
        customer_id: str,
        *,
        limit: int,
        offset: int,
        type: Optional[BillingTransactionType] = None,
        status: Optional[BillingTransactionStatus] = None,
    ) -> Tuple[List[BillingTransaction], int]:
        ...

    # Webhooks and processor customers
    def record_provider_event(self, event: ProviderEvent) -> bool:
        """Persist the event id, returning ``False`` when it was already seen."""

    def get_provider_customer_id(self, customer_id: str) -> Optional[str]:
        ...

    def save_billing_customer(self, customer_id: str, *, provider_customer_id: str, email: Optional[str]) -> str:
        ...

    def find_customer_by_provider_id(self, provider_customer_id: str) -> Optional[str]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CreditService:
    """Entry point for every credit operation exposed over HTTP."""

    repository: CreditRepository
    provider: PaymentProvider
    notifier: CreditNotifier
    event_logger: CreditEventLogger
    config: CreditConfig
    clock: Callable[[], datetime] = _utcnow
    balance_calculator: BalanceCalculator = field(init=False)
    reconciler: ReconciliationHandler = field(init=False)
    auto_recharge: AutoRechargeMonitor = field(init=False)

    def __post_init__(self) -> None:
        self.balance_calculator = BalanceCalculator(clock=self.clock)
        self.reconciler = ReconciliationHandler(
            repository=self.repository,
            notifier=self.notifier,
            event_logger=self.event_logger,
            clock=self.clock,
        )
        self.auto_recharge = AutoRechargeMonitor(
            repository=self.repository,
            provider=self.provider,
            notifier=self.notifier,
            event_logger=self.event_logger,
            config=self.config,
            balance_calculator=self.balance_calculator,
            clock=self.clock,
        )

    def _call_provider(self, func, *, operation: str):
        return call_with_retry(
            func,
            operation=operation,
            max_attempts=self.config.provider_max_attempts,
            backoff_seconds=self.config.provider_retry_backoff,
        )

    def _provider_customer(self, customer_id: str, email: Optional[str]) -> str:
        return ensure_provider_customer(
            self.repository,
            self.provider,
            customer_id,
            email=email,
            max_attempts=self.config.provider_max_attempts,
            backoff_seconds=self.config.provider_retry_backoff,
        )

    # ------------------------------------------------------------------
    # Balance and consumption
    # ------------------------------------------------------------------
    def get_balance(self, customer_id: str) -> CreditBalance:
        with self.repository.transaction() as repo:
            return self.balance_calculator.compute(repo, customer_id)

    def available_credits(self, customer_id: str) -> int:
        return self.get_balance(customer_id).total_available

    def used_credits(self, customer_id: str) -> int:
        return self.get_balance(customer_id).total_used

    def consume_credit(
        self,
        customer_id: str,
        *,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> ConsumptionResult:
        """Consume exactly one credit, or report that none is available.

        The balance check and the ledger insert happen under the customer's
        lock, so concurrent callers can never spend the same credit twice.
        """

        if idempotency_key is not None and not idempotency_key.strip():
            raise CreditValidationError(message="idempotency_key must not be blank")

        with self.repository.transaction(customer_id) as repo:
            if idempotency_key:
                existing = repo.get_usage_event_by_key(customer_id, idempotency_key)
                if existing is not None:
                    balance = self.balance_calculator.compute(repo, customer_id)
                    logger.info(
                        "Replayed consumption customer=%s key=%s event=%s",
                        customer_id,
                        idempotency_key,
                        existing.event_id,
                    )
                    return ConsumptionResult(
                        success=True,
                        outcome=ConsumptionOutcome.DUPLICATE,
                        message="Credit already consumed for this request",
                        remaining_credits=balance.total_available,
                        usage_event=existing,
                    )

            snapshot = self.balance_calculator.snapshot(repo, customer_id)
            attribution = snapshot.select_attribution()
            if snapshot.balance.total_available <= 0 or attribution is None:
                logger.info("Insufficient credits for customer=%s", customer_id)
                return ConsumptionResult(
                    success=False,
                    outcome=ConsumptionOutcome.INSUFFICIENT_BALANCE,
                    message="No credits available",
                    remaining_credits=0,
                )

            event = UsageEvent(
                event_id=f"ue_{uuid4().hex}",
                customer_id=customer_id,
                source_type=attribution.source_type,
                purchase_id=attribution.purchase_id,
                subscription_period_start=attribution.period_start,
                subscription_period_end=attribution.period_end,
                idempotency_key=idempotency_key,
                metadata=dict(metadata or {}),
                created_at=self.clock(),
            )
            stored = repo.insert_usage_event(event)

        remaining = snapshot.balance.total_available - 1
        self.event_logger.log(
            CreditAuditEvent(
                event_type=CreditAuditEventType.CREDIT_CONSUMED,
                customer_id=customer_id,
                metadata={
                    "event_id": stored.event_id,
                    "source_type": stored.source_type.value,
                    "purchase_id": stored.purchase_id or "",
                    "remaining": str(remaining),
                },
            )
        )
        return ConsumptionResult(
            success=True,
            outcome=ConsumptionOutcome.CONSUMED,
            message="Credit consumed",
            remaining_credits=remaining,
            usage_event=stored,
        )

    # ------------------------------------------------------------------
    # One-time purchases
    # ------------------------------------------------------------------
    def _purchase_expiry(self, customer_id: str) -> datetime:
        # Packs bought during a subscription expire with the current period.
        now = self.clock()
        with self.repository.transaction() as repo:
            subscription = repo.get_active_subscription(customer_id)
        if subscription is not None and subscription.current_period_end and subscription.current_period_end > now:
            return subscription.current_period_end
        return now + timedelta(days=self.config.purchase_fallback_expiry_days)

    def create_credit_purchase_checkout(
        self,
        customer_id: str,
        *,
        credits_amount: int,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
    ) -> CheckoutSession:
        if not MIN_PURCHASE_CREDITS <= credits_amount <= MAX_PURCHASE_CREDITS:
            raise CreditValidationError(
                message=f"credits_amount must be between {MIN_PURCHASE_CREDITS} and {MAX_PURCHASE_CREDITS}",
                detail={"field": "credits_amount"},
            )

        quote = quote_credits(credits_amount)
        provider_customer_id = self._provider_customer(customer_id, email)
        now = self.clock()
        purchase = CreditPurchase(
            purchase_id=f"cp_{uuid4().hex}",
            customer_id=customer_id,
            credits_amount=quote.credits_amount,
            price_cents=quote.total_cents,
            price_per_credit_cents=quote.price_per_credit_cents,
            currency=self.config.currency,
            status=CreditPurchaseStatus.PENDING,
            expires_at=self._purchase_expiry(customer_id),
            created_at=now,
        )
        with self.repository.transaction() as repo:
            stored = repo.insert_purchase(purchase)

        try:
            session = self._call_provider(
                lambda: self.provider.create_checkout_session(
                    provider_customer_id=provider_customer_id,
                    quote=quote,
                    currency=self.config.currency,
                    metadata={
                        "type": "credit_purchase",
                        "customer_id": customer_id,
                        "purchase_id": stored.purchase_id,
                        "credits_amount": str(quote.credits_amount),
                    },
                    success_url=success_url,
                    cancel_url=cancel_url,
                ),
                operation="create_checkout_session",
            )
        except PaymentProviderError:
            with self.repository.transaction() as repo:
                repo.transition_purchase(
                    stored.purchase_id,
                    from_status=CreditPurchaseStatus.PENDING,
                    to_status=CreditPurchaseStatus.FAILED,
                )
            raise

        with self.repository.transaction() as repo:
            attached = repo.attach_checkout_session(stored.purchase_id, str(session["id"]))
        logger.info(
            "Created credit checkout purchase=%s session=%s credits=%s total=%s",
            stored.purchase_id,
            session["id"],
            quote.credits_amount,
            quote.total_cents,
        )
        return CheckoutSession(
            purchase=attached or stored,
            checkout_url=str(session.get("url") or ""),
            expires_at=session.get("expires_at"),
        )

    def confirm_credit_purchase(
        self,
        customer_id: str,
        session_id: str,
        *,
        timeout: Optional[float] = None,
    ) -> CreditPurchase:
        """Wait briefly for the webhook, then settle from the processor directly."""

        def settled() -> Optional[CreditPurchase]:
            with self.repository.transaction() as repo:
                purchase = repo.get_purchase_by_session(session_id)
            if purchase is None or purchase.customer_id != customer_id:
                raise CreditNotFoundError(message="Purchase not found for this session")
            if purchase.status == CreditPurchaseStatus.PENDING:
                return None
            return purchase

        purchase = poll_until(
            settled,
            timeout=self.config.confirm_timeout_seconds if timeout is None else timeout,
            interval=self.config.confirm_poll_interval,
        )
        if purchase is not None:
            return purchase

        session = self._call_provider(
            lambda: self.provider.retrieve_checkout_session(session_id),
            operation="retrieve_checkout_session",
        )
        outcome, settled_purchase = self.reconciler.complete_checkout(session)
        logger.info(
            "Confirmed credit purchase session=%s directly with provider outcome=%s",
            session_id,
            outcome.value,
        )
        if settled_purchase is None or settled_purchase.customer_id != customer_id:
            raise CreditNotFoundError(message="Purchase not found for this session")
        return settled_purchase

    # ------------------------------------------------------------------
    # Payment methods and auto-recharge settings
    # ------------------------------------------------------------------
    def _settings_or_default(self, repo: CreditRepository, customer_id: str) -> AutoRechargeSettings:
        return repo.get_auto_recharge_settings(customer_id) or AutoRechargeSettings(customer_id=customer_id)

    def get_auto_recharge_settings(self, customer_id: str) -> AutoRechargeSettings:
        with self.repository.transaction() as repo:
            return self._settings_or_default(repo, customer_id)

    def setup_payment_method(
        self,
        customer_id: str,
        *,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
    ) -> SetupSession:
        provider_customer_id = self._provider_customer(customer_id, email)
        session = self._call_provider(
            lambda: self.provider.create_setup_session(
                provider_customer_id=provider_customer_id,
                metadata={"type": "auto_recharge_setup", "customer_id": customer_id},
                success_url=success_url,
                cancel_url=cancel_url,
            ),
            operation="create_setup_session",
        )
        return SetupSession(session_id=str(session["id"]), url=str(session.get("url") or ""))

    def confirm_payment_setup(self, customer_id: str, session_id: str) -> AutoRechargeSettings:
        method = self._call_provider(
            lambda: self.provider.retrieve_setup_payment_method(session_id),
            operation="retrieve_setup_payment_method",
        )
        payment_method_id = method.get("payment_method_id")
        if not payment_method_id:
            raise CreditValidationError(message="Setup session has not captured a payment method")

        with self.repository.transaction(customer_id) as repo:
            expected = repo.get_provider_customer_id(customer_id)
            owner = method.get("provider_customer_id")
            if owner and expected and owner != expected:
                raise CreditNotFoundError(message="Setup session not found for this customer")
            current = self._settings_or_default(repo, customer_id)
            updated = current.model_copy(
                update={
                    "payment_method_id": str(payment_method_id),
                    "payment_method_details": PaymentMethodDetails(
                        brand=method.get("brand"),
                        last4=method.get("last4"),
                        exp_month=method.get("exp_month"),
                        exp_year=method.get("exp_year"),
                    ),
                    "updated_at": self.clock(),
                }
            )
            saved = repo.save_auto_recharge_settings(updated)

        self.event_logger.log(
            CreditAuditEvent(
                event_type=CreditAuditEventType.PAYMENT_METHOD_ADDED,
                customer_id=customer_id,
                metadata={"payment_method_id": saved.payment_method_id or ""},
            )
        )
        return saved

    def update_auto_recharge_settings(
        self,
        customer_id: str,
        *,
        enabled: Optional[bool] = None,
        min_credits_threshold: Optional[int] = None,
        recharge_amount: Optional[int] = None,
    ) -> AutoRechargeSettings:
        if min_credits_threshold is not None and not (
            MIN_RECHARGE_THRESHOLD <= min_credits_threshold <= MAX_RECHARGE_THRESHOLD
        ):
            raise CreditValidationError(
                message=f"min_credits_threshold must be between {MIN_RECHARGE_THRESHOLD} and {MAX_RECHARGE_THRESHOLD}",
                detail={"field": "min_credits_threshold"},
            )
        if recharge_amount is not None and not (MIN_RECHARGE_AMOUNT <= recharge_amount <= MAX_RECHARGE_AMOUNT):
            raise CreditValidationError(
                message=f"recharge_amount must be between {MIN_RECHARGE_AMOUNT} and {MAX_RECHARGE_AMOUNT}",
                detail={"field": "recharge_amount"},
            )

        changes: Dict[str, object] = {"updated_at": self.clock()}
        if enabled is not None:
            changes["enabled"] = enabled
        if min_credits_threshold is not None:
            changes["min_credits_threshold"] = min_credits_threshold
        if recharge_amount is not None:
            changes["recharge_amount"] = recharge_amount

        with self.repository.transaction(customer_id) as repo:
            current = self._settings_or_default(repo, customer_id)
            return repo.save_auto_recharge_settings(current.model_copy(update=changes))

    def remove_payment_method(self, customer_id: str) -> AutoRechargeSettings:
        with self.repository.transaction() as repo:
            current = repo.get_auto_recharge_settings(customer_id)
        if current is None:
            return AutoRechargeSettings(customer_id=customer_id)

        if current.payment_method_id:
            try:
                self._call_provider(
                    lambda: self.provider.detach_payment_method(current.payment_method_id),
                    operation="detach_payment_method",
                )
            except ProviderUnavailableError:
                raise
            except PaymentProviderError as exc:
                # The card may already be detached on the processor side.
                logger.warning(
                    "Ignoring detach failure for customer=%s method=%s: %s",
                    customer_id,
                    current.payment_method_id,
                    exc.message,
                )

        with self.repository.transaction(customer_id) as repo:
            latest = self._settings_or_default(repo, customer_id)
            saved = repo.save_auto_recharge_settings(
                latest.model_copy(
                    update={
                        "enabled": False,
                        "payment_method_id": None,
                        "payment_method_details": None,
                        "updated_at": self.clock(),
                    }
                )
            )
        self.event_logger.log(
            CreditAuditEvent(
                event_type=CreditAuditEventType.PAYMENT_METHOD_REMOVED,
                customer_id=customer_id,
                metadata={"payment_method_id": current.payment_method_id or ""},
            )
        )
        return saved

    def check_and_trigger_auto_recharge(self, customer_id: str) -> AutoRechargeResult:
        return self.auto_recharge.check_and_trigger(customer_id)

    # ------------------------------------------------------------------
    # Billing portal, history and webhooks
    # ------------------------------------------------------------------
    def create_portal_session(self, customer_id: str, *, return_url: str, email: Optional[str] = None) -> Dict[str, object]:
        provider_customer_id = self._provider_customer(customer_id, email)
        return self._call_provider(
            lambda: self.provider.create_billing_portal_session(
                provider_customer_id=provider_customer_id,
                return_url=return_url,
            ),
            operation="create_billing_portal_session",
        )

    def list_transactions(
        self,
        customer_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        type: Optional[BillingTransactionType] = None,
        status: Optional[BillingTransactionStatus] = None,
    ) -> TransactionPage:
        if not 1 <= limit <= MAX_TRANSACTION_PAGE:
            raise CreditValidationError(message=f"limit must be between 1 and {MAX_TRANSACTION_PAGE}")
        if offset < 0:
            raise CreditValidationError(message="offset must be >= 0")
        with self.repository.transaction() as repo:
            transactions, total = repo.list_transactions(
                customer_id, limit=limit, offset=offset, type=type, status=status
            )
        return TransactionPage(transactions=list(transactions), total=total, limit=limit, offset=offset)

    def sync_subscription(self, customer_id: str) -> SubscriptionSyncResult:
        """Pull the customer's subscriptions from the processor and apply them.

        Repairs period dates when a webhook was missed. Customers never seen by
        the processor have nothing to sync.
        """

        with self.repository.transaction() as repo:
            provider_customer_id = repo.get_provider_customer_id(customer_id)
        if provider_customer_id is None:
            logger.info("No processor customer for customer=%s, skipping subscription sync", customer_id)
            return SubscriptionSyncResult(customer_id=customer_id)

        subscriptions = self._call_provider(
            lambda: self.provider.list_subscriptions(provider_customer_id),
            operation="list_subscriptions",
        )
        active = self.reconciler.sync_subscriptions(customer_id, subscriptions)
        logger.info(
            "Synced %s subscriptions for customer=%s active=%s",
            len(subscriptions),
            customer_id,
            active.subscription_id if active else None,
        )
        return SubscriptionSyncResult(customer_id=customer_id, synced=len(subscriptions), subscription=active)

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Tuple[ProviderEvent, ReconciliationOutcome]:
        event = self.provider.construct_event(payload, signature)
        outcome = self.reconciler.apply_provider_event(event)
        return event, outcome


__all__ = [
    "CreditEventLogger",
    "CreditNotifier",
    "CreditRepository",
    "CreditService",
    "PaymentProvider",
]
