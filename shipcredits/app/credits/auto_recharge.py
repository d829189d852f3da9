"""Low-balance auto-recharge using a saved payment method."""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional
from uuid import uuid4

from .balance import BalanceCalculator
from .config import CreditConfig
from .customers import ensure_provider_customer
from .exceptions import PaymentDeclinedError
from .models import (
    AutoRechargeReason,
    AutoRechargeResult,
    AutoRechargeSettings,
    BillingTransaction,
    BillingTransactionStatus,
    BillingTransactionType,
    CreditAuditEvent,
    CreditAuditEventType,
    CreditPurchase,
    CreditPurchaseStatus,
)
from .pricing import quote_credits

if TYPE_CHECKING:  # pragma: no cover
    from .service import CreditEventLogger, CreditNotifier, CreditRepository, PaymentProvider

logger = logging.getLogger(__name__)


def add_months(moment: datetime, months: int) -> datetime:
    """Shift ``moment`` by calendar months, clamping to the month's last day."""

    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _skipped(reason: AutoRechargeReason, available: Optional[int] = None) -> AutoRechargeResult:
    return AutoRechargeResult(triggered=False, reason=reason, available_credits=available)


@dataclass(slots=True)
class AutoRechargeMonitor:
    """Charges the saved card once when the balance drops below the threshold."""

    repository: "CreditRepository"
    provider: "PaymentProvider"
    notifier: "CreditNotifier"
    event_logger: "CreditEventLogger"
    config: CreditConfig
    balance_calculator: BalanceCalculator
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)

    def check_and_trigger(self, customer_id: str) -> AutoRechargeResult:
        """Evaluate the customer's policy and recharge at most once.

        The decision and the charge run under the customer's lock. A second
        caller racing this one observes the new purchase and the raised balance
        and does nothing. Charges are never retried automatically.
        """

        with self.repository.transaction() as repo:
            preview = repo.get_auto_recharge_settings(customer_id)
        if preview is None or not preview.enabled:
            return _skipped(AutoRechargeReason.DISABLED)
        if not preview.has_payment_method:
            return _skipped(AutoRechargeReason.NO_PAYMENT_METHOD)

        provider_customer_id = ensure_provider_customer(
            self.repository,
            self.provider,
            customer_id,
            max_attempts=self.config.provider_max_attempts,
            backoff_seconds=self.config.provider_retry_backoff,
        )

        declined: Optional[PaymentDeclinedError] = None
        with self.repository.transaction(customer_id) as repo:
            settings = repo.get_auto_recharge_settings(customer_id)
            if settings is None or not settings.enabled:
                return _skipped(AutoRechargeReason.DISABLED)
            if not settings.has_payment_method:
                return _skipped(AutoRechargeReason.NO_PAYMENT_METHOD)

            balance = self.balance_calculator.compute(repo, customer_id)
            if balance.total_available >= settings.min_credits_threshold:
                return _skipped(AutoRechargeReason.ABOVE_THRESHOLD, balance.total_available)

            quote = quote_credits(settings.recharge_amount)
            attempt = repo.count_auto_recharge_attempts(customer_id) + 1
            now = self.clock()
            try:
                charge = self.provider.charge_off_session(
                    provider_customer_id=provider_customer_id,
                    payment_method_id=settings.payment_method_id,
                    amount_cents=quote.total_cents,
                    currency=self.config.currency,
                    description=f"Auto-recharge of {quote.credits_amount} credits",
                    metadata={
                        "type": "auto_recharge",
                        "customer_id": customer_id,
                        "credits_amount": str(quote.credits_amount),
                    },
                    # Stable per attempt so a replay after a lost response cannot charge twice.
                    idempotency_key=f"auto-recharge:{customer_id}:{settings.payment_method_id}:{attempt}",
                )
                if charge.get("status") != "succeeded":
                    raise PaymentDeclinedError(message=f"Payment not completed. Status: {charge.get('status')}")
            except PaymentDeclinedError as exc:
                declined = exc
                failed = repo.record_transaction(
                    BillingTransaction(
                        transaction_id=f"bt_{uuid4().hex}",
                        customer_id=customer_id,
                        amount_cents=quote.total_cents,
                        currency=self.config.currency,
                        status=BillingTransactionStatus.FAILED,
                        type=BillingTransactionType.AUTO_RECHARGE,
                        credits_added=0,
                        description=f"Auto-recharge failed: {exc.message}",
                        metadata={"attempt": str(attempt)},
                        created_at=now,
                    )
                )
            else:
                purchase = repo.insert_purchase(
                    CreditPurchase(
                        purchase_id=f"cp_{uuid4().hex}",
                        customer_id=customer_id,
                        credits_amount=quote.credits_amount,
                        price_cents=quote.total_cents,
                        price_per_credit_cents=quote.price_per_credit_cents,
                        currency=self.config.currency,
                        status=CreditPurchaseStatus.COMPLETED,
                        expires_at=add_months(now, self.config.auto_recharge_expiry_months),
                        is_auto_recharge=True,
                        provider_payment_id=str(charge.get("id") or "") or None,
                        created_at=now,
                        completed_at=now,
                    )
                )
                transaction = repo.record_transaction(
                    BillingTransaction(
                        transaction_id=f"bt_{uuid4().hex}",
                        customer_id=customer_id,
                        amount_cents=quote.total_cents,
                        currency=self.config.currency,
                        status=BillingTransactionStatus.SUCCEEDED,
                        type=BillingTransactionType.AUTO_RECHARGE,
                        credits_added=quote.credits_amount,
                        description=f"Auto-recharge of {quote.credits_amount} credits",
                        provider_payment_id=purchase.provider_payment_id,
                        metadata={"purchase_id": purchase.purchase_id, "attempt": str(attempt)},
                        created_at=now,
                    )
                )

        if declined is not None:
            return self._declined(settings, declined, failed, balance.total_available)

        available = balance.total_available + purchase.credits_amount
        logger.info(
            "Auto-recharged customer=%s credits=%s amount=%s available=%s",
            customer_id,
            purchase.credits_amount,
            purchase.price_cents,
            available,
        )
        self.event_logger.log(
            CreditAuditEvent(
                event_type=CreditAuditEventType.AUTO_RECHARGE_SUCCEEDED,
                customer_id=customer_id,
                metadata={"purchase_id": purchase.purchase_id, "credits": str(purchase.credits_amount)},
            )
        )
        return AutoRechargeResult(
            triggered=True,
            reason=AutoRechargeReason.RECHARGED,
            available_credits=available,
            purchase=purchase,
            transaction=transaction,
            message=f"Added {purchase.credits_amount} credits",
        )

    def _declined(
        self,
        settings: AutoRechargeSettings,
        error: PaymentDeclinedError,
        transaction: BillingTransaction,
        available: int,
    ) -> AutoRechargeResult:
        logger.warning(
            "Auto-recharge declined customer=%s: %s",
            settings.customer_id,
            error.message,
        )
        self.notifier.notify_auto_recharge_failed(settings, error.message)
        self.event_logger.log(
            CreditAuditEvent(
                event_type=CreditAuditEventType.AUTO_RECHARGE_FAILED,
                customer_id=settings.customer_id,
                metadata={"reason": error.message},
            )
        )
        return AutoRechargeResult(
            triggered=False,
            reason=AutoRechargeReason.PAYMENT_DECLINED,
            available_credits=available,
            transaction=transaction,
            message=error.message,
        )


__all__ = ["AutoRechargeMonitor", "add_months"]
