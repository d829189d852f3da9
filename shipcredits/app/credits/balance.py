"""Balance derivation and consumption attribution.

Balances are never stored. They are recomputed from the usage ledger, the
active subscription period and the customer's spendable purchases every time
they are needed, inside whatever transaction the caller holds.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, Optional, Sequence, Tuple

from .models import CreditBalance, CreditPurchase, Subscription, UsageSourceType

if TYPE_CHECKING:  # pragma: no cover
    from .service import CreditRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseCapacity:
    """A spendable purchase together with the credits already drawn from it."""

    purchase: CreditPurchase
    used: int

    @property
    def remaining(self) -> int:
        return max(0, self.purchase.credits_amount - self.used)


@dataclass(frozen=True)
class Attribution:
    """Ledger source chosen for the next consumed credit."""

    source_type: UsageSourceType
    purchase_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance plus the inputs needed to attribute the next consumption."""

    balance: CreditBalance
    subscription: Optional[Subscription]
    purchases: Tuple[PurchaseCapacity, ...]

    def select_attribution(self) -> Optional[Attribution]:
        """Monthly allowance first, then the earliest-expiring purchase."""

        if self.balance.monthly_remaining > 0 and self.subscription is not None:
            return Attribution(
                source_type=UsageSourceType.MONTHLY,
                period_start=self.subscription.current_period_start,
                period_end=self.subscription.current_period_end,
            )
        candidates = [capacity for capacity in self.purchases if capacity.remaining > 0]
        if not candidates:
            return None
        chosen = min(
            candidates,
            key=lambda c: (c.purchase.expires_at, c.purchase.created_at, c.purchase.purchase_id),
        )
        return Attribution(source_type=UsageSourceType.PURCHASE, purchase_id=chosen.purchase.purchase_id)


def summarize_balance(
    customer_id: str,
    *,
    subscription: Optional[Subscription],
    monthly_credits: int,
    monthly_used: int,
    purchases: Sequence[CreditPurchase],
    purchase_usage: Dict[str, int],
    now: datetime,
) -> BalanceSnapshot:
    """Combine ledger counts into a :class:`BalanceSnapshot`.

    Purchases that are not completed or have expired are dropped here even if
    the caller already filtered them, so an expired pack can never contribute.
    """

    monthly_remaining = max(0, monthly_credits - monthly_used)
    capacities = tuple(
        PurchaseCapacity(purchase=purchase, used=int(purchase_usage.get(purchase.purchase_id, 0)))
        for purchase in purchases
        if purchase.is_spendable(now)
    )
    extra_remaining = sum(capacity.remaining for capacity in capacities)
    purchase_used = sum(capacity.used for capacity in capacities)

    balance = CreditBalance(
        customer_id=customer_id,
        monthly_credits=monthly_credits,
        monthly_used=monthly_used,
        monthly_remaining=monthly_remaining,
        extra_remaining=extra_remaining,
        total_available=monthly_remaining + extra_remaining,
        total_used=monthly_used + purchase_used,
    )
    return BalanceSnapshot(balance=balance, subscription=subscription, purchases=capacities)


class BalanceCalculator:
    """Reads ledger aggregates through a repository and derives balances."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def snapshot(self, repository: "CreditRepository", customer_id: str) -> BalanceSnapshot:
        now = self._clock()
        subscription, monthly_credits, monthly_used = self._monthly_allowance(repository, customer_id)

        purchases = list(repository.list_spendable_purchases(customer_id, now=now))
        purchase_usage = (
            repository.count_purchase_usage([purchase.purchase_id for purchase in purchases])
            if purchases
            else {}
        )
        return summarize_balance(
            customer_id,
            subscription=subscription,
            monthly_credits=monthly_credits,
            monthly_used=monthly_used,
            purchases=purchases,
            purchase_usage=purchase_usage,
            now=now,
        )

    def compute(self, repository: "CreditRepository", customer_id: str) -> CreditBalance:
        return self.snapshot(repository, customer_id).balance

    def _monthly_allowance(
        self,
        repository: "CreditRepository",
        customer_id: str,
    ) -> Tuple[Optional[Subscription], int, int]:
        # Subscription data is secondary: problems here degrade to purchased
        # credits only. Datastore errors are not caught and fail the request.
        try:
            subscription = repository.get_active_subscription(customer_id)
            if subscription is None:
                return None, 0, 0
            if not subscription.has_period:
                logger.warning(
                    "Active subscription without a billing period subscription=%s customer=%s",
                    subscription.subscription_id,
                    customer_id,
                )
                return None, 0, 0
            plan = repository.get_plan(subscription.plan_id)
            if plan is None:
                raise LookupError(f"Unknown plan {subscription.plan_id!r}")
            monthly_used = repository.count_monthly_usage(
                customer_id,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
            )
        except (LookupError, ValueError) as exc:
            logger.warning(
                "Monthly allowance unavailable for customer=%s, using purchased credits only: %s",
                customer_id,
                exc,
            )
            return None, 0, 0
        return subscription, plan.monthly_credits, monthly_used


__all__ = [
    "Attribution",
    "BalanceCalculator",
    "BalanceSnapshot",
    "PurchaseCapacity",
    "summarize_balance",
]
