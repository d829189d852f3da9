"""Applies payment processor events to local purchase and subscription state.

Every event is recorded by id in the same transaction as its effects, so a
redelivered event is detected and skipped and a failed apply leaves no trace
and can be retried by the processor.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from .models import (
    BillingTransaction,
    BillingTransactionStatus,
    BillingTransactionType,
    CreditAuditEvent,
    CreditAuditEventType,
    CreditPurchase,
    CreditPurchaseStatus,
    ProviderEvent,
    ProviderEventType,
    ReconciliationOutcome,
    Subscription,
    SubscriptionStatus,
)

if TYPE_CHECKING:  # pragma: no cover
    from .service import CreditEventLogger, CreditNotifier, CreditRepository

logger = logging.getLogger(__name__)

_ACTIVE_PROVIDER_STATUSES = frozenset({"active", "trialing"})


def parse_timestamp(value: object) -> Optional[datetime]:
    """Accept epoch seconds, ISO strings or datetimes and return aware UTC."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp {value!r}")


def parse_provider_event(document: Mapping[str, object]) -> ProviderEvent:
    """Normalize a decoded webhook body (``{id, type, created, data.object}``)."""

    event_id = document.get("id")
    raw_type = document.get("type")
    if not event_id or not raw_type:
        raise ValueError("Provider event requires id and type")
    data = document.get("data")
    payload = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(payload, Mapping):
        raise ValueError("Provider event is missing data.object")
    return ProviderEvent(
        event_id=str(event_id),
        event_type=ProviderEventType.parse(str(raw_type)),
        raw_type=str(raw_type),
        data=dict(payload),
        created_at=parse_timestamp(document.get("created")) or datetime.now(timezone.utc),
    )


def _metadata(data: Mapping[str, object]) -> Mapping[str, object]:
    metadata = data.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def _reference(value: object) -> Optional[str]:
    """Return an object id whether the processor expanded the object or not."""

    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def _first_line(data: Mapping[str, object], key: str) -> Mapping[str, object]:
    container = data.get(key)
    if isinstance(container, Mapping):
        items = container.get("data")
        if isinstance(items, list) and items and isinstance(items[0], Mapping):
            return items[0]
    return {}


def _period(data: Mapping[str, object]) -> Tuple[Optional[datetime], Optional[datetime]]:
    # Newer API versions report the billing period on the subscription item.
    item = _first_line(data, "items")
    return (
        parse_timestamp(data.get("current_period_start") or item.get("current_period_start")),
        parse_timestamp(data.get("current_period_end") or item.get("current_period_end")),
    )


@dataclass
class _Applied:
    outcome: ReconciliationOutcome
    purchase: Optional[CreditPurchase] = None
    audit: List[CreditAuditEvent] = field(default_factory=list)
    failed_transactions: List[BillingTransaction] = field(default_factory=list)


@dataclass(slots=True)
class ReconciliationHandler:
    """Translates processor events into ledger state transitions."""

    repository: "CreditRepository"
    notifier: "CreditNotifier"
    event_logger: "CreditEventLogger"
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)

    def apply_provider_event(self, event: ProviderEvent) -> ReconciliationOutcome:
        with self.repository.transaction() as repo:
            if not repo.record_provider_event(event):
                logger.info("Skipping duplicate provider event %s (%s)", event.event_id, event.raw_type)
                return ReconciliationOutcome.DUPLICATE
            applied = self._dispatch(repo, event)

        self._publish(applied)
        logger.info(
            "Processed provider event %s type=%s outcome=%s",
            event.event_id,
            event.raw_type,
            applied.outcome.value,
        )
        return applied.outcome

    def complete_checkout(self, session: Mapping[str, object]) -> Tuple[ReconciliationOutcome, Optional[CreditPurchase]]:
        """Settle a checkout session fetched directly from the processor."""

        with self.repository.transaction() as repo:
            if session.get("payment_status") == "paid":
                applied = self._settle_checkout(repo, session)
            else:
                applied = _Applied(ReconciliationOutcome.IGNORED, purchase=self._find_purchase(repo, session))
        self._publish(applied)
        return applied.outcome, applied.purchase

    def _publish(self, applied: _Applied) -> None:
        for audit in applied.audit:
            self.event_logger.log(audit)
        for transaction in applied.failed_transactions:
            self.notifier.notify_payment_failed(transaction)

    def _dispatch(self, repo: "CreditRepository", event: ProviderEvent) -> _Applied:
        data = event.data
        kind = event.event_type
        if kind in (ProviderEventType.CHECKOUT_COMPLETED, ProviderEventType.CHECKOUT_ASYNC_PAYMENT_SUCCEEDED):
            if data.get("mode") not in (None, "payment"):
                return _Applied(ReconciliationOutcome.IGNORED)
            if data.get("payment_status") != "paid":
                # Delayed payment methods complete later via async_payment_succeeded.
                return _Applied(ReconciliationOutcome.IGNORED)
            return self._settle_checkout(repo, data)
        if kind in (ProviderEventType.CHECKOUT_EXPIRED, ProviderEventType.CHECKOUT_ASYNC_PAYMENT_FAILED):
            return self._fail_checkout(repo, data)
        if kind in (
            ProviderEventType.SUBSCRIPTION_CREATED,
            ProviderEventType.SUBSCRIPTION_UPDATED,
            ProviderEventType.SUBSCRIPTION_DELETED,
        ):
            return self._sync_subscription(repo, event)
        if kind == ProviderEventType.INVOICE_PAID:
            # invoice.payment_succeeded accompanies invoice.paid and is skipped.
            return self._invoice_paid(repo, event)
        if kind == ProviderEventType.INVOICE_PAYMENT_FAILED:
            return self._invoice_failed(repo, data)
        logger.debug("Unhandled provider event type %s", event.raw_type)
        return _Applied(ReconciliationOutcome.IGNORED)

    # ------------------------------------------------------------------
    # Checkout sessions
    # ------------------------------------------------------------------
    def _find_purchase(self, repo: "CreditRepository", session: Mapping[str, object]) -> Optional[CreditPurchase]:
        session_id = _reference(session.get("id"))
        purchase = repo.get_purchase_by_session(session_id) if session_id else None
        if purchase is None:
            purchase_id = _metadata(session).get("purchase_id")
            if purchase_id:
                purchase = repo.get_purchase(str(purchase_id))
        return purchase

    def _settle_checkout(self, repo: "CreditRepository", session: Mapping[str, object]) -> _Applied:
        purchase = self._find_purchase(repo, session)
        if purchase is None:
            logger.warning("No purchase matches checkout session %s", session.get("id"))
            return _Applied(ReconciliationOutcome.UNMATCHED)
        if purchase.status != CreditPurchaseStatus.PENDING:
            if purchase.status == CreditPurchaseStatus.FAILED:
                logger.warning(
                    "Refusing to complete failed purchase %s from session %s",
                    purchase.purchase_id,
                    session.get("id"),
                )
            return _Applied(ReconciliationOutcome.IGNORED, purchase=purchase)

        payment_id = _reference(session.get("payment_intent"))
        now = self.clock()
        completed = repo.transition_purchase(
            purchase.purchase_id,
            from_status=CreditPurchaseStatus.PENDING,
            to_status=CreditPurchaseStatus.COMPLETED,
            provider_payment_id=payment_id,
            completed_at=now,
        )
        if completed is None:
            return _Applied(ReconciliationOutcome.IGNORED, purchase=repo.get_purchase(purchase.purchase_id))

        amount_total = session.get("amount_total")
        repo.record_transaction(
            BillingTransaction(
                transaction_id=f"bt_{uuid4().hex}",
                customer_id=completed.customer_id,
                amount_cents=int(amount_total) if amount_total is not None else completed.price_cents,
                currency=str(session.get("currency") or completed.currency),
                status=BillingTransactionStatus.SUCCEEDED,
                type=BillingTransactionType.CREDIT_PURCHASE,
                credits_added=completed.credits_amount,
                description=f"Purchase of {completed.credits_amount} credits",
                provider_payment_id=payment_id,
                provider_session_id=completed.provider_session_id or _reference(session.get("id")),
                metadata={"purchase_id": completed.purchase_id},
                created_at=now,
            )
        )
        audit = CreditAuditEvent(
            event_type=CreditAuditEventType.PURCHASE_COMPLETED,
            customer_id=completed.customer_id,
            metadata={"purchase_id": completed.purchase_id, "credits": str(completed.credits_amount)},
        )
        return _Applied(ReconciliationOutcome.APPLIED, purchase=completed, audit=[audit])

    def _fail_checkout(self, repo: "CreditRepository", session: Mapping[str, object]) -> _Applied:
        purchase = self._find_purchase(repo, session)
        if purchase is None:
            return _Applied(ReconciliationOutcome.UNMATCHED)
        failed = repo.transition_purchase(
            purchase.purchase_id,
            from_status=CreditPurchaseStatus.PENDING,
            to_status=CreditPurchaseStatus.FAILED,
        )
        if failed is None:
            return _Applied(ReconciliationOutcome.IGNORED, purchase=purchase)
        audit = CreditAuditEvent(
            event_type=CreditAuditEventType.PURCHASE_FAILED,
            customer_id=failed.customer_id,
            metadata={"purchase_id": failed.purchase_id},
        )
        return _Applied(ReconciliationOutcome.APPLIED, purchase=failed, audit=[audit])

    # ------------------------------------------------------------------
    # Subscriptions and invoices
    # ------------------------------------------------------------------
    def _resolve_customer(
        self,
        repo: "CreditRepository",
        data: Mapping[str, object],
        existing: Optional[Subscription] = None,
    ) -> Optional[str]:
        customer_id = _metadata(data).get("customer_id")
        if customer_id:
            return str(customer_id)
        if existing is not None:
            return existing.customer_id
        provider_customer = _reference(data.get("customer"))
        if provider_customer:
            return repo.find_customer_by_provider_id(provider_customer)
        return None

    def _sync_subscription(self, repo: "CreditRepository", event: ProviderEvent) -> _Applied:
        return self._apply_subscription(
            repo,
            event.data,
            observed_at=event.created_at,
            deleted=event.event_type == ProviderEventType.SUBSCRIPTION_DELETED,
            source=event.event_id,
        )

    def sync_subscriptions(
        self,
        customer_id: str,
        subscriptions: Sequence[Mapping[str, object]],
    ) -> Optional[Subscription]:
        """Apply subscriptions pulled from the processor and return the active one.

        Pulled state is current as of the clock, so it competes with webhooks
        through ``last_event_at`` and the forward-only period rule.
        """

        observed_at = self.clock()
        # Active subscriptions last and newest period last, so the newest active one wins.
        ordered = sorted(
            subscriptions,
            key=lambda data: (
                str(data.get("status") or "") in _ACTIVE_PROVIDER_STATUSES,
                _period(data)[0] or datetime.min.replace(tzinfo=timezone.utc),
            ),
        )
        applied: List[_Applied] = []
        with self.repository.transaction(customer_id) as repo:
            for data in ordered:
                applied.append(
                    self._apply_subscription(
                        repo,
                        data,
                        observed_at=observed_at,
                        deleted=str(data.get("status") or "") == "canceled",
                        source="sync",
                        customer_id=customer_id,
                    )
                )
            active = repo.get_active_subscription(customer_id)
        for result in applied:
            self._publish(result)
        return active

    def _apply_subscription(
        self,
        repo: "CreditRepository",
        data: Mapping[str, object],
        *,
        observed_at: datetime,
        deleted: bool,
        source: str,
        customer_id: Optional[str] = None,
    ) -> _Applied:
        subscription_id = _reference(data.get("id"))
        if not subscription_id:
            return _Applied(ReconciliationOutcome.IGNORED)

        existing = repo.get_subscription(subscription_id)
        if existing is not None and existing.last_event_at and observed_at < existing.last_event_at:
            logger.info("Ignoring stale subscription state from %s for %s", source, subscription_id)
            return _Applied(ReconciliationOutcome.STALE)

        customer_id = customer_id or self._resolve_customer(repo, data, existing)
        if not customer_id:
            logger.warning("Subscription %s does not map to a known customer", subscription_id)
            return _Applied(ReconciliationOutcome.UNMATCHED)

        item = _first_line(data, "items")
        price = item.get("price") if isinstance(item.get("price"), Mapping) else {}
        plan_id = (
            _metadata(data).get("plan_id")
            or price.get("lookup_key")
            or price.get("id")
            or (existing.plan_id if existing else None)
        )
        if not plan_id:
            logger.warning("Subscription %s has no plan reference", subscription_id)
            return _Applied(ReconciliationOutcome.UNMATCHED)

        if deleted:
            status = SubscriptionStatus.CANCELED
        elif str(data.get("status") or "") in _ACTIVE_PROVIDER_STATUSES:
            status = SubscriptionStatus.ACTIVE
        else:
            status = SubscriptionStatus.INACTIVE

        period_start, period_end = _period(data)
        if existing is not None:
            if (
                period_end is None
                or (existing.current_period_end is not None and period_end < existing.current_period_end)
            ):
                # Periods only move forward; an older snapshot keeps the stored period.
                period_start, period_end = existing.current_period_start, existing.current_period_end
        now = self.clock()
        subscription = Subscription(
            subscription_id=subscription_id,
            customer_id=customer_id,
            plan_id=str(plan_id),
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            canceled_at=parse_timestamp(data.get("canceled_at")),
            last_event_at=observed_at,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if subscription.is_active:
            repo.deactivate_other_subscriptions(customer_id, keep_subscription_id=subscription_id)
        repo.upsert_subscription(subscription)

        audit_type = (
            CreditAuditEventType.SUBSCRIPTION_CANCELED
            if status == SubscriptionStatus.CANCELED
            else CreditAuditEventType.SUBSCRIPTION_UPDATED
        )
        audit = CreditAuditEvent(
            event_type=audit_type,
            customer_id=customer_id,
            metadata={"subscription_id": subscription_id, "status": status.value, "plan_id": str(plan_id)},
        )
        return _Applied(ReconciliationOutcome.APPLIED, audit=[audit])

    def _invoice_subscription(
        self,
        repo: "CreditRepository",
        data: Mapping[str, object],
    ) -> Tuple[Optional[Subscription], Optional[str]]:
        subscription_id = _reference(data.get("subscription"))
        if not subscription_id:
            parent = data.get("parent")
            if isinstance(parent, Mapping) and isinstance(parent.get("subscription_details"), Mapping):
                subscription_id = _reference(parent["subscription_details"].get("subscription"))
        subscription = repo.get_subscription(subscription_id) if subscription_id else None
        return subscription, self._resolve_customer(repo, data, subscription)

    def _invoice_paid(self, repo: "CreditRepository", event: ProviderEvent) -> _Applied:
        data = event.data
        subscription, customer_id = self._invoice_subscription(repo, data)
        if not customer_id:
            logger.warning("Paid invoice %s does not map to a known customer", data.get("id"))
            return _Applied(ReconciliationOutcome.UNMATCHED)

        audit: List[CreditAuditEvent] = []
        if subscription is not None:
            line_period = _first_line(data, "lines").get("period")
            line_period = line_period if isinstance(line_period, Mapping) else {}
            period_start = parse_timestamp(line_period.get("start") or data.get("period_start"))
            period_end = parse_timestamp(line_period.get("end") or data.get("period_end"))
            # Periods only move forward, so a late renewal never rewinds usage.
            if (
                period_start
                and period_end
                and period_end > period_start
                and (subscription.current_period_end is None or period_end > subscription.current_period_end)
            ):
                renewed = subscription.model_copy(
                    update={
                        "current_period_start": period_start,
                        "current_period_end": period_end,
                        "status": SubscriptionStatus.ACTIVE
                        if subscription.status != SubscriptionStatus.CANCELED
                        else subscription.status,
                        "last_event_at": max(subscription.last_event_at or event.created_at, event.created_at),
                        "updated_at": self.clock(),
                    }
                )
                if renewed.is_active:
                    repo.deactivate_other_subscriptions(customer_id, keep_subscription_id=renewed.subscription_id)
                repo.upsert_subscription(renewed)
                audit.append(
                    CreditAuditEvent(
                        event_type=CreditAuditEventType.SUBSCRIPTION_RENEWED,
                        customer_id=customer_id,
                        metadata={
                            "subscription_id": subscription.subscription_id,
                            "period_end": period_end.isoformat(),
                        },
                    )
                )

        repo.record_transaction(
            BillingTransaction(
                transaction_id=f"bt_{uuid4().hex}",
                customer_id=customer_id,
                amount_cents=int(data.get("amount_paid") or 0),
                currency=str(data.get("currency") or "brl"),
                status=BillingTransactionStatus.SUCCEEDED,
                type=BillingTransactionType.SUBSCRIPTION,
                description="Subscription payment",
                provider_payment_id=_reference(data.get("payment_intent")),
                provider_invoice_id=_reference(data.get("id")),
                metadata={"subscription_id": subscription.subscription_id} if subscription else {},
                created_at=self.clock(),
            )
        )
        return _Applied(ReconciliationOutcome.APPLIED, audit=audit)

    def _invoice_failed(self, repo: "CreditRepository", data: Mapping[str, object]) -> _Applied:
        subscription, customer_id = self._invoice_subscription(repo, data)
        if not customer_id:
            logger.warning("Failed invoice %s does not map to a known customer", data.get("id"))
            return _Applied(ReconciliationOutcome.UNMATCHED)

        transaction = repo.record_transaction(
            BillingTransaction(
                transaction_id=f"bt_{uuid4().hex}",
                customer_id=customer_id,
                amount_cents=int(data.get("amount_due") or 0),
                currency=str(data.get("currency") or "brl"),
                status=BillingTransactionStatus.FAILED,
                type=BillingTransactionType.SUBSCRIPTION,
                description="Subscription payment failed",
                provider_payment_id=_reference(data.get("payment_intent")),
                provider_invoice_id=_reference(data.get("id")),
                metadata={"subscription_id": subscription.subscription_id} if subscription else {},
                created_at=self.clock(),
            )
        )
        audit = CreditAuditEvent(
            event_type=CreditAuditEventType.PAYMENT_FAILED,
            customer_id=customer_id,
            metadata={"invoice_id": transaction.provider_invoice_id or ""},
        )
        return _Applied(ReconciliationOutcome.APPLIED, audit=[audit], failed_transactions=[transaction])


__all__ = ["ReconciliationHandler", "parse_provider_event", "parse_timestamp"]
