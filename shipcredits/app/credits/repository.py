"""Persistence layer for the credit ledger."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .models import (
    AutoRechargeSettings,
    BillingTransaction,
    BillingTransactionStatus,
    BillingTransactionType,
    CreditPurchase,
    CreditPurchaseStatus,
    PaymentMethodDetails,
    Plan,
    ProviderEvent,
    Subscription,
    SubscriptionStatus,
    UsageEvent,
    UsageSourceType,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_plan(row: dict) -> Plan:
    return Plan(plan_id=row["plan_id"], name=row.get("name") or "", monthly_credits=int(row["monthly_credits"]))


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        customer_id=row["customer_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        last_event_at=row.get("last_event_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_purchase(row: dict) -> CreditPurchase:
    return CreditPurchase(
        purchase_id=row["purchase_id"],
        customer_id=row["customer_id"],
        credits_amount=int(row["credits_amount"]),
        price_cents=int(row["price_cents"]),
        price_per_credit_cents=int(row["price_per_credit_cents"]),
        currency=row["currency"],
        status=CreditPurchaseStatus(row["status"]),
        expires_at=row["expires_at"],
        is_auto_recharge=bool(row.get("is_auto_recharge")),
        provider_session_id=row.get("provider_session_id"),
        provider_payment_id=row.get("provider_payment_id"),
        created_at=row["created_at"],
        completed_at=row.get("completed_at"),
    )


def _row_to_usage_event(row: dict) -> UsageEvent:
    return UsageEvent(
        event_id=row["event_id"],
        customer_id=row["customer_id"],
        source_type=UsageSourceType(row["source_type"]),
        purchase_id=row.get("purchase_id"),
        subscription_period_start=row.get("subscription_period_start"),
        subscription_period_end=row.get("subscription_period_end"),
        idempotency_key=row.get("idempotency_key"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _row_to_settings(row: dict) -> AutoRechargeSettings:
    details = row.get("payment_method_details")
    return AutoRechargeSettings(
        customer_id=row["customer_id"],
        enabled=bool(row["enabled"]),
        min_credits_threshold=int(row["min_credits_threshold"]),
        recharge_amount=int(row["recharge_amount"]),
        payment_method_id=row.get("payment_method_id"),
        payment_method_details=PaymentMethodDetails(**details) if details else None,
        updated_at=row["updated_at"],
    )


def _row_to_transaction(row: dict) -> BillingTransaction:
    return BillingTransaction(
        transaction_id=row["transaction_id"],
        customer_id=row["customer_id"],
        amount_cents=int(row["amount_cents"]),
        currency=row["currency"],
        status=BillingTransactionStatus(row["status"]),
        type=BillingTransactionType(row["type"]),
        credits_added=int(row.get("credits_added") or 0),
        description=row.get("description"),
        provider_payment_id=row.get("provider_payment_id"),
        provider_invoice_id=row.get("provider_invoice_id"),
        provider_session_id=row.get("provider_session_id"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


class PostgresCreditRepository:
    """Concrete repository persisting the credit ledger in PostgreSQL.

    A repository created without a connection opens one per call. The
    ``transaction`` context manager yields a repository bound to a single
    connection so several calls share one database transaction.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self, customer_id: Optional[str] = None) -> Iterator["PostgresCreditRepository"]:
        with managed_connection(self._conn) as (connection, _managed):
            if customer_id is not None:
                with connection.cursor() as cursor:
                    # Released automatically at commit or rollback.
                    cursor.execute(
                        "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
                        (f"credits:{customer_id}",),
                    )
            yield PostgresCreditRepository(conn=connection)

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    # ------------------------------------------------------------------
    # Plans and subscriptions
    # ------------------------------------------------------------------
    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM credit_plans WHERE plan_id = %s LIMIT 1", (plan_id,))
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def get_active_subscription(self, customer_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_subscriptions
                WHERE customer_id = %s AND status = %s
                ORDER BY current_period_end DESC NULLS LAST
                LIMIT 1
                """,
                (customer_id, SubscriptionStatus.ACTIVE.value),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM credit_subscriptions WHERE subscription_id = %s LIMIT 1",
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO credit_subscriptions (
                    subscription_id,
                    customer_id,
                    plan_id,
                    status,
                    current_period_start,
                    current_period_end,
                    cancel_at_period_end,
                    canceled_at,
                    last_event_at,
                    created_at
                )
                VALUES (%(subscription_id)s, %(customer_id)s, %(plan_id)s, %(status)s,
                        %(current_period_start)s, %(current_period_end)s,
                        %(cancel_at_period_end)s, %(canceled_at)s, %(last_event_at)s,
                        %(created_at)s)
                ON CONFLICT (subscription_id) DO UPDATE SET
                    customer_id = EXCLUDED.customer_id,
                    plan_id = EXCLUDED.plan_id,
                    status = EXCLUDED.status,
                    current_period_start = EXCLUDED.current_period_start,
                    current_period_end = EXCLUDED.current_period_end,
                    cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                    canceled_at = EXCLUDED.canceled_at,
                    last_event_at = GREATEST(credit_subscriptions.last_event_at, EXCLUDED.last_event_at),
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "subscription_id": subscription.subscription_id,
                    "customer_id": subscription.customer_id,
                    "plan_id": subscription.plan_id,
                    "status": subscription.status.value,
                    "current_period_start": subscription.current_period_start,
                    "current_period_end": subscription.current_period_end,
                    "cancel_at_period_end": subscription.cancel_at_period_end,
                    "canceled_at": subscription.canceled_at,
                    "last_event_at": subscription.last_event_at,
                    "created_at": subscription.created_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def deactivate_other_subscriptions(self, customer_id: str, *, keep_subscription_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE credit_subscriptions
                SET status = %s, updated_at = NOW()
                WHERE customer_id = %s AND subscription_id <> %s AND status = %s
                """,
                (
                    SubscriptionStatus.INACTIVE.value,
                    customer_id,
                    keep_subscription_id,
                    SubscriptionStatus.ACTIVE.value,
                ),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Usage ledger
    # ------------------------------------------------------------------
    def count_monthly_usage(self, customer_id: str, *, period_start: datetime, period_end: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) AS used
                FROM credit_usage_events
                WHERE customer_id = %s
                  AND source_type = %s
                  AND subscription_period_start = %s
                  AND subscription_period_end = %s
                """,
                (customer_id, UsageSourceType.MONTHLY.value, period_start, period_end),
            )
            row = cursor.fetchone()
            return int(row["used"]) if row else 0

    def count_purchase_usage(self, purchase_ids: Sequence[str]) -> Dict[str, int]:
        if not purchase_ids:
            return {}
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT purchase_id, COUNT(*) AS used
                FROM credit_usage_events
                WHERE purchase_id = ANY(%s)
                GROUP BY purchase_id
                """,
                (list(purchase_ids),),
            )
            rows = cursor.fetchall() or []
            return {row["purchase_id"]: int(row["used"]) for row in rows}

    def insert_usage_event(self, event: UsageEvent) -> UsageEvent:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO credit_usage_events (
                    event_id,
                    customer_id,
                    source_type,
                    purchase_id,
                    subscription_period_start,
                    subscription_period_end,
                    idempotency_key,
                    metadata,
                    created_at
                )
                VALUES (%(event_id)s, %(customer_id)s, %(source_type)s, %(purchase_id)s,
                        %(subscription_period_start)s, %(subscription_period_end)s,
                        %(idempotency_key)s, %(metadata)s, %(created_at)s)
                RETURNING *
                """,
                {
                    "event_id": event.event_id,
                    "customer_id": event.customer_id,
                    "source_type": event.source_type.value,
                    "purchase_id": event.purchase_id,
                    "subscription_period_start": event.subscription_period_start,
                    "subscription_period_end": event.subscription_period_end,
                    "idempotency_key": event.idempotency_key,
                    "metadata": psycopg2.extras.Json(event.metadata),
                    "created_at": event.created_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist usage event")
            return _row_to_usage_event(row)

    def get_usage_event_by_key(self, customer_id: str, idempotency_key: str) -> Optional[UsageEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_usage_events
                WHERE customer_id = %s AND idempotency_key = %s
                LIMIT 1
                """,
                (customer_id, idempotency_key),
            )
            row = cursor.fetchone()
            return _row_to_usage_event(row) if row else None

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------
    def list_spendable_purchases(self, customer_id: str, *, now: datetime) -> List[CreditPurchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_purchases
                WHERE customer_id = %s AND status = %s AND expires_at > %s
                ORDER BY expires_at ASC, created_at ASC, purchase_id ASC
                """,
                (customer_id, CreditPurchaseStatus.COMPLETED.value, now),
            )
            rows = cursor.fetchall() or []
            return [_row_to_purchase(row) for row in rows]

    def insert_purchase(self, purchase: CreditPurchase) -> CreditPurchase:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO credit_purchases (
                    purchase_id,
                    customer_id,
                    credits_amount,
                    price_cents,
                    price_per_credit_cents,
                    currency,
                    status,
                    expires_at,
                    is_auto_recharge,
                    provider_session_id,
                    provider_payment_id,
                    created_at,
                    completed_at
                )
                VALUES (%(purchase_id)s, %(customer_id)s, %(credits_amount)s, %(price_cents)s,
                        %(price_per_credit_cents)s, %(currency)s, %(status)s, %(expires_at)s,
                        %(is_auto_recharge)s, %(provider_session_id)s, %(provider_payment_id)s,
                        %(created_at)s, %(completed_at)s)
                RETURNING *
                """,
                {
                    "purchase_id": purchase.purchase_id,
                    "customer_id": purchase.customer_id,
                    "credits_amount": purchase.credits_amount,
                    "price_cents": purchase.price_cents,
                    "price_per_credit_cents": purchase.price_per_credit_cents,
                    "currency": purchase.currency,
                    "status": purchase.status.value,
                    "expires_at": purchase.expires_at,
                    "is_auto_recharge": purchase.is_auto_recharge,
                    "provider_session_id": purchase.provider_session_id,
                    "provider_payment_id": purchase.provider_payment_id,
                    "created_at": purchase.created_at,
                    "completed_at": purchase.completed_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist credit purchase")
            return _row_to_purchase(row)

    def get_purchase(self, purchase_id: str) -> Optional[CreditPurchase]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM credit_purchases WHERE purchase_id = %s LIMIT 1", (purchase_id,))
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def get_purchase_by_session(self, session_id: str) -> Optional[CreditPurchase]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM credit_purchases WHERE provider_session_id = %s LIMIT 1",
                (session_id,),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def attach_checkout_session(self, purchase_id: str, session_id: str) -> Optional[CreditPurchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE credit_purchases
                SET provider_session_id = %s, updated_at = NOW()
                WHERE purchase_id = %s AND provider_session_id IS NULL
                RETURNING *
                """,
                (session_id, purchase_id),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def transition_purchase(
        self,
        purchase_id: str,
        *,
        from_status: CreditPurchaseStatus,
        to_status: CreditPurchaseStatus,
        provider_payment_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Optional[CreditPurchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE credit_purchases
                SET status = %s,
                    provider_payment_id = COALESCE(%s, provider_payment_id),
                    completed_at = COALESCE(%s, completed_at),
                    updated_at = NOW()
                WHERE purchase_id = %s AND status = %s
                RETURNING *
                """,
                (to_status.value, provider_payment_id, completed_at, purchase_id, from_status.value),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    # ------------------------------------------------------------------
    # Auto-recharge settings
    # ------------------------------------------------------------------
    def get_auto_recharge_settings(self, customer_id: str) -> Optional[AutoRechargeSettings]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM auto_recharge_settings WHERE customer_id = %s LIMIT 1",
                (customer_id,),
            )
            row = cursor.fetchone()
            return _row_to_settings(row) if row else None

    def save_auto_recharge_settings(self, settings: AutoRechargeSettings) -> AutoRechargeSettings:
        details = settings.payment_method_details
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO auto_recharge_settings (
                    customer_id,
                    enabled,
                    min_credits_threshold,
                    recharge_amount,
                    payment_method_id,
                    payment_method_details,
                    updated_at
                )
                VALUES (%(customer_id)s, %(enabled)s, %(min_credits_threshold)s, %(recharge_amount)s,
                        %(payment_method_id)s, %(payment_method_details)s, %(updated_at)s)
                ON CONFLICT (customer_id) DO UPDATE SET
                    enabled = EXCLUDED.enabled,
                    min_credits_threshold = EXCLUDED.min_credits_threshold,
                    recharge_amount = EXCLUDED.recharge_amount,
                    payment_method_id = EXCLUDED.payment_method_id,
                    payment_method_details = EXCLUDED.payment_method_details,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "customer_id": settings.customer_id,
                    "enabled": settings.enabled,
                    "min_credits_threshold": settings.min_credits_threshold,
                    "recharge_amount": settings.recharge_amount,
                    "payment_method_id": settings.payment_method_id,
                    "payment_method_details": psycopg2.extras.Json(details.model_dump()) if details else None,
                    "updated_at": settings.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist auto-recharge settings")
            return _row_to_settings(row)

    # ------------------------------------------------------------------
    # Billing transactions
    # ------------------------------------------------------------------
    def record_transaction(self, transaction: BillingTransaction) -> BillingTransaction:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_transactions (
                    transaction_id,
                    customer_id,
                    amount_cents,
                    currency,
                    status,
                    type,
                    credits_added,
                    description,
                    provider_payment_id,
                    provider_invoice_id,
                    provider_session_id,
                    metadata,
                    created_at
                )
                VALUES (%(transaction_id)s, %(customer_id)s, %(amount_cents)s, %(currency)s,
                        %(status)s, %(type)s, %(credits_added)s, %(description)s,
                        %(provider_payment_id)s, %(provider_invoice_id)s, %(provider_session_id)s,
                        %(metadata)s, %(created_at)s)
                RETURNING *
                """,
                {
                    "transaction_id": transaction.transaction_id,
                    "customer_id": transaction.customer_id,
                    "amount_cents": transaction.amount_cents,
                    "currency": transaction.currency,
                    "status": transaction.status.value,
                    "type": transaction.type.value,
                    "credits_added": transaction.credits_added,
                    "description": transaction.description,
                    "provider_payment_id": transaction.provider_payment_id,
                    "provider_invoice_id": transaction.provider_invoice_id,
                    "provider_session_id": transaction.provider_session_id,
                    "metadata": psycopg2.extras.Json(transaction.metadata),
                    "created_at": transaction.created_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist billing transaction")
            return _row_to_transaction(row)

    def count_auto_recharge_attempts(self, customer_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT COUNT(*) AS attempts FROM billing_transactions WHERE customer_id = %s AND type = %s",
                (customer_id, BillingTransactionType.AUTO_RECHARGE.value),
            )
            row = cursor.fetchone()
            return int(row["attempts"]) if row else 0

    def list_transactions(
        self,
        customer_id: str,
        *,
        limit: int,
        offset: int,
        type: Optional[BillingTransactionType] = None,
        status: Optional[BillingTransactionStatus] = None,
    ) -> Tuple[List[BillingTransaction], int]:
        clauses = ["customer_id = %s"]
        params: List[object] = [customer_id]
        if type is not None:
            clauses.append("type = %s")
            params.append(type.value)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        where = " AND ".join(clauses)

        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total FROM billing_transactions WHERE {where}", params)
            total_row = cursor.fetchone()
            cursor.execute(
                f"""
                SELECT *
                FROM billing_transactions
                WHERE {where}
                ORDER BY created_at DESC, transaction_id DESC
                LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            )
            rows = cursor.fetchall() or []
            return [_row_to_transaction(row) for row in rows], int(total_row["total"]) if total_row else 0

    # ------------------------------------------------------------------
    # Provider events and customers
    # ------------------------------------------------------------------
    def record_provider_event(self, event: ProviderEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    event_id,
                    event_type,
                    payload,
                    event_created_at,
                    received_at,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.raw_type,
                    psycopg2.extras.Json(event.data),
                    event.created_at,
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def get_provider_customer_id(self, customer_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT provider_customer_id FROM billing_customers WHERE customer_id = %s LIMIT 1",
                (customer_id,),
            )
            row = cursor.fetchone()
            return row["provider_customer_id"] if row else None

    def save_billing_customer(self, customer_id: str, *, provider_customer_id: str, email: Optional[str]) -> str:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_customers (customer_id, provider_customer_id, email)
                VALUES (%s, %s, %s)
                ON CONFLICT (customer_id) DO NOTHING
                """,
                (customer_id, provider_customer_id, email),
            )
            cursor.execute(
                "SELECT provider_customer_id FROM billing_customers WHERE customer_id = %s",
                (customer_id,),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist billing customer")
            return row["provider_customer_id"]

    def find_customer_by_provider_id(self, provider_customer_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT customer_id FROM billing_customers WHERE provider_customer_id = %s LIMIT 1",
                (provider_customer_id,),
            )
            row = cursor.fetchone()
            return row["customer_id"] if row else None


__all__ = ["PostgresCreditRepository", "managed_connection"]
