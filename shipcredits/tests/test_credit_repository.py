from __future__ import annotations

from datetime import datetime, timezone

import pytest

from shipcredits.app.credits import (
    BillingTransactionStatus,
    BillingTransactionType,
    ProviderEvent,
    ProviderEventType,
    UsageEvent,
    UsageSourceType,
)
from shipcredits.app.credits import repository as credit_repository
from shipcredits.app.credits.repository import PostgresCreditRepository


class FakeCursor:
    def __init__(self, *, fetchone_results=None, fetchall_result=None, rowcount=1):
        self.fetchone_results = list(fetchone_results or [])
        self.fetchall_result = list(fetchall_result or [])
        self.rowcount = rowcount
        self.execute_calls = []
        self.closed = False

    def execute(self, query, params=None):
        self.execute_calls.append((" ".join(query.split()), params))

    def fetchone(self):
        return self.fetchone_results.pop(0) if self.fetchone_results else None

    def fetchall(self):
        return list(self.fetchall_result)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True
        return False


class FakeConnection:
    def __init__(self, *cursors):
        self._cursors = list(cursors)
        self.cursor_calls = []
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self, *args, **kwargs):
        self.cursor_calls.append((args, kwargs))
        if not self._cursors:
            raise AssertionError("No cursors configured")
        return self._cursors.pop(0)

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_locked_transaction_takes_advisory_lock_and_commits(monkeypatch):
    lock_cursor = FakeCursor()
    read_cursor = FakeCursor(fetchone_results=[{"used": 3}])
    conn = FakeConnection(lock_cursor, read_cursor)
    monkeypatch.setattr(credit_repository, "get_conn", lambda: conn)

    repository = PostgresCreditRepository()
    with repository.transaction("cust-1") as repo:
        used = repo.count_monthly_usage("cust-1", period_start=NOW, period_end=NOW)

    assert used == 3
    query, params = lock_cursor.execute_calls[0]
    assert "pg_advisory_xact_lock" in query
    assert params == ("credits:cust-1",)
    assert conn.committed is True
    assert conn.closed is True
    assert read_cursor.closed is True


def test_transaction_rolls_back_on_error(monkeypatch):
    conn = FakeConnection(FakeCursor())
    monkeypatch.setattr(credit_repository, "get_conn", lambda: conn)

    with pytest.raises(RuntimeError):
        with PostgresCreditRepository().transaction("cust-1"):
            raise RuntimeError("boom")

    assert conn.rolled_back is True
    assert conn.committed is False
    assert conn.closed is True


def test_record_provider_event_reports_duplicates():
    fresh = FakeCursor(rowcount=1)
    duplicate = FakeCursor(rowcount=0)
    repo = PostgresCreditRepository(conn=FakeConnection(fresh, duplicate))
    event = ProviderEvent(
        event_id="evt_1",
        event_type=ProviderEventType.INVOICE_PAID,
        raw_type="invoice.paid",
        data={"id": "in_1"},
    )

    assert repo.record_provider_event(event) is True
    assert repo.record_provider_event(event) is False
    assert "ON CONFLICT (event_id) DO NOTHING" in fresh.execute_calls[0][0]


def test_insert_usage_event_maps_returned_row():
    row = {
        "event_id": "ue_1",
        "customer_id": "cust-1",
        "source_type": "purchase",
        "purchase_id": "cp_1",
        "subscription_period_start": None,
        "subscription_period_end": None,
        "idempotency_key": "label-1",
        "metadata": {"label_id": "1"},
        "created_at": NOW,
    }
    cursor = FakeCursor(fetchone_results=[row])
    repo = PostgresCreditRepository(conn=FakeConnection(cursor))

    stored = repo.insert_usage_event(
        UsageEvent(
            event_id="ue_1",
            customer_id="cust-1",
            source_type=UsageSourceType.PURCHASE,
            purchase_id="cp_1",
            idempotency_key="label-1",
            metadata={"label_id": "1"},
            created_at=NOW,
        )
    )

    assert stored.purchase_id == "cp_1"
    assert stored.metadata == {"label_id": "1"}
    params = cursor.execute_calls[0][1]
    assert params["source_type"] == "purchase"
    assert params["metadata"].adapted == {"label_id": "1"}


def test_list_transactions_applies_filters_and_paging():
    row = {
        "transaction_id": "bt_1",
        "customer_id": "cust-1",
        "amount_cents": 12500,
        "currency": "BRL",
        "status": "failed",
        "type": "auto_recharge",
        "credits_added": 0,
        "description": "Auto-recharge failed",
        "metadata": {},
        "created_at": NOW,
    }
    cursor = FakeCursor(fetchone_results=[{"total": 4}], fetchall_result=[row])
    repo = PostgresCreditRepository(conn=FakeConnection(cursor))

    transactions, total = repo.list_transactions(
        "cust-1",
        limit=1,
        offset=2,
        type=BillingTransactionType.AUTO_RECHARGE,
        status=BillingTransactionStatus.FAILED,
    )

    assert total == 4
    assert transactions[0].status == BillingTransactionStatus.FAILED
    count_query, count_params = cursor.execute_calls[0]
    assert "type = %s AND status = %s" in count_query
    assert count_params == ["cust-1", "auto_recharge", "failed"]
    assert cursor.execute_calls[1][1] == ["cust-1", "auto_recharge", "failed", 1, 2]


def test_save_billing_customer_returns_stored_mapping():
    cursor = FakeCursor(fetchone_results=[{"provider_customer_id": "cus_first"}])
    repo = PostgresCreditRepository(conn=FakeConnection(cursor))

    stored = repo.save_billing_customer("cust-1", provider_customer_id="cus_second", email=None)

    assert stored == "cus_first"
    assert "ON CONFLICT (customer_id) DO NOTHING" in cursor.execute_calls[0][0]


def test_count_purchase_usage_skips_query_without_ids():
    repo = PostgresCreditRepository(conn=FakeConnection())

    assert repo.count_purchase_usage([]) == {}
