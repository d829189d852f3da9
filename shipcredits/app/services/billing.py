"""Application wiring for the credit service."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Dict, List, Optional
from uuid import uuid4

import stripe

from ..credits import (
    AutoRechargeSettings,
    BillingTransaction,
    CreditAuditEvent,
    CreditConfig,
    CreditEventLogger,
    CreditNotifier,
    CreditQuote,
    CreditService,
    PaymentDeclinedError,
    PaymentProvider,
    ProviderEvent,
    WebhookSignatureError,
    load_credit_config,
    parse_provider_event,
)
from ..credits.repository import PostgresCreditRepository
from .stripe_gateway import StripePaymentProvider


logger = logging.getLogger("credits")

SIGNATURE_TOLERANCE_SECONDS = 300


class LoggingCreditNotifier(CreditNotifier):
    """Notifier that records credit notifications to the application logger."""

    def notify_auto_recharge_failed(self, settings: AutoRechargeSettings, reason: str) -> None:
        logger.warning(
            "Auto-recharge failed for customer %s amount=%s: %s",
            settings.customer_id,
            settings.recharge_amount,
            reason,
        )

    def notify_payment_failed(self, transaction: BillingTransaction) -> None:
        logger.warning(
            "Payment failure for customer %s invoice=%s amount=%s %s",
            transaction.customer_id,
            transaction.provider_invoice_id,
            transaction.amount_cents,
            transaction.currency,
        )


class LoggingCreditEventLogger(CreditEventLogger):
    """Simple event logger forwarding credit audit events to logging."""

    def log(self, event: CreditAuditEvent) -> None:
        logger.info(
            "Credit event %s customer=%s metadata=%s",
            event.event_type.value,
            event.customer_id,
            event.metadata,
        )


def sign_sandbox_payload(payload: bytes, secret: str, *, timestamp: Optional[int] = None) -> str:
    """Build a ``t=...,v1=...`` signature header for sandbox webhooks."""

    issued = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{issued}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={issued},v1={digest}"


class LocalSandboxPaymentProvider(PaymentProvider):
    """In-process provider for local development and tests.

    Checkout sessions stay unpaid until :meth:`mark_checkout_paid` is called.
    Cards whose id starts with ``pm_card_decline`` are refused.
    """

    def __init__(self, *, webhook_secret: str = "whsec_sandbox") -> None:
        self._webhook_secret = webhook_secret
        self._lock = threading.Lock()
        self._customers: Dict[str, str] = {}
        self._checkouts: Dict[str, Dict[str, object]] = {}
        self._setups: Dict[str, Dict[str, object]] = {}
        self._subscriptions: Dict[str, List[Dict[str, object]]] = {}

    def create_customer(self, *, customer_id: str, email: Optional[str]) -> str:
        provider_id = f"cus_{uuid4().hex[:14]}"
        with self._lock:
            self._customers[provider_id] = customer_id
        return provider_id

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
        session_id = f"cs_{uuid4().hex}"
        session: Dict[str, object] = {
            "id": session_id,
            "url": f"https://billing.local/checkout/{session_id}",
            "mode": "payment",
            "customer": provider_customer_id,
            "payment_status": "unpaid",
            "payment_intent": None,
            "amount_total": quote.total_cents,
            "currency": currency,
            "metadata": dict(metadata),
            "expires_at": datetime.now(timezone.utc) + timedelta(minutes=30),
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        with self._lock:
            self._checkouts[session_id] = session
        return dict(session)

    def mark_checkout_paid(self, session_id: str) -> Dict[str, object]:
        with self._lock:
            session = self._checkouts[session_id]
            session["payment_status"] = "paid"
            session["payment_intent"] = f"pi_{uuid4().hex[:14]}"
            return dict(session)

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, object]:
        with self._lock:
            session = self._checkouts.get(session_id)
            if session is None:
                raise LookupError(f"Unknown checkout session {session_id}")
            return dict(session)

    def create_setup_session(
        self,
        *,
        provider_customer_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        session_id = f"cs_setup_{uuid4().hex}"
        with self._lock:
            self._setups[session_id] = {
                "payment_method_id": f"pm_sandbox_{uuid4().hex[:12]}",
                "provider_customer_id": provider_customer_id,
                "brand": "visa",
                "last4": "4242",
                "exp_month": 12,
                "exp_year": datetime.now(timezone.utc).year + 3,
            }
        return {"id": session_id, "url": f"https://billing.local/setup/{session_id}"}

    def retrieve_setup_payment_method(self, session_id: str) -> Dict[str, object]:
        with self._lock:
            method = self._setups.get(session_id)
        if method is None:
            raise LookupError(f"Unknown setup session {session_id}")
        return dict(method)

    def detach_payment_method(self, payment_method_id: str) -> None:
        logger.debug("Sandbox detach payment method %s", payment_method_id)

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
        if payment_method_id.startswith("pm_card_decline"):
            raise PaymentDeclinedError(message="Your card was declined.")
        return {"id": f"pi_{uuid4().hex[:14]}", "status": "succeeded", "amount": amount_cents}

    def create_billing_portal_session(self, *, provider_customer_id: str, return_url: str) -> Dict[str, object]:
        session_id = f"ps_{uuid4().hex}"
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=15)
        url = f"https://billing.local/portal/{provider_customer_id}"
        return {"id": session_id, "url": url, "expires_at": expires_at, "return_url": return_url}

    def put_subscription(self, provider_customer_id: str, subscription: Dict[str, object]) -> None:
        """Create or replace a sandbox subscription for ``provider_customer_id``."""

        with self._lock:
            current = [
                sub for sub in self._subscriptions.get(provider_customer_id, []) if sub["id"] != subscription["id"]
            ]
            current.append({**subscription, "customer": provider_customer_id})
            self._subscriptions[provider_customer_id] = current

    def list_subscriptions(self, provider_customer_id: str) -> List[Dict[str, object]]:
        with self._lock:
            return [dict(sub) for sub in self._subscriptions.get(provider_customer_id, [])]

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        if not signature:
            raise WebhookSignatureError(message="Missing webhook signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self._webhook_secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(message=f"Webhook signature verification failed: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise WebhookSignatureError(code="invalid_payload", message="Webhook payload is not UTF-8") from exc
        try:
            return parse_provider_event(json.loads(payload))
        except ValueError as exc:
            raise WebhookSignatureError(code="invalid_payload", message=str(exc)) from exc


def create_payment_provider(config: CreditConfig) -> PaymentProvider:
    if config.provider_name == "stripe":
        return StripePaymentProvider(
            api_key=config.stripe_secret_key or "",
            webhook_secret=config.stripe_webhook_secret or "",
        )
    if config.provider_name != "sandbox":
        raise ValueError(f"Unsupported payment provider {config.provider_name!r}")
    return LocalSandboxPaymentProvider(webhook_secret=config.sandbox_webhook_secret)


@lru_cache(maxsize=1)
def get_credit_service() -> CreditService:
    config = load_credit_config()
    service = CreditService(
        repository=PostgresCreditRepository(),
        provider=create_payment_provider(config),
        notifier=LoggingCreditNotifier(),
        event_logger=LoggingCreditEventLogger(),
        config=config,
    )
    logger.info("Credit service ready provider=%s currency=%s", config.provider_name, config.currency)
    return service


__all__ = [
    "LocalSandboxPaymentProvider",
    "LoggingCreditEventLogger",
    "LoggingCreditNotifier",
    "create_payment_provider",
    "get_credit_service",
    "sign_sandbox_payload",
]
