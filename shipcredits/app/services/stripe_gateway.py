"""Stripe implementation of the payment provider port."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import stripe

from ..credits import (
    CreditQuote,
    PaymentDeclinedError,
    PaymentProvider,
    PaymentProviderError,
    ProviderEvent,
    ProviderUnavailableError,
    WebhookSignatureError,
    parse_provider_event,
)

logger = logging.getLogger("credits.stripe")

SUBSCRIPTION_PAGE_SIZE = 20


def _plain_metadata(metadata) -> Dict[str, str]:
    return {key: metadata[key] for key in metadata} if metadata else {}


def _subscription_to_dict(subscription) -> Dict[str, object]:
    """Flatten a Stripe subscription into the webhook ``data.object`` shape."""

    # ``items`` must be read by key: attribute access hits the mapping method.
    items = subscription["items"]
    lines = []
    for item in (items.data if items else []):
        price = getattr(item, "price", None)
        lines.append(
            {
                "price": {
                    "id": getattr(price, "id", None),
                    "lookup_key": getattr(price, "lookup_key", None),
                },
                "current_period_start": getattr(item, "current_period_start", None),
                "current_period_end": getattr(item, "current_period_end", None),
            }
        )
    return {
        "id": subscription.id,
        "customer": subscription.customer,
        "status": subscription.status,
        "current_period_start": getattr(subscription, "current_period_start", None),
        "current_period_end": getattr(subscription, "current_period_end", None),
        "cancel_at_period_end": bool(getattr(subscription, "cancel_at_period_end", False)),
        "canceled_at": getattr(subscription, "canceled_at", None),
        "metadata": _plain_metadata(getattr(subscription, "metadata", None)),
        "items": {"data": lines},
    }


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map Stripe SDK exceptions onto the credit error hierarchy."""

    try:
        yield
    except stripe.CardError as exc:
        raise PaymentDeclinedError(
            message=exc.user_message or "Your card was declined.",
            detail={"decline_code": getattr(exc, "code", None) or ""},
        ) from exc
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        logger.warning("Stripe %s unavailable: %s", operation, exc)
        raise ProviderUnavailableError() from exc
    except stripe.StripeError as exc:
        if (exc.http_status or 0) >= 500:
            logger.warning("Stripe %s failed with status %s", operation, exc.http_status)
            raise ProviderUnavailableError() from exc
        logger.error("Stripe %s rejected: %s", operation, exc)
        raise PaymentProviderError(message=exc.user_message or "Payment provider request failed.") from exc


class StripePaymentProvider(PaymentProvider):
    """Hosted checkout, saved cards and webhooks backed by Stripe."""

    def __init__(self, *, api_key: str, webhook_secret: str) -> None:
        if not api_key or not webhook_secret:
            raise ValueError("Stripe provider requires an API key and a webhook secret")
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    def create_customer(self, *, customer_id: str, email: Optional[str]) -> str:
        params: Dict[str, object] = {"metadata": {"customer_id": customer_id}}
        if email:
            params["email"] = email
        with _translate_errors("create_customer"):
            customer = stripe.Customer.create(
                api_key=self._api_key,
                idempotency_key=f"customer:{customer_id}",
                **params,
            )
        return customer.id

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
        with _translate_errors("create_checkout_session"):
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                customer=provider_customer_id,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "unit_amount": quote.price_per_credit_cents,
                            "product_data": {
                                "name": f"{quote.credits_amount} credits",
                                "description": "One-time credit pack",
                            },
                        },
                        "quantity": quote.credits_amount,
                    }
                ],
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=success_url,
                cancel_url=cancel_url,
            )
        return {"id": session.id, "url": session.url, "expires_at": session.expires_at}

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, object]:
        with _translate_errors("retrieve_checkout_session"):
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        metadata = session.metadata
        return {
            "id": session.id,
            "mode": session.mode,
            "status": session.status,
            "payment_status": session.payment_status,
            "payment_intent": session.payment_intent,
            "amount_total": session.amount_total,
            "currency": session.currency,
            "customer": session.customer,
            "metadata": _plain_metadata(metadata),
        }

    def create_setup_session(
        self,
        *,
        provider_customer_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        with _translate_errors("create_setup_session"):
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                customer=provider_customer_id,
                mode="setup",
                payment_method_types=["card"],
                setup_intent_data={"metadata": metadata},
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        return {"id": session.id, "url": session.url}

    def retrieve_setup_payment_method(self, session_id: str) -> Dict[str, object]:
        with _translate_errors("retrieve_setup_payment_method"):
            session = stripe.checkout.Session.retrieve(
                session_id,
                api_key=self._api_key,
                expand=["setup_intent.payment_method"],
            )
        setup_intent = session.setup_intent
        payment_method = getattr(setup_intent, "payment_method", None) if setup_intent else None
        if payment_method is None or isinstance(payment_method, str):
            return {"payment_method_id": payment_method, "provider_customer_id": session.customer}
        card = getattr(payment_method, "card", None)
        return {
            "payment_method_id": payment_method.id,
            "provider_customer_id": session.customer,
            "brand": getattr(card, "brand", None),
            "last4": getattr(card, "last4", None),
            "exp_month": getattr(card, "exp_month", None),
            "exp_year": getattr(card, "exp_year", None),
        }

    def detach_payment_method(self, payment_method_id: str) -> None:
        with _translate_errors("detach_payment_method"):
            stripe.PaymentMethod.detach(payment_method_id, api_key=self._api_key)

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
        with _translate_errors("charge_off_session"):
            intent = stripe.PaymentIntent.create(
                api_key=self._api_key,
                idempotency_key=idempotency_key,
                amount=amount_cents,
                currency=currency,
                customer=provider_customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                description=description,
                metadata=metadata,
            )
        return {"id": intent.id, "status": intent.status, "amount": intent.amount}

    def create_billing_portal_session(self, *, provider_customer_id: str, return_url: str) -> Dict[str, object]:
        with _translate_errors("create_billing_portal_session"):
            session = stripe.billing_portal.Session.create(
                api_key=self._api_key,
                customer=provider_customer_id,
                return_url=return_url,
            )
        return {"id": session.id, "url": session.url, "return_url": return_url}

    def list_subscriptions(self, provider_customer_id: str) -> List[Dict[str, object]]:
        with _translate_errors("list_subscriptions"):
            listing = stripe.Subscription.list(
                api_key=self._api_key,
                customer=provider_customer_id,
                status="all",
                limit=SUBSCRIPTION_PAGE_SIZE,
            )
        return [_subscription_to_dict(subscription) for subscription in listing.data]

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        if not signature:
            raise WebhookSignatureError(message="Missing stripe-signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError() from exc
        except ValueError as exc:
            raise WebhookSignatureError(code="invalid_payload", message="Invalid webhook payload") from exc
        # Parse the verified body ourselves to work with plain dictionaries.
        try:
            return parse_provider_event(json.loads(payload))
        except ValueError as exc:
            raise WebhookSignatureError(code="invalid_payload", message=str(exc)) from exc


__all__ = ["StripePaymentProvider"]
