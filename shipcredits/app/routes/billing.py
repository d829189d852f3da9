"""API routes for credit purchases, billing history and provider webhooks."""
from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from ... import app_context
from ..credits import BillingTransactionStatus, BillingTransactionType, CreditError
from ..schemas.billing import (
    ConfirmPurchaseRequest,
    CreditCheckoutRequest,
    CreditCheckoutResponse,
    CreditPurchaseResponse,
    PortalSessionRequest,
    PortalSessionResponse,
    SubscriptionSyncResponse,
    TransactionListResponse,
    WebhookAck,
)
from ..services.billing import get_credit_service

logger = logging.getLogger("billing")

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
SIGNATURE_HEADER = "stripe-signature"


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/credits/checkout", response_model=CreditCheckoutResponse)
def create_credit_purchase_checkout(
    payload: CreditCheckoutRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CreditCheckoutResponse:
    service = get_credit_service()
    base_url = service.config.app_base_url
    try:
        session = service.create_credit_purchase_checkout(
            str(current_user.id),
            credits_amount=payload.credits_amount,
            success_url=payload.success_url
            or f"{base_url}/credits?purchase=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=payload.cancel_url or f"{base_url}/credits?purchase=cancelled",
            email=getattr(current_user, "email", None),
        )
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    return CreditCheckoutResponse.from_checkout(session)


@router.post("/credits/confirm", response_model=CreditPurchaseResponse)
def confirm_credit_purchase(
    payload: ConfirmPurchaseRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CreditPurchaseResponse:
    try:
        purchase = get_credit_service().confirm_credit_purchase(str(current_user.id), payload.session_id)
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CreditPurchaseResponse.from_purchase(purchase)


@router.post("/portal-session", response_model=PortalSessionResponse)
def create_portal_session(
    payload: PortalSessionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PortalSessionResponse:
    service = get_credit_service()
    try:
        session = service.create_portal_session(
            str(current_user.id),
            return_url=payload.return_url or f"{service.config.app_base_url}/credits",
            email=getattr(current_user, "email", None),
        )
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    return PortalSessionResponse(url=str(session.get("url", "")), expires_at=session.get("expires_at"))


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    type: Optional[BillingTransactionType] = Query(None),
    transaction_status: Optional[BillingTransactionStatus] = Query(None, alias="status"),
    *,
    current_user=Depends(_get_current_user),
) -> TransactionListResponse:
    try:
        page = get_credit_service().list_transactions(
            str(current_user.id),
            limit=limit,
            offset=offset,
            type=type,
            status=transaction_status,
        )
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    return TransactionListResponse.from_page(page)


@router.post("/subscription/sync", response_model=SubscriptionSyncResponse)
def sync_subscription(*, current_user=Depends(_get_current_user)) -> SubscriptionSyncResponse:
    try:
        result = get_credit_service().sync_subscription(str(current_user.id))
    except CreditError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionSyncResponse.from_result(result)


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(request: Request) -> WebhookAck:
    service = get_credit_service()
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    try:
        event, outcome = await run_in_threadpool(service.handle_webhook, payload, signature)
    except CreditError as exc:
        logger.warning("Rejected webhook delivery: %s", exc.message)
        raise exc.to_http_exception() from exc
    logger.info("Webhook %s (%s) -> %s", event.event_id, event.raw_type, outcome.value)
    return WebhookAck(outcome=outcome.value)
