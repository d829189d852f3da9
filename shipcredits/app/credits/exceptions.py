"""Exceptions raised by the credit ledger services."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class CreditError(Exception):
    """Base error carrying a stable code for API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class CreditValidationError(CreditError):
    """Malformed or out-of-range input, rejected before any side effect."""

    code: str = "validation_error"
    message: str = "Invalid request."
    status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY


@dataclass
class CreditNotFoundError(CreditError):
    code: str = "not_found"
    message: str = "Resource not found."
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class PaymentProviderError(CreditError):
    """Non-retryable failure reported by the payment processor."""

    code: str = "payment_provider_error"
    message: str = "Payment provider request failed."
    status_code: int = status.HTTP_502_BAD_GATEWAY


@dataclass
class ProviderUnavailableError(PaymentProviderError):
    """Network-class failure talking to the payment processor."""

    code: str = "payment_provider_unavailable"
    message: str = "Payment provider is unavailable."
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass
class PaymentDeclinedError(PaymentProviderError):
    """The processor refused the charge. Never retried."""

    code: str = "payment_declined"
    message: str = "Payment was declined."
    status_code: int = status.HTTP_402_PAYMENT_REQUIRED


@dataclass
class WebhookSignatureError(CreditError):
    code: str = "invalid_signature"
    message: str = "Webhook signature verification failed."
    status_code: int = status.HTTP_400_BAD_REQUEST


__all__ = [
    "CreditError",
    "CreditNotFoundError",
    "CreditValidationError",
    "PaymentDeclinedError",
    "PaymentProviderError",
    "ProviderUnavailableError",
    "WebhookSignatureError",
]
