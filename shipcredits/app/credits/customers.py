"""Mapping between local customers and payment processor customers."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from .retry import call_with_retry

if TYPE_CHECKING:  # pragma: no cover
    from .service import CreditRepository, PaymentProvider

logger = logging.getLogger(__name__)


def ensure_provider_customer(
    repository: "CreditRepository",
    provider: "PaymentProvider",
    customer_id: str,
    *,
    email: Optional[str] = None,
    max_attempts: int = 2,
    backoff_seconds: float = 0.5,
) -> str:
    """Return the processor customer id, creating the processor customer once."""

    with repository.transaction() as repo:
        existing = repo.get_provider_customer_id(customer_id)
    if existing:
        return existing

    created = call_with_retry(
        lambda: provider.create_customer(customer_id=customer_id, email=email),
        operation="create_customer",
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
    )
    with repository.transaction() as repo:
        # A concurrent request may have won; the stored mapping is authoritative.
        stored = repo.save_billing_customer(customer_id, provider_customer_id=created, email=email)
    if stored != created:
        logger.info(
            "Discarding duplicate provider customer %s for customer=%s (kept %s)",
            created,
            customer_id,
            stored,
        )
    return stored


__all__ = ["ensure_provider_customer"]
