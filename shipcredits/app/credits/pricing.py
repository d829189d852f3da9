"""Static price schedule and limits for credit packs."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

MIN_PURCHASE_CREDITS = 10
MAX_PURCHASE_CREDITS = 5000

MIN_RECHARGE_THRESHOLD = 50
MAX_RECHARGE_THRESHOLD = 1000
MIN_RECHARGE_AMOUNT = 100
MAX_RECHARGE_AMOUNT = 5000

DEFAULT_RECHARGE_THRESHOLD = 100
DEFAULT_RECHARGE_AMOUNT = 500


@dataclass(frozen=True)
class PriceTier:
    """Per-credit price applying from ``min_quantity`` upwards."""

    min_quantity: int
    price_per_credit_cents: int


# Ordered from the largest volume down.
PRICE_TIERS: Tuple[PriceTier, ...] = (
    PriceTier(min_quantity=2500, price_per_credit_cents=20),
    PriceTier(min_quantity=1000, price_per_credit_cents=22),
    PriceTier(min_quantity=500, price_per_credit_cents=25),
    PriceTier(min_quantity=100, price_per_credit_cents=30),
    PriceTier(min_quantity=0, price_per_credit_cents=35),
)


@dataclass(frozen=True)
class CreditQuote:
    """Server-computed price for a credit pack."""

    credits_amount: int
    price_per_credit_cents: int
    total_cents: int

    def to_dict(self) -> dict[str, int]:
        return {
            "credits_amount": self.credits_amount,
            "price_per_credit_cents": self.price_per_credit_cents,
            "total_cents": self.total_cents,
        }


def price_per_credit_cents(quantity: int) -> int:
    """Return the volume-discounted price for ``quantity`` credits."""

    for tier in PRICE_TIERS:
        if quantity >= tier.min_quantity:
            return tier.price_per_credit_cents
    return PRICE_TIERS[-1].price_per_credit_cents


def quote_credits(quantity: int) -> CreditQuote:
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    unit = price_per_credit_cents(quantity)
    return CreditQuote(credits_amount=quantity, price_per_credit_cents=unit, total_cents=unit * quantity)


__all__ = [
    "CreditQuote",
    "DEFAULT_RECHARGE_AMOUNT",
    "DEFAULT_RECHARGE_THRESHOLD",
    "MAX_PURCHASE_CREDITS",
    "MAX_RECHARGE_AMOUNT",
    "MAX_RECHARGE_THRESHOLD",
    "MIN_PURCHASE_CREDITS",
    "MIN_RECHARGE_AMOUNT",
    "MIN_RECHARGE_THRESHOLD",
    "PRICE_TIERS",
    "PriceTier",
    "price_per_credit_cents",
    "quote_credits",
]
