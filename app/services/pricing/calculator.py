"""Per-subject pricing and the Stripe line items that bill it.

The first subject is billed at ``FIRST_SUBJECT_PRICE`` through its own SKU,
every further subject at ``ADDITIONAL_SUBJECT_PRICE`` through a second SKU
with a quantity.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from app.core.config import settings
from app.core.errors import InvalidArgumentError

CENT = Decimal("0.01")


@dataclass(frozen=True)
class LineItem:
    price_id: str
    quantity: int

    def to_stripe(self) -> dict:
        return {"price": self.price_id, "quantity": self.quantity}


def _check_count(subject_count: int) -> None:
    if isinstance(subject_count, bool) or not isinstance(subject_count, int):
        raise InvalidArgumentError(f"subject_count must be an integer, got {subject_count!r}")
    if subject_count < 0:
        raise InvalidArgumentError(f"subject_count cannot be negative, got {subject_count}")


def calculate_price(subject_count: int) -> Decimal:
    """Monthly price for ``subject_count`` subjects, rounded to cents."""
    _check_count(subject_count)
    if subject_count == 0:
        return Decimal("0.00")

    price = settings.FIRST_SUBJECT_PRICE + settings.ADDITIONAL_SUBJECT_PRICE * (subject_count - 1)
    return Decimal(price).quantize(CENT, rounding=ROUND_HALF_UP)


def line_items_for(subject_count: int) -> list[LineItem]:
    """Billable SKUs for ``subject_count`` subjects. No subjects means no items."""
    _check_count(subject_count)
    if subject_count == 0:
        return []

    items = [LineItem(price_id=settings.STRIPE_PRICE_ID_FIRST_SUBJECT, quantity=1)]
    if subject_count > 1:
        items.append(
            LineItem(price_id=settings.STRIPE_PRICE_ID_ADDITIONAL_SUBJECT, quantity=subject_count - 1)
        )
    return items


def price_from_minor(amount_minor: int | None) -> Decimal:
    """Stripe reports amounts in cents."""
    return (Decimal(amount_minor or 0) / 100).quantize(CENT)
