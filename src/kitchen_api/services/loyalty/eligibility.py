"""Which parts of an order earn loyalty points.

The default policy is a keyword heuristic over line item labels.  It misfires
on products whose names merely contain a keyword ("Tax Day Special"), which
is why it sits behind ``EligibilityPolicy``: swapping in per-item category
tagging only requires a new policy, the ledger never sees the difference.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable, Protocol, Sequence

from kitchen_api.core.settings import settings

CENT = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class LineItem:
    name: str
    quantity: int
    amount: Decimal  # line total in dollars


class EligibilityPolicy(Protocol):
    def is_eligible(self, item: LineItem) -> bool: ...


class KeywordEligibilityPolicy:
    """Exclude items whose lower-cased label contains a denylisted keyword."""

    def __init__(self, keywords: Iterable[str] | None = None) -> None:
        source = settings.loyalty_ineligible_keywords if keywords is None else keywords
        self.keywords = tuple(keyword.lower() for keyword in source if keyword)

    def is_eligible(self, item: LineItem) -> bool:
        label = item.name.lower()
        return not any(keyword in label for keyword in self.keywords)


def eligible_amount(subtotal: Decimal, items: Sequence[LineItem], policy: EligibilityPolicy) -> Decimal:
    """Subtotal minus every ineligible line item, floored at zero."""

    excluded = sum((item.amount for item in items if not policy.is_eligible(item)), Decimal("0"))
    return max(subtotal - excluded, Decimal("0")).quantize(CENT)


def points_for_amount(amount: Decimal, point_value: Decimal | None = None) -> int:
    """One point per ``point_value`` dollars (default $0.10), rounded down."""

    value = point_value or settings.loyalty_point_value
    if amount <= 0:
        return 0
    return int((Decimal(amount) / value).to_integral_value(rounding=ROUND_FLOOR))
