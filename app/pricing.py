from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

PLATFORM_FEE_RATIO = Decimal("0.60")  # cleaner keeps the remaining 40%

# Gateway-reported amounts may differ from our total by this much (whole KES).
AMOUNT_TOLERANCE = Decimal("1")


class Priced(Protocol):
    price: int


@dataclass(frozen=True)
class Pricing:
    total_price: int
    platform_fee: int
    cleaner_payout: int


def compute_pricing(booking: Priced) -> Pricing:
    """
    Split a booking's base price between the platform and the cleaner.

    The platform fee is rounded half-up to whole currency units and the
    cleaner payout absorbs the remainder, so the two always sum to the total.
    """
    total = int(booking.price or 0)
    platform_fee = int(
        (Decimal(total) * PLATFORM_FEE_RATIO).quantize(Decimal("1"), ROUND_HALF_UP)
    )
    return Pricing(
        total_price=total,
        platform_fee=platform_fee,
        cleaner_payout=total - platform_fee,
    )


def amount_matches(reported: Decimal, pricing: Pricing) -> bool:
    return abs(reported - Decimal(pricing.total_price)) <= AMOUNT_TOLERANCE
