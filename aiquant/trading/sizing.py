from __future__ import annotations

import math
from typing import Iterable

from aiquant.domain.models import Position

# Absorbs float noise such as 0.29 * 100 == 28.999999999999996.
_FLOOR_EPS = 1e-9


def _floor_shares(value: float) -> int:
    return int(math.floor(value + _FLOOR_EPS))


def portfolio_equity(cash: float, positions: Iterable[Position]) -> float:
    """Cash plus open positions valued at the live price (entry price when no live price is known)."""
    return float(cash) + sum(p.market_value for p in positions)


def calculate_position_size(equity: float, allocation_fraction: float, price: float, available_cash: float) -> int:
    """
    Shares to buy for a fixed-fraction allocation.

    Returns 0 when not even one share is affordable; callers treat 0 as "skip".
    """
    if price <= 0 or equity <= 0 or allocation_fraction <= 0 or available_cash <= 0:
        return 0

    amount = _floor_shares(equity * allocation_fraction / price)
    if amount * price > available_cash:
        amount = _floor_shares(available_cash / price)
        # The epsilon above must never let the cost exceed the cash.
        while amount > 0 and amount * price > available_cash:
            amount -= 1

    return max(0, amount)
