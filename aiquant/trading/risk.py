from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from aiquant.domain.models import Position

logger = logging.getLogger(__name__)

DEFAULT_TRAIL_STOP_FRACTION = 0.02

# Lets an exact 2.0% drop trigger a 2% trail despite float rounding.
_TRIGGER_EPS = 1e-12


@dataclass(frozen=True)
class RiskSignal:
    symbol: str
    triggered: bool
    high_price: float
    price: float
    drawdown: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "triggered": self.triggered,
            "high_price": self.high_price,
            "price": self.price,
            "drawdown": self.drawdown,
        }


class RiskMonitor:
    """
    Trailing-stop check for open positions.

    Read-only: the Ledger ratchets `high_price` in `update_price`; this class only
    measures the drop from that peak and reports whether the trail was hit.
    """

    def __init__(self, trail_stop_fraction: float = DEFAULT_TRAIL_STOP_FRACTION):
        if not 0 < float(trail_stop_fraction) < 1:
            raise ValueError("risk.trail_stop_fraction must be between 0 and 1 (exclusive)")
        self.trail_stop_fraction = float(trail_stop_fraction)

    @classmethod
    def from_config(cls, config: dict) -> RiskMonitor:
        risk_cfg = config.get("risk", {}) or {}
        return cls(float(risk_cfg.get("trail_stop_fraction", DEFAULT_TRAIL_STOP_FRACTION)))

    def check(self, position: Position, price: float) -> RiskSignal:
        high = max(float(position.high_price), float(price))
        drawdown = (high - float(price)) / high if high > 0 else 0.0
        triggered = drawdown + _TRIGGER_EPS >= self.trail_stop_fraction
        if triggered:
            logger.info(
                f"Trailing stop hit for {position.symbol}: {price} is {drawdown:.2%} below peak {high}"
            )
        return RiskSignal(
            symbol=position.symbol,
            triggered=triggered,
            high_price=high,
            price=float(price),
            drawdown=drawdown,
        )
