from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping

BUY = "BUY"
SELL = "SELL"
HOLD = "HOLD"
DO_NOTHING = "DO_NOTHING"

ACTIONS = frozenset({BUY, SELL, HOLD, DO_NOTHING})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _optional_float(v: Any) -> float | None:
    if v is None:
        return None
    return float(v)


@dataclass(frozen=True)
class MarketObservation:
    symbol: str
    price: float
    change_percent: float
    sentiment: float | None = None
    rsi: float | None = None
    time: datetime = field(default_factory=utc_now)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> MarketObservation:
        """Build an observation from API/JSON payloads (accepts camelCase wire keys)."""
        symbol = str(d.get("symbol") or "").strip().upper()
        if not symbol:
            raise ValueError("observation is missing a symbol")
        if d.get("price") is None:
            raise ValueError(f"observation for {symbol} is missing a price")
        price = float(d["price"])
        if price <= 0:
            raise ValueError(f"observation for {symbol} has a non-positive price ({price})")
        change = d.get("change_percent", d.get("changePercent", 0.0))
        ts = d.get("time")
        if isinstance(ts, str) and ts.strip():
            ts_str = ts.strip()
            if ts_str.endswith("Z"):
                ts_str = ts_str[:-1] + "+00:00"
            when = datetime.fromisoformat(ts_str)
        elif isinstance(ts, datetime):
            when = ts
        else:
            when = utc_now()
        return cls(
            symbol=symbol,
            price=price,
            change_percent=float(change or 0.0),
            sentiment=_optional_float(d.get("sentiment")),
            rsi=_optional_float(d.get("rsi")),
            time=when,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": float(self.price),
            "change_percent": float(self.change_percent),
            "sentiment": self.sentiment,
            "rsi": self.rsi,
            "time": self.time.isoformat(),
        }


@dataclass
class Position:
    """
    An open long position.

    Owned by the Ledger. Anything handed out to callers is a copy (see `copy()`),
    so mutating a returned Position never touches ledger state.
    """

    symbol: str
    amount: int
    entry_price: float
    high_price: float
    entry_features: tuple[float, ...] = ()
    entry_signals: Mapping[str, float] = field(default_factory=dict)
    confidence: float | None = None
    current_price: float | None = None
    entry_time: datetime = field(default_factory=utc_now)
    manual: bool = False

    @property
    def last_price(self) -> float:
        return float(self.current_price if self.current_price is not None else self.entry_price)

    @property
    def market_value(self) -> float:
        return self.last_price * self.amount

    @property
    def unrealized_pl(self) -> float:
        return (self.last_price - self.entry_price) * self.amount

    @property
    def pl_percent(self) -> float:
        return (self.last_price - self.entry_price) / self.entry_price * 100

    def copy(self) -> Position:
        return replace(self, entry_signals=dict(self.entry_signals))

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "amount": int(self.amount),
            "entry_price": float(self.entry_price),
            "high_price": float(self.high_price),
            "current_price": self.current_price,
            "market_value": self.market_value,
            "unrealized_pl": self.unrealized_pl,
            "pl_percent": self.pl_percent,
            "confidence": self.confidence,
            "entry_features": list(self.entry_features),
            "entry_time": self.entry_time.isoformat(),
            "manual": self.manual,
        }


@dataclass(frozen=True)
class Trade:
    action: str
    symbol: str
    price: float
    amount: int
    confidence: float | None = None
    profit: float | None = None
    reason: str | None = None
    time: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "symbol": self.symbol,
            "price": float(self.price),
            "amount": int(self.amount),
            "confidence": self.confidence,
            "profit": self.profit,
            "reason": self.reason,
            "time": self.time.isoformat(),
        }


@dataclass(frozen=True)
class TrainingExample:
    features: tuple[float, ...]
    label: int
    signals: Mapping[str, float] | None = None
    scheme: str | None = None
    symbol: str | None = None
    profit: float | None = None
    time: datetime = field(default_factory=utc_now)

    @classmethod
    def from_trade(cls, position: Position, profit: float, scheme: str | None = None) -> TrainingExample:
        return cls(
            features=tuple(position.entry_features),
            label=1 if profit > 0 else 0,
            signals=dict(position.entry_signals),
            scheme=scheme,
            symbol=position.symbol,
            profit=float(profit),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "features": list(self.features),
            "label": int(self.label),
            "signals": dict(self.signals) if self.signals is not None else None,
            "scheme": self.scheme,
            "symbol": self.symbol,
            "profit": self.profit,
            "time": self.time.isoformat(),
        }


@dataclass(frozen=True)
class Decision:
    action: str
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, "reason": self.reason}


@dataclass(frozen=True)
class LedgerStatus:
    cash: float
    equity: float
    positions: tuple[Position, ...]
    trades: tuple[Trade, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "cash": float(self.cash),
            "equity": float(self.equity),
            "positions": {p.symbol: p.to_dict() for p in self.positions},
            "trades": [t.to_dict() for t in self.trades],
        }


@dataclass(frozen=True)
class MarketBatch:
    """One cycle's input: the observations plus the broad-market change percent, if known."""

    observations: tuple[MarketObservation, ...] = ()
    market_context: float | None = None
