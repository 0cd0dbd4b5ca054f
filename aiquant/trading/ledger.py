"""
Virtual cash-and-positions ledger (the simulated broker).

The Ledger is the only owner of Position state. Expected business outcomes
(already holding, zero size, no position to sell) are no-ops that return None
and write a log line; they are never raised. Side-channel failures (trade or
training-example persistence) are logged and never undo a committed trade.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Mapping, Sequence

from aiquant.domain.models import BUY, SELL, LedgerStatus, Position, Trade, TrainingExample
from aiquant.trading.sizing import calculate_position_size, portfolio_equity

logger = logging.getLogger(__name__)

DEFAULT_STARTING_CASH = 10_000.0
DEFAULT_ALLOCATION_FRACTION = 0.20


class Ledger:
    def __init__(
        self,
        starting_cash: float = DEFAULT_STARTING_CASH,
        allocation_fraction: float = DEFAULT_ALLOCATION_FRACTION,
        *,
        example_sink: Callable[[TrainingExample], None] | None = None,
        trade_sink: Callable[[Trade], None] | None = None,
        scheme: str | None = None,
    ):
        if starting_cash < 0:
            raise ValueError("starting_cash must be >= 0")
        if not 0 < allocation_fraction <= 1:
            raise ValueError("allocation_fraction must be in (0, 1]")

        self._lock = threading.RLock()
        self._cash = float(starting_cash)
        self._positions: dict[str, Position] = {}
        self._trades: list[Trade] = []

        self.starting_cash = float(starting_cash)
        self.allocation_fraction = float(allocation_fraction)
        self.example_sink = example_sink
        self.trade_sink = trade_sink
        self.scheme = scheme

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> Ledger:
        trading = config.get("trading", {}) or {}
        return cls(
            float(trading.get("starting_cash", DEFAULT_STARTING_CASH)),
            float(trading.get("allocation_fraction", DEFAULT_ALLOCATION_FRACTION)),
            **kwargs,
        )

    # ----- Read-only views -----

    @property
    def cash(self) -> float:
        with self._lock:
            return self._cash

    def has_position(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._positions

    def get_position(self, symbol: str) -> Position | None:
        """A copy of the open position for `symbol`, or None."""
        with self._lock:
            pos = self._positions.get(symbol)
            return pos.copy() if pos is not None else None

    def equity(self) -> float:
        with self._lock:
            return portfolio_equity(self._cash, self._positions.values())

    def status(self) -> LedgerStatus:
        with self._lock:
            return LedgerStatus(
                cash=self._cash,
                equity=portfolio_equity(self._cash, self._positions.values()),
                positions=tuple(p.copy() for p in self._positions.values()),
                trades=tuple(self._trades),
            )

    # ----- Mutations -----

    def update_price(self, symbol: str, price: float) -> None:
        """Refresh the live price of an open position and ratchet its peak. Never fails."""
        try:
            px = float(price)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric price for {symbol}: {price!r}")
            return
        if px <= 0:
            logger.warning(f"Ignoring non-positive price for {symbol}: {px}")
            return

        with self._lock:
            pos = self._positions.get(symbol)
            if pos is None:
                return
            pos.current_price = px
            if px > pos.high_price:
                pos.high_price = px

    def buy(
        self,
        symbol: str,
        price: float,
        *,
        features: Sequence[float] = (),
        signals: Mapping[str, float] | None = None,
        confidence: float | None = None,
        amount: int | None = None,
        manual: bool = False,
    ) -> Trade | None:
        """
        Open a position sized by the fixed-fraction rule (or `amount`, clamped to cash).

        Manual positions carry no model inputs, so closing them emits no training example.

        Returns the BUY trade, or None when nothing was bought.
        """
        price = float(price)
        if price <= 0:
            logger.warning(f"Skip BUY {symbol}: non-positive price {price}")
            return None

        with self._lock:
            if symbol in self._positions:
                logger.debug(f"Skip BUY {symbol}: position already open")
                return None

            if amount is None:
                equity = portfolio_equity(self._cash, self._positions.values())
                qty = calculate_position_size(equity, self.allocation_fraction, price, self._cash)
            else:
                qty = min(int(amount), calculate_position_size(self._cash, 1.0, price, self._cash))

            if qty <= 0:
                logger.info(f"Skip BUY {symbol}: insufficient liquidity for a position at ${price:.2f}")
                return None

            cost = qty * price
            self._cash -= cost
            self._positions[symbol] = Position(
                symbol=symbol,
                amount=qty,
                entry_price=price,
                high_price=price,
                entry_features=tuple(float(v) for v in features),
                entry_signals=dict(signals or {}),
                confidence=confidence,
                current_price=price,
                manual=manual,
            )
            trade = Trade(action=BUY, symbol=symbol, price=price, amount=qty, confidence=confidence)
            self._trades.append(trade)
            cash_after = self._cash

        logger.info(f"BUY {qty} {symbol} at ${price:.2f} (cost ${cost:.2f}, cash ${cash_after:.2f})")
        self._publish_trade(trade)
        return trade

    def sell(self, symbol: str, price: float, reason: str = "exit") -> Trade | None:
        """
        Close the open position for `symbol` at `price`.

        Returns the SELL trade, or None when there was nothing to sell.
        """
        price = float(price)
        with self._lock:
            pos = self._positions.get(symbol)
            if pos is None:
                # Callers only sell what they hold, so this points at a malformed batch.
                logger.warning(f"SELL {symbol} ignored: no open position ({reason})")
                return None

            proceeds = pos.amount * price
            profit = (price - pos.entry_price) * pos.amount
            self._cash += proceeds
            del self._positions[symbol]
            trade = Trade(
                action=SELL,
                symbol=symbol,
                price=price,
                amount=pos.amount,
                confidence=pos.confidence,
                profit=profit,
                reason=reason,
            )
            self._trades.append(trade)

        logger.info(f"SELL {pos.amount} {symbol} at ${price:.2f} ({reason}) | Net: ${profit:.2f}")
        self._publish_trade(trade)
        if pos.manual:
            logger.debug(f"No training example for manual position {symbol}")
        else:
            self._emit_example(TrainingExample.from_trade(pos, profit, scheme=self.scheme))
        return trade

    # ----- Side channels -----

    def _publish_trade(self, trade: Trade) -> None:
        if self.trade_sink is None:
            return
        try:
            self.trade_sink(trade)
        except Exception as e:
            logger.error(f"Trade persistence failed for {trade.action} {trade.symbol}: {type(e).__name__}: {e}")

    def _emit_example(self, example: TrainingExample) -> None:
        if self.example_sink is None:
            return
        try:
            self.example_sink(example)
        except Exception as e:
            logger.error(f"Training example emission failed for {example.symbol}: {type(e).__name__}: {e}")
