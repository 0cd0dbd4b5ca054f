from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from aiquant.domain.models import SELL, MarketObservation, Trade
from aiquant.ports.predictor import Predictor
from aiquant.trader.cycle import run_trading_cycle
from aiquant.trader.services import build_services
from aiquant.trading.ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BacktestResult:
    bars: int
    starting_cash: float
    cash: float
    final_equity: float
    trades: tuple[Trade, ...]
    skipped: int = 0

    @property
    def profit(self) -> float:
        return self.final_equity - self.starting_cash

    @property
    def closed_trades(self) -> list[Trade]:
        return [t for t in self.trades if t.action == SELL]

    @property
    def win_rate(self) -> float | None:
        closed = self.closed_trades
        if not closed:
            return None
        return sum(1 for t in closed if (t.profit or 0) > 0) / len(closed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bars": self.bars,
            "skipped": self.skipped,
            "starting_cash": self.starting_cash,
            "cash": self.cash,
            "final_equity": self.final_equity,
            "profit": self.profit,
            "win_rate": self.win_rate,
            "trades": [t.to_dict() for t in self.trades],
        }


def load_bars(path: str | Path) -> list[dict]:
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        rows = json.load(f)
    if not isinstance(rows, list):
        raise ValueError(f"Backtest history must be a JSON array of bars: {p}")
    return rows


def run_backtest(
    bars: Iterable[Mapping[str, Any]],
    config: dict,
    predictor: Predictor | None = None,
) -> BacktestResult:
    """
    Replay historical bars, one at a time, through a fresh in-memory Ledger.

    Nothing is persisted. Without an explicit predictor, one is trained on the
    configured foundation set. Malformed bars are skipped and counted.
    """
    services = build_services(config, persist=False, load_history=predictor is None)
    model = predictor if predictor is not None else services.predictor
    ledger = Ledger.from_config(config, scheme=services.normaliser.scheme)

    count = 0
    skipped = 0
    for i, bar in enumerate(bars):
        try:
            obs = MarketObservation.from_dict(bar)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping bar {i}: {e}")
            skipped += 1
            continue
        context = bar.get("market_context", bar.get("marketContext"))
        run_trading_cycle(
            [obs],
            ledger=ledger,
            policy=services.policy,
            predictor=model,
            risk_monitor=services.risk_monitor,
            normaliser=services.normaliser,
            market_context=float(context) if context is not None else None,
            event_log=None,
        )
        count += 1

    services.shutdown()
    status = ledger.status()
    result = BacktestResult(
        bars=count,
        starting_cash=ledger.starting_cash,
        cash=status.cash,
        final_equity=status.equity,
        trades=status.trades,
        skipped=skipped,
    )
    logger.info(
        f"Backtest complete: {count} bars, {len(result.trades)} trades, "
        f"final equity ${result.final_equity:.2f} (P&L ${result.profit:.2f})"
    )
    return result
