"""
Process-wide service wiring.

`build_services()` constructs the Ledger, Predictor and collaborators once at
startup; the scheduler, the headless runner and the API all receive the same
`TradingServices` instance. Nothing here lives at module level, so tests and
backtests can build isolated instances.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from aiquant.domain.models import Decision, MarketBatch, MarketObservation, Trade
from aiquant.ports.predictor import MarketDataPort
from aiquant.trader.cycle import CycleReport, run_trading_cycle
from aiquant.trading.features import FeatureNormaliser, load_normaliser, raw_signals
from aiquant.trading.feedback import FeedbackLoop
from aiquant.trading.ledger import Ledger
from aiquant.trading.policy import REASON_MANUAL_EXIT, DecisionPolicy, load_policy_config
from aiquant.trading.predictor import LogisticPredictor
from aiquant.trading.risk import RiskMonitor
from aiquant.utils.database import (
    SqliteExampleStore,
    force_commit,
    log_event,
    record_trade,
    update_performance,
)

logger = logging.getLogger(__name__)


class MarketDataUnavailable(RuntimeError):
    """Raised when a cycle needs live data but no market-data collaborator is configured."""


@dataclass
class TradingServices:
    config: dict[str, Any]
    ledger: Ledger
    predictor: LogisticPredictor
    policy: DecisionPolicy
    risk_monitor: RiskMonitor
    normaliser: FeatureNormaliser
    feedback: FeedbackLoop
    market_data: MarketDataPort | None = None
    persist: bool = True
    cycle_lock: threading.Lock = field(default_factory=threading.Lock)

    def _realized_pnl(self) -> float:
        return sum(float(t.profit) for t in self.ledger.status().trades if t.profit is not None)

    def snapshot_performance(self) -> None:
        if not self.persist:
            return
        status = self.ledger.status()
        unrealized = sum(p.unrealized_pl for p in status.positions)
        try:
            update_performance(status.equity, status.cash, unrealized, self._realized_pnl())
        except Exception as e:
            logger.error(f"Failed to record performance snapshot: {e}")

    def fetch_batch(self) -> MarketBatch:
        if self.market_data is None:
            raise MarketDataUnavailable("No market-data collaborator configured (set FINNHUB_API_KEY)")
        held = [p.symbol for p in self.ledger.status().positions]
        return self.market_data.scan(held=held)

    def run_cycle(
        self,
        observations: list[MarketObservation] | None = None,
        market_context: float | None = None,
    ) -> CycleReport:
        """
        Run one full cycle. With no observations the batch is fetched from the
        market-data collaborator. Cycles are serialised by `cycle_lock`.
        """
        with self.cycle_lock:
            if observations is None:
                batch = self.fetch_batch()
                observations, market_context = list(batch.observations), batch.market_context

            event_log = log_event if self.persist else None
            if event_log is not None:
                try:
                    event_log("INFO", f"Starting cycle ({len(observations)} observations)", symbol="Cycle", step="Start")
                except Exception as e:
                    logger.warning(f"Event stream write failed: {e}")

            report = run_trading_cycle(
                observations,
                ledger=self.ledger,
                policy=self.policy,
                predictor=self.predictor,
                risk_monitor=self.risk_monitor,
                normaliser=self.normaliser,
                market_context=market_context,
                event_log=event_log,
            )
            self.snapshot_performance()
            if self.persist:
                force_commit()

        self.feedback.maybe_retrain()
        logger.info(
            f"Cycle complete: {len(report.trades)} trade(s), {len(report.errors)} error(s), "
            f"equity ${report.status.equity:.2f}"
        )
        return report

    def decide(self, observations: list[MarketObservation], market_context: float | None = None) -> list[dict]:
        """Dry run: what the policy would do for each observation, without touching the ledger."""
        out: list[dict] = []
        for obs in observations:
            position = self.ledger.get_position(obs.symbol)
            trailing = False
            if position is not None:
                trailing = self.risk_monitor.check(position, obs.price).triggered
            confidence = None
            if not trailing:
                try:
                    confidence = self.predictor.score(self.normaliser.vector(raw_signals(obs, market_context)))
                except Exception as e:
                    logger.warning(f"[{obs.symbol}] predictor unavailable: {e}")
            decision: Decision = self.policy.decide(
                obs, position, confidence, market_context, trailing_stop=trailing
            )
            out.append({"symbol": obs.symbol, "confidence": confidence, **decision.to_dict()})
        return out

    def manual_buy(self, symbol: str, price: float, amount: int | None = None) -> Trade | None:
        """Open a position outside the model. It is never used as a training example."""
        with self.cycle_lock:
            trade = self.ledger.buy(symbol, price, confidence=None, amount=amount, manual=True)
        if trade is not None and self.persist:
            log_event("INFO", f"Manual BUY {trade.amount} @ ${trade.price:.2f}", symbol=symbol, step="Manual")
            force_commit()
        return trade

    def manual_sell(self, symbol: str, price: float | None = None) -> Trade | None:
        position = self.ledger.get_position(symbol)
        if position is None:
            return None
        px = float(price) if price is not None else position.last_price
        with self.cycle_lock:
            trade = self.ledger.sell(symbol, px, REASON_MANUAL_EXIT)
        if trade is not None and self.persist:
            log_event("INFO", f"Manual SELL {trade.amount} @ ${trade.price:.2f}", symbol=symbol, step="Manual")
            force_commit()
        self.feedback.maybe_retrain()
        return trade

    def shutdown(self) -> None:
        self.feedback.shutdown()


def _resolve_path(path: str) -> Path:
    p = Path(path)
    if p.is_absolute():
        return p
    return Path(__file__).resolve().parents[2] / p


def build_services(
    config: dict[str, Any],
    *,
    market_data: MarketDataPort | None = None,
    persist: bool = True,
    load_history: bool = True,
) -> TradingServices:
    """
    Build the process services from a loaded config.

    Raises ValueError on invalid policy or normalisation settings.
    `persist=False` keeps everything in memory (no trade/example/event writes).
    """
    normaliser = load_normaliser(config)
    policy = DecisionPolicy(load_policy_config(config))
    risk_monitor = RiskMonitor.from_config(config)
    predictor = LogisticPredictor.from_config(config, normaliser.size)

    training = config.get("training", {}) or {}
    feedback = FeedbackLoop(
        predictor,
        normaliser,
        store=SqliteExampleStore() if persist else None,
        retrain_every=int(training.get("retrain_every", 10)),
    )
    ledger = Ledger.from_config(
        config,
        example_sink=feedback.record,
        trade_sink=record_trade if persist else None,
        scheme=normaliser.scheme,
    )

    if load_history:
        foundation = training.get("foundation_path")
        if foundation:
            try:
                feedback.load_foundation(_resolve_path(str(foundation)))
            except (FileNotFoundError, ValueError) as e:
                logger.warning(f"Foundation examples not loaded: {e}")
        if persist:
            try:
                feedback.load_persisted()
            except Exception as e:
                logger.error(f"Failed to load persisted training examples: {e}")
        if feedback.examples:
            feedback.retrain()

    logger.info(
        f"Services ready: cash ${ledger.cash:.2f}, allocation {ledger.allocation_fraction:.0%}, "
        f"normalisation scheme {normaliser.scheme}, predictor trained on {predictor.trained_on}"
    )
    return TradingServices(
        config=config,
        ledger=ledger,
        predictor=predictor,
        policy=policy,
        risk_monitor=risk_monitor,
        normaliser=normaliser,
        feedback=feedback,
        market_data=market_data,
        persist=persist,
    )
