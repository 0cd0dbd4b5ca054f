from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from aiquant.domain.models import BUY, SELL, Decision, LedgerStatus, MarketObservation, Trade
from aiquant.ports.predictor import Predictor
from aiquant.trading.features import FeatureNormaliser, raw_signals
from aiquant.trading.ledger import Ledger
from aiquant.trading.policy import DecisionPolicy
from aiquant.trading.risk import RiskMonitor
from aiquant.utils.database import log_event

logger = logging.getLogger(__name__)

EventLog = Callable[..., None]

_LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


@dataclass(frozen=True)
class SymbolOutcome:
    symbol: str
    action: str | None = None
    reason: str = ""
    confidence: float | None = None
    trade: Trade | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action,
            "reason": self.reason,
            "confidence": self.confidence,
            "trade": self.trade.to_dict() if self.trade is not None else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class CycleReport:
    outcomes: tuple[SymbolOutcome, ...]
    status: LedgerStatus
    market_context: float | None = None

    @property
    def trades(self) -> list[Trade]:
        return [o.trade for o in self.outcomes if o.trade is not None]

    @property
    def errors(self) -> list[SymbolOutcome]:
        return [o for o in self.outcomes if o.error is not None]

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_context": self.market_context,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "status": self.status.to_dict(),
        }


def _emit(event_log: EventLog | None, level: str, message: str, symbol: str, step: str) -> None:
    logger.log(_LEVELS.get(level, logging.INFO), f"[{symbol}] {message}")
    if event_log is None:
        return
    try:
        event_log(level, message, symbol=symbol, step=step)
    except Exception as e:
        logger.warning(f"Event stream write failed: {e}")


def _score(predictor: Predictor, features: tuple[float, ...], symbol: str, event_log: EventLog | None) -> float | None:
    try:
        return float(predictor.score(features))
    except Exception as e:
        _emit(event_log, "WARN", f"Predictor unavailable: {type(e).__name__}: {e}", symbol, "Score")
        return None


def _process_symbol(
    obs: MarketObservation,
    *,
    ledger: Ledger,
    policy: DecisionPolicy,
    predictor: Predictor,
    risk_monitor: RiskMonitor,
    normaliser: FeatureNormaliser,
    market_context: float | None,
    event_log: EventLog | None,
) -> SymbolOutcome:
    symbol = obs.symbol

    if ledger.has_position(symbol):
        ledger.update_price(symbol, obs.price)
        position = ledger.get_position(symbol)
        if position is not None:
            signal = risk_monitor.check(position, obs.price)
            if signal.triggered:
                decision = policy.decide(obs, position, None, market_context, trailing_stop=True)
                trade = ledger.sell(symbol, obs.price, decision.reason)
                if trade is not None:
                    _emit(
                        event_log,
                        "INFO",
                        f"Trailing stop: {signal.drawdown:.2%} below peak ${signal.high_price:.2f}, "
                        f"sold {trade.amount} @ ${trade.price:.2f} (P&L ${trade.profit:.2f})",
                        symbol,
                        "Risk",
                    )
                return SymbolOutcome(symbol, decision.action, decision.reason, None, trade)

    signals = raw_signals(obs, market_context)
    features = normaliser.vector(signals)
    confidence = _score(predictor, features, symbol, event_log)

    position = ledger.get_position(symbol)
    decision: Decision = policy.decide(obs, position, confidence, market_context)

    trade = None
    if decision.action == BUY:
        trade = ledger.buy(symbol, obs.price, features=features, signals=signals, confidence=confidence)
        if trade is not None:
            _emit(
                event_log,
                "INFO",
                f"BUY {trade.amount} @ ${trade.price:.2f} ({decision.reason})",
                symbol,
                "Trade",
            )
    elif decision.action == SELL:
        trade = ledger.sell(symbol, obs.price, decision.reason)
        if trade is not None:
            _emit(
                event_log,
                "INFO",
                f"SELL {trade.amount} @ ${trade.price:.2f} ({decision.reason}), P&L ${trade.profit:.2f}",
                symbol,
                "Trade",
            )
    else:
        logger.debug(f"[{symbol}] {decision.action}: {decision.reason}")

    return SymbolOutcome(symbol, decision.action, decision.reason, confidence, trade)


def run_trading_cycle(
    observations: Iterable[MarketObservation],
    *,
    ledger: Ledger,
    policy: DecisionPolicy,
    predictor: Predictor,
    risk_monitor: RiskMonitor,
    normaliser: FeatureNormaliser,
    market_context: float | None = None,
    event_log: EventLog | None = log_event,
) -> CycleReport:
    """
    Run one cycle over a batch of observations.

    Per symbol: refresh the held price, check the trailing stop (a trigger sells
    and skips scoring), otherwise score, decide and execute. A failure on one
    symbol is logged and recorded on its outcome; the rest of the batch still runs.
    """
    outcomes: list[SymbolOutcome] = []
    for obs in observations:
        try:
            outcome = _process_symbol(
                obs,
                ledger=ledger,
                policy=policy,
                predictor=predictor,
                risk_monitor=risk_monitor,
                normaliser=normaliser,
                market_context=market_context,
                event_log=event_log,
            )
        except Exception as e:
            msg = f"Unexpected error: {type(e).__name__}: {e}"
            logger.exception(f"[{obs.symbol}] cycle step failed")
            _emit(event_log, "ERROR", msg, obs.symbol, "Error")
            outcome = SymbolOutcome(obs.symbol, error=msg)
        outcomes.append(outcome)

    return CycleReport(outcomes=tuple(outcomes), status=ledger.status(), market_context=market_context)
