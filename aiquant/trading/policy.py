from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from aiquant.domain.models import BUY, DO_NOTHING, HOLD, SELL, Decision, MarketObservation, Position

logger = logging.getLogger(__name__)

REASON_TRAILING_STOP = "trailing stop"
REASON_TAKE_PROFIT = "take profit"
REASON_STOP_LOSS = "stop loss"
REASON_SIGNAL_DECAY = "signal decay"
REASON_MANUAL_EXIT = "manual exit"

_REQUIRED_KEYS = (
    "entry_confidence_threshold",
    "exit_confidence_threshold",
    "take_profit_fraction",
    "stop_loss_fraction",
)


@dataclass(frozen=True)
class PolicyConfig:
    entry_confidence_threshold: float
    exit_confidence_threshold: float
    take_profit_fraction: float
    stop_loss_fraction: float
    sentiment_exit_threshold: float | None = None
    momentum_exit_threshold: float | None = None
    require_positive_change: bool = True
    market_meltdown_threshold: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_confidence_threshold": self.entry_confidence_threshold,
            "exit_confidence_threshold": self.exit_confidence_threshold,
            "take_profit_fraction": self.take_profit_fraction,
            "stop_loss_fraction": self.stop_loss_fraction,
            "sentiment_exit_threshold": self.sentiment_exit_threshold,
            "momentum_exit_threshold": self.momentum_exit_threshold,
            "require_positive_change": self.require_positive_change,
            "market_meltdown_threshold": self.market_meltdown_threshold,
        }


def _fraction(p: dict, key: str) -> float:
    v = p[key]
    if not isinstance(v, (int, float)) or isinstance(v, bool):
        raise ValueError(f"policy.{key} must be a number")
    v = float(v)
    if v < 0.0 or v > 1.0:
        raise ValueError(f"policy.{key} must be between 0 and 1")
    return v


def _optional_number(p: dict, key: str) -> float | None:
    v = p.get(key)
    if v is None:
        return None
    if not isinstance(v, (int, float)) or isinstance(v, bool):
        raise ValueError(f"policy.{key} must be a number or null")
    return float(v)


def load_policy_config(config: dict) -> PolicyConfig:
    """
    Read the `policy` section. Missing thresholds are fatal: the engine refuses
    to trade on guessed values.
    """
    p = config.get("policy")
    if not isinstance(p, dict):
        raise ValueError("Missing required config section: policy")

    missing = [k for k in _REQUIRED_KEYS if p.get(k) is None]
    if missing:
        raise ValueError(f"Missing required policy threshold(s): {', '.join('policy.' + k for k in missing)}")

    cfg = PolicyConfig(
        entry_confidence_threshold=_fraction(p, "entry_confidence_threshold"),
        exit_confidence_threshold=_fraction(p, "exit_confidence_threshold"),
        take_profit_fraction=_fraction(p, "take_profit_fraction"),
        stop_loss_fraction=_fraction(p, "stop_loss_fraction"),
        sentiment_exit_threshold=_optional_number(p, "sentiment_exit_threshold"),
        momentum_exit_threshold=_optional_number(p, "momentum_exit_threshold"),
        require_positive_change=bool(p.get("require_positive_change", True)),
        market_meltdown_threshold=_optional_number(p, "market_meltdown_threshold"),
    )
    if cfg.exit_confidence_threshold >= cfg.entry_confidence_threshold:
        raise ValueError("policy.exit_confidence_threshold must be below policy.entry_confidence_threshold")
    return cfg


class DecisionPolicy:
    """
    Maps (observation, position, confidence) to BUY / SELL / HOLD / DO_NOTHING.

    Pure: no ledger access and no side effects, so policies can be swapped or
    replayed in a backtest without touching the Ledger.
    """

    def __init__(self, config: PolicyConfig):
        self.config = config

    def decide(
        self,
        observation: MarketObservation,
        position: Position | None,
        confidence: float | None,
        market_context: float | None = None,
        *,
        trailing_stop: bool = False,
    ) -> Decision:
        if position is not None:
            return self._decide_exit(observation, position, confidence, trailing_stop)
        return self._decide_entry(observation, confidence, market_context)

    def _decide_exit(
        self,
        observation: MarketObservation,
        position: Position,
        confidence: float | None,
        trailing_stop: bool,
    ) -> Decision:
        cfg = self.config
        if trailing_stop:
            return Decision(SELL, REASON_TRAILING_STOP)

        gain = (observation.price - position.entry_price) / position.entry_price
        if gain >= cfg.take_profit_fraction:
            return Decision(SELL, REASON_TAKE_PROFIT)
        if gain <= -cfg.stop_loss_fraction:
            return Decision(SELL, REASON_STOP_LOSS)

        decay = self._signal_decay(observation, confidence)
        if decay:
            logger.debug(f"{observation.symbol}: signal decay ({decay})")
            return Decision(SELL, REASON_SIGNAL_DECAY)

        return Decision(HOLD, f"holding at {gain:+.2%}")

    def _signal_decay(self, observation: MarketObservation, confidence: float | None) -> str | None:
        cfg = self.config
        if confidence is not None and confidence < cfg.exit_confidence_threshold:
            return f"confidence {confidence:.2f} < {cfg.exit_confidence_threshold:.2f}"
        if (
            cfg.sentiment_exit_threshold is not None
            and observation.sentiment is not None
            and observation.sentiment < cfg.sentiment_exit_threshold
        ):
            return f"sentiment {observation.sentiment:.2f} < {cfg.sentiment_exit_threshold:.2f}"
        if cfg.momentum_exit_threshold is not None and observation.change_percent < cfg.momentum_exit_threshold:
            return f"momentum {observation.change_percent:.2f}% < {cfg.momentum_exit_threshold:.2f}%"
        return None

    def _decide_entry(
        self,
        observation: MarketObservation,
        confidence: float | None,
        market_context: float | None,
    ) -> Decision:
        cfg = self.config
        if confidence is None:
            return Decision(DO_NOTHING, "no confidence available")
        if confidence <= cfg.entry_confidence_threshold:
            return Decision(
                DO_NOTHING,
                f"confidence {confidence:.2f} <= {cfg.entry_confidence_threshold:.2f}",
            )
        if cfg.require_positive_change and observation.change_percent <= 0:
            return Decision(DO_NOTHING, f"price not rising ({observation.change_percent:+.2f}%)")
        if (
            cfg.market_meltdown_threshold is not None
            and market_context is not None
            and market_context <= cfg.market_meltdown_threshold
        ):
            return Decision(DO_NOTHING, f"market meltdown ({market_context:+.2f}%)")
        return Decision(BUY, f"confidence {confidence:.2f}")
