"""
Feature normalisation shared by live scoring and training-example generation.

Every raw signal is mapped into [0, 1] with a fixed affine clamp. The same
`FeatureNormaliser` instance must be used everywhere a feature vector is built;
its `scheme` fingerprint is stored with each training example so vectors built
under different ranges are never mixed.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping

from aiquant.domain.models import MarketObservation

# Order is part of the contract: the predictor sees features in this order.
FEATURE_NAMES: tuple[str, ...] = ("change_percent", "sentiment", "market_change")


def clamp01(x: float) -> float:
    return min(1.0, max(0.0, float(x)))


@dataclass(frozen=True)
class FeatureNormaliser:
    ranges: tuple[tuple[str, float, float], ...]

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(name for name, _lo, _hi in self.ranges)

    @property
    def size(self) -> int:
        return len(self.ranges)

    @property
    def scheme(self) -> str:
        payload = json.dumps([[n, lo, hi] for n, lo, hi in self.ranges], separators=(",", ":"))
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]

    def normalise(self, name: str, value: float | None) -> float:
        for n, lo, hi in self.ranges:
            if n == name:
                raw = 0.0 if value is None else float(value)
                return clamp01((raw - lo) / (hi - lo))
        raise KeyError(f"Unknown feature: {name}")

    def vector(self, signals: Mapping[str, float | None]) -> tuple[float, ...]:
        """Normalise a raw signal mapping into the fixed-order feature vector."""
        return tuple(self.normalise(n, signals.get(n)) for n in self.names)

    def to_dict(self) -> dict[str, Any]:
        return {"scheme": self.scheme, "ranges": {n: [lo, hi] for n, lo, hi in self.ranges}}


def raw_signals(observation: MarketObservation, market_context: float | None) -> dict[str, float]:
    """Raw (un-normalised) inputs for one observation. Missing values are neutral (0)."""
    return {
        "change_percent": float(observation.change_percent),
        "sentiment": float(observation.sentiment) if observation.sentiment is not None else 0.0,
        "market_change": float(market_context) if market_context is not None else 0.0,
    }


def load_normaliser(config: dict) -> FeatureNormaliser:
    """
    Build the normaliser from the `normalisation` config section.

    Every signal in `FEATURE_NAMES` needs an explicit [min, max] pair. Raises
    ValueError on a missing, unknown or inconsistent range.
    """
    section = config.get("normalisation")
    if not isinstance(section, dict):
        raise ValueError("normalisation must be a mapping of signal -> [min, max]")

    unknown = sorted(set(section) - set(FEATURE_NAMES))
    if unknown:
        raise ValueError(f"Unsupported normalisation signal(s): {', '.join(unknown)}")
    missing = [name for name in FEATURE_NAMES if name not in section]
    if missing:
        raise ValueError(f"Missing normalisation range(s): {', '.join(missing)}")

    ranges: list[tuple[str, float, float]] = []
    for name in FEATURE_NAMES:
        bounds = section[name]
        if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
            raise ValueError(f"normalisation.{name} must be a [min, max] pair")
        try:
            lo, hi = float(bounds[0]), float(bounds[1])
        except (TypeError, ValueError) as exc:
            raise ValueError(f"normalisation.{name} bounds must be numbers") from exc
        if lo >= hi:
            raise ValueError(f"normalisation.{name} min must be below max ({lo} >= {hi})")
        ranges.append((name, lo, hi))
    return FeatureNormaliser(tuple(ranges))
