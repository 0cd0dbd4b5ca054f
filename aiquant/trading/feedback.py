from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any

from aiquant.domain.models import TrainingExample
from aiquant.ports.predictor import ExampleStore, Predictor
from aiquant.trading.features import FeatureNormaliser

logger = logging.getLogger(__name__)

# Legacy rows: "sentiment" was the broad-market move, "change" the stock move.
_LEGACY_KEYS = {"change": "change_percent", "sentiment": "market_change"}


class FeedbackLoop:
    """
    Collects labelled examples from closed trades and retrains the predictor.

    Retraining always uses the full accumulated set (foundation + persisted +
    new). Background retrains run on a single worker so they never overlap.
    """

    def __init__(
        self,
        predictor: Predictor,
        normaliser: FeatureNormaliser,
        *,
        store: ExampleStore | None = None,
        retrain_every: int = 10,
    ):
        self.predictor = predictor
        self.normaliser = normaliser
        self.store = store
        self.retrain_every = max(0, int(retrain_every))

        self._lock = threading.Lock()
        self._foundation: list[TrainingExample] = []
        self._examples: list[TrainingExample] = []
        self._since_retrain = 0
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="retrain")

    @property
    def examples(self) -> list[TrainingExample]:
        with self._lock:
            return [*self._foundation, *self._examples]

    def record(self, example: TrainingExample) -> None:
        """Accept one example emitted by the Ledger on SELL."""
        if example.scheme is None:
            example = TrainingExample(
                features=example.features,
                label=example.label,
                signals=example.signals,
                scheme=self.normaliser.scheme,
                symbol=example.symbol,
                profit=example.profit,
                time=example.time,
            )
        with self._lock:
            self._examples.append(example)
            self._since_retrain += 1
        logger.info(f"Recorded training example for {example.symbol} (label={example.label})")

        # Raised store errors reach the Ledger, which logs them; the in-memory copy is kept.
        if self.store is not None:
            self.store.save(example)

    def _conform(self, example: TrainingExample) -> TrainingExample | None:
        """Return the example under the live normalisation scheme, or None if it cannot be re-derived."""
        if example.scheme == self.normaliser.scheme and len(example.features) == self.normaliser.size:
            return example
        if example.signals:
            return TrainingExample(
                features=self.normaliser.vector(example.signals),
                label=example.label,
                signals=example.signals,
                scheme=self.normaliser.scheme,
                symbol=example.symbol,
                profit=example.profit,
                time=example.time,
            )
        return None

    def load_persisted(self) -> int:
        """Reload examples persisted by earlier runs. Returns how many were kept."""
        if self.store is None:
            return 0
        loaded = self.store.load()
        kept: list[TrainingExample] = []
        dropped = 0
        for ex in loaded:
            conformed = self._conform(ex)
            if conformed is None:
                dropped += 1
                continue
            kept.append(conformed)
        if dropped:
            logger.warning(
                f"Dropped {dropped} persisted example(s) built under another normalisation scheme (no raw signals)"
            )
        with self._lock:
            self._examples = kept + self._examples
        logger.info(f"Loaded {len(kept)} persisted training examples")
        return len(kept)

    def load_foundation(self, path: str | Path) -> int:
        """
        Load a static foundation set from JSON.

        Each row is either {"signals": {...raw...}, "label": 0|1} or the legacy
        {"input": {...raw...}, "output": {"buy": 0|1}} shape. Raw signals are
        normalised here with the live normaliser.
        """
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Foundation examples not found: {p}")
        with p.open("r", encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list):
            raise ValueError(f"Foundation file must hold a JSON array; got {type(rows).__name__}")

        out: list[TrainingExample] = []
        for i, row in enumerate(rows):
            out.append(self._foundation_row(row, i))
        with self._lock:
            self._foundation = out
        logger.info(f"Loaded {len(out)} foundation examples from {p}")
        return len(out)

    def _foundation_row(self, row: Any, index: int) -> TrainingExample:
        if not isinstance(row, dict):
            raise ValueError(f"Foundation row {index} must be an object")
        signals = row.get("signals", row.get("input"))
        label = row.get("label")
        if label is None and isinstance(row.get("output"), dict):
            label = row["output"].get("buy")
        if not isinstance(signals, dict) or label not in (0, 1):
            raise ValueError(f"Foundation row {index} needs raw signals and a 0/1 label")
        raw = {k: float(v) for k, v in signals.items() if v is not None}
        if "signals" not in row:
            raw = {_LEGACY_KEYS.get(k, k): v for k, v in raw.items()}
        return TrainingExample(
            features=self.normaliser.vector(raw),
            label=int(label),
            signals=raw,
            scheme=self.normaliser.scheme,
        )

    def retrain(self) -> int:
        """Retrain on every example collected so far. Returns the example count."""
        with self._lock:
            examples = [*self._foundation, *self._examples]
            self._since_retrain = 0
        self.predictor.retrain(examples)
        return len(examples)

    def retrain_async(self) -> Future:
        return self._executor.submit(self._retrain_logged)

    def _retrain_logged(self) -> int:
        try:
            return self.retrain()
        except Exception as e:
            logger.error(f"Background retrain failed: {type(e).__name__}: {e}")
            raise

    def maybe_retrain(self) -> Future | None:
        """Kick off a background retrain once `retrain_every` new examples have arrived."""
        if self.retrain_every <= 0:
            return None
        with self._lock:
            if self._since_retrain < self.retrain_every:
                return None
            # Consumed at submit time, not when the worker runs.
            self._since_retrain = 0
        return self.retrain_async()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
