from __future__ import annotations

import logging
import threading
from typing import Any, Sequence

import numpy as np

from aiquant.domain.models import TrainingExample

logger = logging.getLogger(__name__)


def _sigmoid(z: np.ndarray | float) -> np.ndarray | float:
    return 1.0 / (1.0 + np.exp(-np.clip(z, -60.0, 60.0)))


class LogisticPredictor:
    """
    Logistic-regression scorer trained with full-batch gradient descent.

    `retrain` is replace-style: it fits a fresh model on the whole example set
    from a seeded initialisation, so the same examples always give the same
    weights. New weights are built off to the side and swapped in under a lock,
    so `score` never sees a half-trained model.
    """

    def __init__(
        self,
        n_features: int,
        *,
        learning_rate: float = 0.5,
        epochs: int = 500,
        l2: float = 0.0,
        seed: int = 42,
    ):
        if n_features <= 0:
            raise ValueError("n_features must be > 0")
        self.n_features = int(n_features)
        self.learning_rate = float(learning_rate)
        self.epochs = int(epochs)
        self.l2 = float(l2)
        self.seed = int(seed)

        self._lock = threading.Lock()
        # An untrained model scores every input at 0.5.
        self._weights = np.zeros(self.n_features)
        self._bias = 0.0
        self._trained_on = 0

    @classmethod
    def from_config(cls, config: dict, n_features: int) -> LogisticPredictor:
        t = config.get("training", {}) or {}
        return cls(
            n_features,
            learning_rate=float(t.get("learning_rate", 0.5)),
            epochs=int(t.get("epochs", 500)),
            l2=float(t.get("l2", 0.0)),
            seed=int(t.get("seed", 42)),
        )

    @property
    def is_trained(self) -> bool:
        return self._trained_on > 0

    @property
    def trained_on(self) -> int:
        return self._trained_on

    def _check_features(self, features: Sequence[float]) -> np.ndarray:
        x = np.asarray(features, dtype=float)
        if x.shape != (self.n_features,):
            raise ValueError(f"Expected {self.n_features} features, got {x.shape[0] if x.ndim == 1 else x.shape}")
        if not np.all(np.isfinite(x)):
            raise ValueError("Features must be finite numbers")
        return x

    def score(self, features: Sequence[float]) -> float:
        x = self._check_features(features)
        with self._lock:
            w, b = self._weights, self._bias
        return float(_sigmoid(float(x @ w) + b))

    def retrain(self, examples: Sequence[TrainingExample]) -> None:
        if not examples:
            logger.info("Retrain skipped: no training examples")
            return

        X = np.vstack([self._check_features(e.features) for e in examples])
        y = np.asarray([1.0 if int(e.label) == 1 else 0.0 for e in examples])
        n = float(len(y))

        rng = np.random.default_rng(self.seed)
        w = rng.normal(0.0, 0.01, size=self.n_features)
        b = 0.0
        for _ in range(self.epochs):
            p = _sigmoid(X @ w + b)
            err = p - y
            grad_w = (X.T @ err) / n + self.l2 * w
            grad_b = float(err.sum() / n)
            w = w - self.learning_rate * grad_w
            b = b - self.learning_rate * grad_b

        with self._lock:
            self._weights = w
            self._bias = float(b)
            self._trained_on = len(examples)

        positives = int(y.sum())
        logger.info(f"Predictor retrained on {len(examples)} examples ({positives} profitable)")

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "weights": [float(v) for v in self._weights],
                "bias": float(self._bias),
                "trained_on": int(self._trained_on),
                "seed": self.seed,
                "epochs": self.epochs,
                "learning_rate": self.learning_rate,
            }
