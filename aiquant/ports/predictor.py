from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from aiquant.domain.models import MarketBatch, Trade, TrainingExample


class Predictor(Protocol):
    def score(self, features: Sequence[float]) -> float: ...

    def retrain(self, examples: Sequence[TrainingExample]) -> None: ...


class ExampleSink(Protocol):
    def __call__(self, example: TrainingExample) -> None: ...


class TradeSink(Protocol):
    def __call__(self, trade: Trade) -> None: ...


class ExampleStore(Protocol):
    def save(self, example: TrainingExample) -> None: ...

    def load(self) -> list[TrainingExample]: ...


class MarketDataPort(Protocol):
    def scan(self, held: Iterable[str] = ()) -> MarketBatch: ...
