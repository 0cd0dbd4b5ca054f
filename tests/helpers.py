import requests


BASE_CONFIG = {
    "trading": {
        "starting_cash": 10000,
        "allocation_fraction": 0.20,
        "symbols": ["AAPL", "NVDA"],
        "min_abs_change_percent": 1.5,
        "market_context_symbol": "SPY",
    },
    "policy": {
        "entry_confidence_threshold": 0.6,
        "exit_confidence_threshold": 0.35,
        # Wider than the shipped 2% so a 150 -> 153 move holds instead of taking profit.
        "take_profit_fraction": 0.05,
        "stop_loss_fraction": 0.01,
        "sentiment_exit_threshold": -0.8,
        "momentum_exit_threshold": None,
        "require_positive_change": True,
        "market_meltdown_threshold": -2.0,
    },
    "risk": {"trail_stop_fraction": 0.02},
    "normalisation": {
        "change_percent": [-5.0, 5.0],
        "sentiment": [-1.0, 1.0],
        "market_change": [-3.0, 3.0],
    },
    "training": {"retrain_every": 10, "learning_rate": 0.5, "epochs": 300, "l2": 0.0, "seed": 7},
    "market_data": {"base_url": "https://finnhub.test/api/v1", "api_key": "test-key", "max_workers": 2},
    "scheduler": {"cycle_interval_seconds": 900, "market_hours_only": False},
}


class FixedPredictor:
    """Scores everything at a fixed confidence; records retrain calls."""

    def __init__(self, confidence=0.9):
        self.confidence = confidence
        self.retrained_with = []

    def score(self, features):
        return self.confidence

    def retrain(self, examples):
        self.retrained_with.append(list(examples))

    @property
    def trained_on(self):
        return len(self.retrained_with[-1]) if self.retrained_with else 0

    @property
    def is_trained(self):
        return bool(self.retrained_with)

    def to_dict(self):
        return {"confidence": self.confidence, "trained_on": self.trained_on}


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class FakeSession:
    """Routes Finnhub paths to canned payloads keyed by (path, symbol)."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, params=None, timeout=None):
        path = url.rsplit("/api/v1/", 1)[-1]
        self.calls.append((path, params, timeout))
        key = (path, (params or {}).get("symbol"))
        if key not in self.routes:
            return FakeResponse({}, status=404)
        payload = self.routes[key]
        if isinstance(payload, Exception):
            raise payload
        return FakeResponse(payload)
