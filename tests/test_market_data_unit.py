import pandas as pd
import pytest
import requests

from aiquant.data.market_data import (
    FinnhubClient,
    MarketScanner,
    compute_rsi,
    load_market_data_config,
)

from tests.helpers import FakeSession


def _scanner(config, routes):
    session = FakeSession(routes)
    return MarketScanner.from_config(config, session=session), session


def test_scan_keeps_movers_with_sentiment_and_context(config):
    routes = {
        ("quote", "AAPL"): {"c": 153.0, "pc": 150.0},
        ("quote", "NVDA"): {"c": 401.0, "pc": 400.0},  # 0.25%: filtered out
        ("quote", "SPY"): {"c": 495.0, "pc": 500.0},
        ("news-sentiment", "AAPL"): {"sentiment": {"bullishPercent": 0.7, "bearishPercent": 0.2}},
    }
    scanner, session = _scanner(config, routes)
    batch = scanner.scan()

    (obs,) = batch.observations
    assert obs.symbol == "AAPL"
    assert obs.price == 153.0
    assert obs.change_percent == pytest.approx(2.0)
    assert obs.sentiment == 0.5
    assert batch.market_context == pytest.approx(-1.0)
    assert all(call[1]["token"] == "test-key" for call in session.calls)
    assert all(call[2] == 10.0 for call in session.calls)


def test_symbol_failure_is_skipped(config):
    routes = {
        ("quote", "AAPL"): requests.ConnectionError("reset by peer"),
        ("quote", "NVDA"): {"c": 380.0, "pc": 400.0},
        ("quote", "SPY"): {"c": 500.0, "pc": 500.0},
    }
    scanner, _ = _scanner(config, routes)
    batch = scanner.scan()

    (obs,) = batch.observations
    assert obs.symbol == "NVDA"
    assert obs.change_percent == pytest.approx(-5.0)
    assert obs.sentiment is None  # news-sentiment 404 degrades to missing
    assert batch.market_context == 0.0


def test_missing_quote_and_context(config):
    routes = {("quote", "AAPL"): {"c": 0, "pc": 0}, ("quote", "NVDA"): {"c": 0, "pc": 0}}
    scanner, _ = _scanner(config, routes)
    batch = scanner.scan()
    assert batch.observations == ()
    assert batch.market_context is None


def test_rsi_is_fetched_when_enabled(config):
    config["market_data"]["fetch_rsi"] = True
    closes = [100 + i for i in range(20)]
    routes = {
        ("quote", "AAPL"): {"c": 120.0, "pc": 117.0},
        ("quote", "NVDA"): {"c": 0, "pc": 0},
        ("stock/candle", "AAPL"): {"s": "ok", "c": closes, "t": list(range(20))},
    }
    scanner, _ = _scanner(config, routes)
    (obs,) = scanner.scan().observations
    assert obs.rsi == 100.0


def test_from_config_requires_api_key(config):
    config["market_data"]["api_key"] = ""
    with pytest.raises(ValueError, match=r"FINNHUB_API_KEY"):
        MarketScanner.from_config(config)


def test_load_market_data_config_defaults():
    cfg = load_market_data_config({})
    assert cfg.base_url == "https://finnhub.io/api/v1"
    assert cfg.min_abs_change_percent == 1.5
    assert cfg.market_context_symbol == "SPY"
    assert "AAPL" in cfg.symbols


def test_client_sentiment_is_clamped():
    session = FakeSession({("news-sentiment", "X"): {"sentiment": {"bullishPercent": 1.5, "bearishPercent": 0.0}}})
    client = FinnhubClient("k", "https://finnhub.test/api/v1", session=session)
    assert client.get_sentiment("X") == 1.0


def test_compute_rsi():
    assert compute_rsi(pd.Series([1.0, 2.0, 3.0]), window=14) is None
    falling = pd.Series([float(50 - i) for i in range(30)])
    assert compute_rsi(falling) == pytest.approx(0.0)
    mixed = pd.Series([44, 44.3, 44.1, 44.2, 43.6, 44.3, 44.8, 45.1, 45.4, 45.8, 46.1, 45.9, 46.0, 46.2, 46.3, 46.1])
    assert 0 < compute_rsi(mixed) < 100


def test_held_symbols_skip_mover_filter_and_join_the_universe(config):
    routes = {
        ("quote", "AAPL"): {"c": 148.0, "pc": 147.0},  # 0.68%: quiet but held
        ("quote", "NVDA"): {"c": 401.0, "pc": 400.0},  # 0.25%: quiet, not held
        ("quote", "PLTR"): {"c": 20.1, "pc": 20.0},  # held, outside trading.symbols
        ("quote", "SPY"): {"c": 500.0, "pc": 500.0},
    }
    scanner, session = _scanner(config, routes)
    batch = scanner.scan(held=["AAPL", "PLTR"])

    assert sorted(o.symbol for o in batch.observations) == ["AAPL", "PLTR"]
    aapl = next(o for o in batch.observations if o.symbol == "AAPL")
    assert aapl.price == 148.0
    quoted = {params["symbol"] for path, params, _ in session.calls if path == "quote"}
    assert quoted == {"AAPL", "NVDA", "PLTR", "SPY"}
