import pytest

from aiquant.domain.models import BUY, DO_NOTHING, HOLD, SELL, MarketObservation
from aiquant.trader.cycle import run_trading_cycle
from aiquant.trading.features import load_normaliser
from aiquant.trading.ledger import Ledger
from aiquant.trading.policy import DecisionPolicy, load_policy_config
from aiquant.trading.risk import RiskMonitor
from aiquant.utils.database import force_commit, get_events

from tests.helpers import FixedPredictor


class CountingPredictor(FixedPredictor):
    def __init__(self, confidence=0.9):
        super().__init__(confidence)
        self.calls = 0

    def score(self, features):
        self.calls += 1
        return super().score(features)


class BrokenPredictor:
    def score(self, features):
        raise RuntimeError("model offline")

    def retrain(self, examples):
        pass


class ExplodingPolicy(DecisionPolicy):
    def decide(self, observation, *args, **kwargs):
        if observation.symbol == "BAD":
            raise KeyError("malformed")
        return super().decide(observation, *args, **kwargs)


@pytest.fixture
def engine(config):
    examples = []
    normaliser = load_normaliser(config)
    return {
        "ledger": Ledger.from_config(config, example_sink=examples.append, scheme=normaliser.scheme),
        "policy": DecisionPolicy(load_policy_config(config)),
        "risk_monitor": RiskMonitor.from_config(config),
        "normaliser": normaliser,
        "examples": examples,
    }


def _cycle(engine, observations, predictor, **kwargs):
    return run_trading_cycle(
        observations,
        ledger=engine["ledger"],
        policy=engine["policy"],
        predictor=predictor,
        risk_monitor=engine["risk_monitor"],
        normaliser=engine["normaliser"],
        **kwargs,
    )


def _aapl(price, change=1.0):
    return MarketObservation(symbol="AAPL", price=price, change_percent=change)


def test_end_to_end_trailing_stop_scenario(engine):
    predictor = FixedPredictor(0.9)
    ledger = engine["ledger"]

    r1 = _cycle(engine, [_aapl(150.0, change=2.0)], predictor)
    assert r1.outcomes[0].action == BUY
    assert r1.trades[0].amount == 13
    assert ledger.cash == pytest.approx(8050.0)

    r2 = _cycle(engine, [_aapl(153.0)], predictor)
    assert r2.outcomes[0].action == HOLD
    assert ledger.get_position("AAPL").high_price == 153.0

    r3 = _cycle(engine, [_aapl(150.0)], predictor)
    assert r3.outcomes[0].action == HOLD  # 1.96% below peak: no trailing stop

    r4 = _cycle(engine, [_aapl(149.9)], predictor)
    outcome = r4.outcomes[0]
    assert (outcome.action, outcome.reason) == (SELL, "trailing stop")
    assert outcome.trade.price == 149.9
    assert outcome.trade.profit == pytest.approx(-1.30)
    assert ledger.cash == pytest.approx(9998.70)
    assert not ledger.has_position("AAPL")

    (example,) = engine["examples"]
    assert example.label == 0
    assert example.symbol == "AAPL"

    force_commit()
    events = get_events(limit=20)
    assert any("Trailing stop" in m for m in events["message"])


def test_trailing_stop_skips_predictor(engine):
    predictor = CountingPredictor(0.9)
    _cycle(engine, [_aapl(100.0, change=2.0)], predictor)
    assert predictor.calls == 1

    report = _cycle(engine, [_aapl(97.0)], predictor)
    assert report.outcomes[0].reason == "trailing stop"
    assert report.outcomes[0].confidence is None
    assert predictor.calls == 1


def test_predictor_failure_means_no_entry(engine):
    report = _cycle(engine, [_aapl(150.0, change=3.0)], BrokenPredictor(), event_log=None)
    outcome = report.outcomes[0]
    assert outcome.action == DO_NOTHING
    assert outcome.confidence is None
    assert outcome.error is None
    assert engine["ledger"].cash == 10000


def test_one_symbol_failure_does_not_abort_batch(engine, config):
    engine["policy"] = ExplodingPolicy(load_policy_config(config))
    batch = [
        MarketObservation(symbol="BAD", price=10.0, change_percent=2.0),
        MarketObservation(symbol="NVDA", price=400.0, change_percent=2.0),
    ]
    report = _cycle(engine, batch, FixedPredictor(0.9))

    bad, good = report.outcomes
    assert bad.error and "KeyError" in bad.error
    assert good.action == BUY
    assert engine["ledger"].has_position("NVDA")
    assert len(report.errors) == 1

    force_commit()
    events = get_events(limit=20)
    assert any(lvl == "ERROR" and sym == "BAD" for lvl, sym in zip(events["level"], events["symbol"]))


def test_market_meltdown_blocks_entries(engine):
    report = _cycle(engine, [_aapl(150.0, change=3.0)], FixedPredictor(0.9), market_context=-2.5)
    assert report.outcomes[0].action == DO_NOTHING
    assert report.market_context == -2.5


def test_sell_on_signal_decay(engine):
    predictor = FixedPredictor(0.9)
    _cycle(engine, [_aapl(150.0, change=2.0)], predictor)
    predictor.confidence = 0.1
    report = _cycle(engine, [_aapl(150.5)], predictor)
    assert (report.outcomes[0].action, report.outcomes[0].reason) == (SELL, "signal decay")
    assert engine["examples"][0].label == 1


def test_report_to_dict_shape(engine):
    report = _cycle(engine, [_aapl(150.0, change=2.0)], FixedPredictor(0.9), event_log=None)
    data = report.to_dict()
    assert data["outcomes"][0]["trade"]["action"] == BUY
    assert "AAPL" in data["status"]["positions"]
