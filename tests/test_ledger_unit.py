import logging
import random
import threading

import pytest

from aiquant.domain.models import BUY, SELL
from aiquant.trading.ledger import Ledger


def _ledger(**kwargs) -> Ledger:
    return Ledger(10000, 0.20, **kwargs)


def test_buy_debits_exact_cost_and_opens_position():
    ledger = _ledger()
    trade = ledger.buy("AAPL", 150.0, features=(0.7, 0.5, 0.5), confidence=0.8)

    assert trade.action == BUY and trade.amount == 13
    assert ledger.cash == pytest.approx(10000 - 13 * 150.0)
    pos = ledger.get_position("AAPL")
    assert pos.amount == 13
    assert pos.entry_price == pos.high_price == 150.0
    assert pos.entry_features == (0.7, 0.5, 0.5)


def test_buy_is_noop_when_already_holding():
    ledger = _ledger()
    ledger.buy("AAPL", 150.0)
    cash = ledger.cash
    assert ledger.buy("AAPL", 140.0) is None
    assert ledger.cash == cash
    assert len(ledger.status().trades) == 1


def test_buy_with_insufficient_liquidity_logs_and_skips(caplog):
    ledger = Ledger(100, 0.20)
    with caplog.at_level(logging.INFO):
        assert ledger.buy("NVDA", 500.0) is None
    assert "insufficient liquidity" in caplog.text
    assert ledger.cash == 100
    assert not ledger.has_position("NVDA")


def test_manual_amount_is_clamped_to_cash():
    ledger = Ledger(1000, 0.20)
    trade = ledger.buy("AAPL", 150.0, amount=50)
    assert trade.amount == 6
    assert ledger.cash == pytest.approx(100.0)


def test_sell_round_trip_profit_and_label():
    examples = []
    ledger = _ledger(example_sink=examples.append, scheme="abc")
    ledger.buy("AAPL", 100.0, features=(0.1, 0.2, 0.3), signals={"change_percent": 2.0}, confidence=0.7)
    trade = ledger.sell("AAPL", 110.0, "take profit")

    assert trade.action == SELL
    assert trade.profit == pytest.approx(200.0)
    assert trade.reason == "take profit"
    assert ledger.cash == pytest.approx(10200.0)
    assert not ledger.has_position("AAPL")

    (example,) = examples
    assert example.label == 1
    assert example.features == (0.1, 0.2, 0.3)
    assert example.signals == {"change_percent": 2.0}
    assert example.scheme == "abc"
    assert example.profit == pytest.approx(200.0)


def test_breakeven_sell_is_labelled_zero():
    examples = []
    ledger = _ledger(example_sink=examples.append)
    ledger.buy("AAPL", 100.0)
    ledger.sell("AAPL", 100.0, "signal decay")
    assert examples[0].label == 0


def test_sell_without_position_warns(caplog):
    ledger = _ledger()
    with caplog.at_level(logging.WARNING):
        assert ledger.sell("TSLA", 200.0, "signal decay") is None
    assert "no open position" in caplog.text
    assert ledger.cash == 10000


def test_update_price_ratchets_high_and_tolerates_junk():
    ledger = _ledger()
    ledger.buy("AAPL", 150.0)
    ledger.update_price("AAPL", 153.0)
    ledger.update_price("AAPL", 149.0)
    ledger.update_price("AAPL", "n/a")
    ledger.update_price("AAPL", -1)
    ledger.update_price("MSFT", 300.0)

    pos = ledger.get_position("AAPL")
    assert pos.high_price == 153.0
    assert pos.current_price == 149.0
    assert not ledger.has_position("MSFT")


def test_equity_conservation():
    ledger = _ledger()
    ledger.buy("AAPL", 150.0)
    ledger.buy("NVDA", 400.0)
    ledger.update_price("AAPL", 160.0)

    status = ledger.status()
    expected = status.cash + sum(p.amount * p.last_price for p in status.positions)
    assert status.equity == pytest.approx(expected)
    assert status.cash >= 0


def test_status_returns_copies():
    ledger = _ledger()
    ledger.buy("AAPL", 150.0)
    snap = ledger.status()
    snap.positions[0].amount = 999
    snap.positions[0].high_price = 1.0
    got = ledger.get_position("AAPL")
    got.amount = 1

    pos = ledger.get_position("AAPL")
    assert pos.amount == 13
    assert pos.high_price == 150.0


def test_sink_failures_never_undo_trades(caplog):
    def boom(_):
        raise RuntimeError("disk full")

    ledger = _ledger(example_sink=boom, trade_sink=boom)
    with caplog.at_level(logging.ERROR):
        ledger.buy("AAPL", 100.0)
        trade = ledger.sell("AAPL", 90.0, "stop loss")

    assert trade is not None
    assert ledger.cash == pytest.approx(10000 - 200.0)
    assert "Trade persistence failed" in caplog.text
    assert "Training example emission failed" in caplog.text


def test_trade_sink_sees_every_trade():
    seen = []
    ledger = _ledger(trade_sink=seen.append)
    ledger.buy("AAPL", 100.0)
    ledger.sell("AAPL", 101.0, "take profit")
    assert [t.action for t in seen] == [BUY, SELL]


def test_from_config(config):
    config["trading"]["starting_cash"] = 5000
    ledger = Ledger.from_config(config)
    assert ledger.cash == 5000
    assert ledger.allocation_fraction == 0.20


@pytest.mark.parametrize("cash,fraction", [(-1, 0.2), (100, 0), (100, 1.5)])
def test_rejects_bad_construction(cash, fraction):
    with pytest.raises(ValueError):
        Ledger(cash, fraction)


def test_concurrent_buys_open_one_position():
    ledger = _ledger()
    barrier = threading.Barrier(16)

    def worker():
        barrier.wait()
        ledger.buy("AAPL", 100.0)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    status = ledger.status()
    assert len(status.trades) == 1
    assert len(status.positions) == 1
    assert status.cash == pytest.approx(8000.0)


@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
def test_random_sequences_keep_ledger_invariants(seed):
    rng = random.Random(seed)
    symbols = ["AAPL", "NVDA", "TSLA", "AMD"]
    ledger = _ledger()
    peaks: dict[str, float] = {}

    for _ in range(300):
        symbol = rng.choice(symbols)
        price = round(rng.uniform(1.0, 3000.0), 2)
        op = rng.choice(["buy", "sell", "update"])
        if op == "buy":
            ledger.buy(symbol, price, amount=rng.choice([None, rng.randint(1, 20)]))
        elif op == "sell":
            ledger.sell(symbol, price, "signal decay")
        else:
            ledger.update_price(symbol, price)

        status = ledger.status()
        held = [p.symbol for p in status.positions]
        assert status.cash >= 0
        assert len(held) == len(set(held))
        for pos in status.positions:
            assert pos.high_price >= peaks.get(pos.symbol, pos.high_price)
            assert pos.high_price >= pos.entry_price
            peaks[pos.symbol] = pos.high_price
        for gone in set(peaks) - set(held):
            del peaks[gone]


def test_manual_position_does_not_emit_training_example():
    examples = []
    ledger = _ledger(example_sink=examples.append)
    ledger.buy("AAPL", 100.0, amount=5, manual=True)
    assert ledger.get_position("AAPL").manual

    trade = ledger.sell("AAPL", 110.0, "manual exit")
    assert trade.profit == pytest.approx(50.0)
    assert examples == []
