#!/usr/bin/env python3
"""Replay a JSON file of historical bars through a fresh in-memory ledger."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from aiquant.trader.backtest import load_bars, run_backtest  # noqa: E402
from aiquant.utils.config_loader import load_config  # noqa: E402


def _die(msg: str, code: int = 2) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(code)


def main() -> None:
    parser = argparse.ArgumentParser(description="Backtest the decision engine on historical bars.")
    parser.add_argument("history", help="JSON array of bars: {symbol, price, change_percent, sentiment?, market_context?}.")
    parser.add_argument("--config", default=None, help="Config file (defaults to config/config.yaml).")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    try:
        config = load_config(args.config)
        bars = load_bars(args.history)
    except (FileNotFoundError, ValueError) as e:
        _die(f"Backtest aborted: {e}")

    result = run_backtest(bars, config)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    print("--- BACKTEST COMPLETE ---")
    print(f"Bars replayed:         {result.bars} ({result.skipped} skipped)")
    print(f"Final portfolio value: ${result.final_equity:.2f}")
    print(f"Total trades:          {len(result.trades)}")
    print(f"Profit/Loss:           ${result.profit:.2f}")
    if result.win_rate is not None:
        print(f"Win rate:              {result.win_rate:.0%}")


if __name__ == "__main__":
    main()
