#!/usr/bin/env python3
"""
Generate a synthetic foundation set for the predictor.

Rows follow a relative-strength pattern: a stock rising while the market falls
is labelled a win, a stock falling while the market rises a loss, and the rest
win when the stock outperforms the market. The output is raw signals, so it
stays valid if the normalisation ranges change.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np


def label_for(change: float, market: float) -> int:
    if change > 0.5 and market < -0.5:
        return 1
    if change > 1.5 and market > 0 and change > market:
        return 1
    if change < -0.5 and market > 0.5:
        return 0
    return 1 if change > market else 0


def generate(count: int, seed: int) -> list[dict]:
    rng = np.random.default_rng(seed)
    markets = rng.uniform(-3.0, 3.0, size=count)
    changes = rng.uniform(-5.0, 5.0, size=count)
    rows = []
    for market, change in zip(markets, changes):
        m, c = round(float(market), 2), round(float(change), 2)
        rows.append({"signals": {"change_percent": c, "market_change": m}, "label": label_for(c, m)})
    return rows


def main() -> None:
    parser = argparse.ArgumentParser(description="Write synthetic foundation training examples as JSON.")
    parser.add_argument("--count", type=int, default=1000, help="Number of examples to generate.")
    parser.add_argument("--seed", type=int, default=42, help="RNG seed (same seed, same file).")
    parser.add_argument(
        "--out",
        default=str(Path(__file__).resolve().parents[1] / "data" / "foundation_examples.json"),
        help="Output path.",
    )
    args = parser.parse_args()

    if args.count <= 0:
        parser.error("--count must be positive")

    rows = generate(args.count, args.seed)
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(rows, indent=1), encoding="utf-8")
    wins = sum(r["label"] for r in rows)
    print(f"Wrote {len(rows)} examples ({wins} wins) to {out}")


if __name__ == "__main__":
    main()
