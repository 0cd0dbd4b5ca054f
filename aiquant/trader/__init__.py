"""
Trader orchestration package.

The headless loop entrypoint is `main.py` at the repo root; the cycle, the
scheduler and the service wiring live here so entrypoints stay thin and testable.
"""
