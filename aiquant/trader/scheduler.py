from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from aiquant.trader.market_hours import is_market_open
from aiquant.utils.database import force_commit, get_scheduler_state, log_event, set_scheduler_state

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 15 * 60


class CycleScheduler:
    """
    Runs `run_cycle` every `interval_seconds`, resuming across restarts.

    The last-run timestamp lives in SQLite (`scheduler_state`). At startup a
    missing or stale timestamp triggers an immediate catch-up cycle; otherwise
    the first run waits for the remainder of the interval.
    """

    def __init__(
        self,
        run_cycle: Callable[[], Any],
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        *,
        market_hours_only: bool = False,
        clock: Callable[[], float] = time.time,
        market_open: Callable[[], bool] = is_market_open,
    ):
        if interval_seconds <= 0:
            raise ValueError("scheduler.cycle_interval_seconds must be > 0")
        self.run_cycle = run_cycle
        self.interval_seconds = int(interval_seconds)
        self.market_hours_only = bool(market_hours_only)
        self.clock = clock
        self.market_open = market_open
        self._last_run: float | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, config: dict, run_cycle: Callable[[], Any], **kwargs) -> CycleScheduler:
        sched = config.get("scheduler", {}) or {}
        return cls(
            run_cycle,
            int(sched.get("cycle_interval_seconds", DEFAULT_INTERVAL_SECONDS)),
            market_hours_only=bool(sched.get("market_hours_only", False)),
            **kwargs,
        )

    def last_run(self) -> float | None:
        try:
            stored = get_scheduler_state().get("last_run_utc")
        except Exception as e:
            logger.warning(f"Scheduler state unavailable: {e}")
            stored = None
        known = [t for t in (stored, self._last_run) if t is not None]
        return max(known) if known else None

    def _mark_run(self, when: float) -> None:
        self._last_run = when
        try:
            set_scheduler_state(when)
        except Exception as e:
            logger.error(f"Failed to persist scheduler state: {e}")

    def seconds_until_due(self) -> float:
        last = self.last_run()
        if last is None:
            return 0.0
        return max(0.0, last + self.interval_seconds - self.clock())

    def is_due(self) -> bool:
        return self.seconds_until_due() <= 0

    def run_once(self) -> bool:
        """Run one cycle now (subject to the market-hours gate). Returns True if a cycle ran."""
        if self.market_hours_only and not self.market_open():
            logger.info("Market closed; skipping scheduled cycle")
            self._mark_run(self.clock())
            return False

        started = self.clock()
        try:
            self.run_cycle()
        except Exception as e:
            msg = f"Scheduled cycle failed: {type(e).__name__}: {e}"
            logger.error(msg)
            try:
                log_event("ERROR", msg, symbol="Cycle", step="Scheduler")
                force_commit()
            except Exception as log_err:
                logger.warning(f"Event stream write failed: {log_err}")
        finally:
            self._mark_run(started)

        duration = self.clock() - started
        if duration >= self.interval_seconds:
            logger.warning(f"Cycle took {duration:.0f}s (overran the {self.interval_seconds}s interval)")
        return True

    def run_forever(self) -> None:
        """Block until `stop()`; runs a catch-up cycle first when one is overdue."""
        if self.is_due():
            logger.info("Running missed trading cycle")
        while not self._stop.is_set():
            wait = self.seconds_until_due()
            if wait > 0:
                logger.info(f"Next cycle in {wait / 60:.1f}min")
                if self._stop.wait(wait):
                    break
            self.run_once()

    def start_background(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="cycle-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
