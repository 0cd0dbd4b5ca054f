from datetime import datetime, timezone

from aiquant.trader.market_hours import is_market_open
from aiquant.trader.scheduler import CycleScheduler
from aiquant.utils.database import force_commit, get_events, get_scheduler_state, set_scheduler_state


class FakeClock:
    def __init__(self, now=100_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_catch_up_when_never_run():
    runs = []
    sched = CycleScheduler(lambda: runs.append(1), 900, clock=FakeClock())
    assert sched.is_due()
    assert sched.run_once()
    assert runs == [1]
    assert get_scheduler_state()["last_run_utc"] == 100_000.0


def test_not_due_within_interval_after_restart():
    set_scheduler_state(100_000.0 - 300)
    sched = CycleScheduler(lambda: None, 900, clock=FakeClock())
    assert not sched.is_due()
    assert sched.seconds_until_due() == 600


def test_stale_state_triggers_catch_up():
    set_scheduler_state(100_000.0 - 5000)
    sched = CycleScheduler(lambda: None, 900, clock=FakeClock())
    assert sched.is_due()


def test_failed_cycle_is_logged_and_still_stamped():
    def boom():
        raise RuntimeError("feed down")

    sched = CycleScheduler(boom, 900, clock=FakeClock())
    assert sched.run_once()
    assert get_scheduler_state()["last_run_utc"] == 100_000.0
    force_commit()
    events = get_events(limit=10)
    assert any("feed down" in m for m in events["message"])


def test_market_hours_gate_skips_cycle():
    runs = []
    sched = CycleScheduler(
        lambda: runs.append(1), 900, market_hours_only=True, clock=FakeClock(), market_open=lambda: False
    )
    assert not sched.run_once()
    assert runs == []
    assert not sched.is_due()


def test_run_forever_runs_catch_up_then_stops():
    runs = []
    sched = CycleScheduler(lambda: (runs.append(1), sched.stop(timeout=0)), 900, clock=FakeClock())
    sched.run_forever()
    assert runs == [1]


def test_background_thread_stops():
    sched = CycleScheduler(lambda: None, 900, clock=FakeClock())
    set_scheduler_state(100_000.0)
    thread = sched.start_background()
    sched.stop(timeout=2)
    assert not thread.is_alive()


def test_from_config(config):
    config["scheduler"] = {"cycle_interval_seconds": 60, "market_hours_only": True}
    sched = CycleScheduler.from_config(config, lambda: None)
    assert sched.interval_seconds == 60
    assert sched.market_hours_only


def test_is_market_open():
    # Wednesday 2024-01-10
    assert is_market_open(datetime(2024, 1, 10, 15, 0, tzinfo=timezone.utc))  # 10:00 New York
    assert not is_market_open(datetime(2024, 1, 10, 22, 0, tzinfo=timezone.utc))  # 17:00 New York
    assert not is_market_open(datetime(2024, 1, 13, 15, 0, tzinfo=timezone.utc))  # Saturday
