import asyncio
import threading

import pytest

from reentrybot.ops.context import get_cycle_id, get_run_id
from reentrybot.runner.scheduler import Scheduler


def test_tick_runs_and_records_stats():
    s = Scheduler()
    s.register("take_profit", 30, lambda: {"units": 2})

    out = s.run_tick("take_profit")

    assert out["skipped"] is False
    assert out["result"] == {"units": 2}
    st = s.status()["timers"]["take_profit"]
    assert st["runs"] == 1
    assert st["last_started_at"] and st["last_finished_at"]
    assert st["in_flight"] is False


def test_overlapping_tick_is_skipped():
    s = Scheduler()
    entered = threading.Event()
    release = threading.Event()

    def slow():
        entered.set()
        release.wait(5)
        return {}

    s.register("reentry", 15, slow)
    t = threading.Thread(target=s.run_tick, args=("reentry",))
    t.start()
    assert entered.wait(5)

    out = s.run_tick("reentry")
    release.set()
    t.join(5)

    assert out == {"timer": "reentry", "skipped": True}
    st = s.timers["reentry"]
    assert st.skips == 1
    assert st.runs == 1


def test_tick_error_is_contained():
    calls = []

    def boom():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("exchange exploded")
        return {"ok": True}

    s = Scheduler()
    s.register("progress", 600, boom)

    first = s.run_tick("progress")
    assert "exchange exploded" in first["error"]
    assert s.timers["progress"].errors == 1

    second = s.run_tick("progress")
    assert second["result"] == {"ok": True}
    assert s.timers["progress"].last_error is None
    assert s.timers["progress"].in_flight is False


def test_tick_binds_cycle_and_run_ids(audit):
    seen = {}

    def fn():
        seen["cycle"] = get_cycle_id()
        seen["run"] = get_run_id()
        return {}

    s = Scheduler(audit=audit)
    s.run_id = "run-test"
    s.register("take_profit", 30, fn)
    out = s.run_tick("take_profit")

    assert seen["cycle"] == out["cycle_id"]
    assert seen["cycle"].startswith("take_profit-")
    assert seen["run"] == "run-test"
    actions = [(e["action"], e["cycle_id"]) for e in audit.tail(10)]
    assert ("CYCLE_START", out["cycle_id"]) in actions
    assert ("CYCLE_END", out["cycle_id"]) in actions


def test_register_and_lookup_errors():
    s = Scheduler()
    with pytest.raises(ValueError):
        s.register("x", 0, lambda: None)
    with pytest.raises(KeyError):
        s.run_tick("nope")


def test_async_loop_fires_and_stops(audit):
    hits = []
    s = Scheduler(audit=audit)
    s.register("take_profit", 0.01, lambda: hits.append(1))
    s.register("reentry", 0.01, lambda: hits.append(2))

    async def main():
        assert s.start(run_id="run-loop") is True
        assert s.start() is False
        await asyncio.sleep(0.2)
        assert await s.stop() is True
        assert await s.stop() is False

    asyncio.run(main())

    assert 1 in hits and 2 in hits
    assert s.running is False
    kinds = [e["event_type"] for e in audit.tail(500)]
    assert "RUN_START" in kinds and "RUN_STOP" in kinds
