from __future__ import annotations

import asyncio
import logging
import threading
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from reentrybot.ops import context
from reentrybot.persistence.audit import Audit
from reentrybot.runner.models import utc_now_iso

log = logging.getLogger("reentrybot.scheduler")


@dataclass
class Timer:
    name: str
    interval_seconds: float
    fn: Callable[[], Any]
    runs: int = 0
    skips: int = 0
    errors: int = 0
    last_started_at: Optional[str] = None
    last_finished_at: Optional[str] = None
    last_error: Optional[str] = None
    last_result: Any = None
    _in_flight: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def in_flight(self) -> bool:
        return self._in_flight.locked()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "in_flight": self.in_flight,
            "runs": self.runs,
            "skips": self.skips,
            "errors": self.errors,
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_error": self.last_error,
            "last_result": self.last_result,
        }


class Scheduler:
    """
    Fixed-interval timers. A tick fires every interval; if the previous tick of
    the same timer is still running the new one is skipped and counted.
    No tick error stops the scheduler.
    """

    def __init__(self, audit: Optional[Audit] = None):
        self.audit = audit
        self.timers: Dict[str, Timer] = {}
        self.running = False
        self.run_id: Optional[str] = None
        self.started_at: Optional[str] = None
        self._loops: Dict[str, asyncio.Task] = {}
        self._ticks: Set[asyncio.Task] = set()

    def register(self, name: str, interval_seconds: float, fn: Callable[[], Any]) -> Timer:
        if interval_seconds <= 0:
            raise ValueError(f"interval for {name} must be > 0")
        timer = Timer(name=name, interval_seconds=float(interval_seconds), fn=fn)
        self.timers[name] = timer
        return timer

    def run_tick(self, name: str) -> Dict[str, Any]:
        timer = self.timers.get(name)
        if timer is None:
            raise KeyError(f"Unknown timer: {name}")

        if not timer._in_flight.acquire(blocking=False):
            timer.skips += 1
            log.info("%s tick skipped: previous tick still running", name)
            return {"timer": name, "skipped": True}

        try:
            if self.run_id:
                context.set_run_id(self.run_id)
            with context.cycle(name) as cycle_id:
                timer.last_started_at = utc_now_iso()
                self._audit(name, "CYCLE_START")
                try:
                    result = timer.fn()
                    timer.runs += 1
                    timer.last_result = result
                    timer.last_error = None
                    self._audit(name, "CYCLE_END", result if isinstance(result, dict) else {})
                    return {"timer": name, "skipped": False, "cycle_id": cycle_id, "result": result}
                except Exception:
                    err = traceback.format_exc()
                    timer.errors += 1
                    timer.last_error = err
                    log.exception("%s tick failed", name)
                    self._audit(name, "CYCLE_ERROR", {"error": err})
                    return {"timer": name, "skipped": False, "cycle_id": cycle_id, "error": err}
                finally:
                    timer.last_finished_at = utc_now_iso()
        finally:
            timer._in_flight.release()

    def _audit(self, name: str, action: str, details: Optional[Dict[str, Any]] = None) -> None:
        if self.audit:
            self.audit.event("CYCLE", action=action, details={"timer": name, **(details or {})})

    # ---------------- async loop ----------------

    async def _loop(self, timer: Timer) -> None:
        while self.running:
            # fire without awaiting: a slow tick makes the next one skip
            task = asyncio.create_task(asyncio.to_thread(self.run_tick, timer.name))
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            await asyncio.sleep(timer.interval_seconds)

    def start(self, run_id: Optional[str] = None) -> bool:
        """Must be called from a running event loop. Returns False if already running."""
        if self.running:
            return False
        self.running = True
        self.run_id = run_id or context.new_id("run")
        self.started_at = utc_now_iso()
        context.set_run_id(self.run_id)
        if self.audit:
            self.audit.start_run(
                self.run_id,
                tp_interval_seconds=int(self._interval_of("take_profit")),
                reentry_interval_seconds=int(self._interval_of("reentry")),
            )
        for timer in self.timers.values():
            self._loops[timer.name] = asyncio.create_task(self._loop(timer))
        log.info("scheduler started run_id=%s timers=%s", self.run_id, list(self.timers))
        return True

    async def stop(self) -> bool:
        if not self.running:
            return False
        self.running = False
        for task in self._loops.values():
            task.cancel()
        for task in list(self._loops.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loops.clear()
        if self.audit and self.run_id:
            self.audit.stop_run(self.run_id)
        log.info("scheduler stopped run_id=%s", self.run_id)
        return True

    def _interval_of(self, name: str) -> float:
        timer = self.timers.get(name)
        return timer.interval_seconds if timer else 0

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "run_id": self.run_id,
            "started_at": self.started_at,
            "timers": {name: t.snapshot() for name, t in self.timers.items()},
        }
