from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable

logger = logging.getLogger(__name__)

MIN_INTERVAL_MS = 3000

STOPPED = "STOPPED"
RUNNING = "RUNNING"


def clamp_interval_ms(interval_ms: int, floor_ms: int = MIN_INTERVAL_MS) -> int:
    return max(int(interval_ms), floor_ms)


class _ArmedTimer:
    def __init__(self, generation: int, interval_ms: int) -> None:
        self.generation = generation
        self.interval_ms = interval_ms
        self.stop_event = threading.Event()
        self.thread: threading.Thread | None = None


class PollScheduler:
    """Owns one repeating timer for a category and gates each tick on market hours."""

    def __init__(
        self,
        *,
        name: str,
        on_tick: Callable[[bool], object],
        market_open_checker: Callable[[datetime | None], bool],
        visibility: Callable[[], bool] = lambda: True,
        min_interval_ms: int = MIN_INTERVAL_MS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.on_tick = on_tick
        self.market_open_checker = market_open_checker
        self.visibility = visibility
        self.min_interval_ms = min_interval_ms
        self._monotonic = monotonic

        self._state_lock = threading.Lock()
        # held while on_tick runs so stop() can wait out an in-flight tick
        self._tick_lock = threading.RLock()
        self._generation = 0
        self._timer: _ArmedTimer | None = None

        self._metrics = {
            "ticks": 0,
            "skipped_closed": 0,
            "tick_errors": 0,
            "rearms": 0,
        }

    @property
    def state(self) -> str:
        with self._state_lock:
            return RUNNING if self._timer is not None else STOPPED

    @property
    def interval_ms(self) -> int | None:
        with self._state_lock:
            return self._timer.interval_ms if self._timer is not None else None

    @property
    def active_timer_count(self) -> int:
        with self._state_lock:
            timer = self._timer
        if timer is None or timer.thread is None:
            return 0
        return 1 if timer.thread.is_alive() else 0

    def _arm(self, interval_ms: int) -> _ArmedTimer:
        self._generation += 1
        timer = _ArmedTimer(self._generation, clamp_interval_ms(interval_ms, self.min_interval_ms))
        timer.thread = threading.Thread(
            target=self._loop,
            args=(timer,),
            daemon=True,
            name=f"poll-scheduler-{self.name}",
        )
        self._timer = timer
        timer.thread.start()
        return timer

    def _disarm(self) -> _ArmedTimer | None:
        timer = self._timer
        if timer is None:
            return None
        self._generation += 1
        self._timer = None
        timer.stop_event.set()
        return timer

    def _wait_out(self, timer: _ArmedTimer | None) -> None:
        if timer is None or timer.thread is None:
            return
        if timer.thread is threading.current_thread():
            return
        with self._tick_lock:
            pass
        timer.thread.join(timeout=1.0)

    def start(self, interval_ms: int) -> int:
        with self._state_lock:
            if self._timer is not None:
                return self._timer.interval_ms
            timer = self._arm(interval_ms)
        if timer.interval_ms != interval_ms:
            logger.info("[SCHED][interval_clamped] name=%s requested_ms=%s effective_ms=%s", self.name, interval_ms, timer.interval_ms)
        logger.info("[SCHED][start] name=%s interval_ms=%s", self.name, timer.interval_ms)
        return timer.interval_ms

    def reconfigure(self, interval_ms: int) -> int | None:
        """Swap the armed timer for one at ``interval_ms``; no-op while stopped."""
        with self._state_lock:
            if self._timer is None:
                return None
            effective = clamp_interval_ms(interval_ms, self.min_interval_ms)
            if effective == self._timer.interval_ms:
                return effective
            old = self._disarm()
            new = self._arm(interval_ms)
            self._metrics["rearms"] += 1
        self._wait_out(old)
        logger.info("[SCHED][reconfigure] name=%s requested_ms=%s effective_ms=%s", self.name, interval_ms, new.interval_ms)
        return new.interval_ms

    def stop(self) -> None:
        with self._state_lock:
            old = self._disarm()
        if old is None:
            return
        self._wait_out(old)
        logger.info("[SCHED][stop] name=%s", self.name)

    def _is_current(self, timer: _ArmedTimer) -> bool:
        with self._state_lock:
            return self._timer is timer and self._generation == timer.generation

    def tick_once(self, now: datetime | None = None) -> bool:
        """Run one gated tick; returns whether ``on_tick`` was invoked."""
        try:
            market_open = self.market_open_checker(now)
        except Exception:
            logger.exception("[SCHED][gate_error] name=%s", self.name)
            return False
        if not market_open:
            self._metrics["skipped_closed"] += 1
            logger.info("[SCHED][market_closed] name=%s polling paused", self.name)
            return False

        visible = bool(self.visibility())
        self._metrics["ticks"] += 1
        try:
            self.on_tick(visible)
        except Exception:
            self._metrics["tick_errors"] += 1
            logger.exception("[SCHED][tick_error] name=%s", self.name)
        return True

    def _loop(self, timer: _ArmedTimer) -> None:
        interval_sec = timer.interval_ms / 1000.0
        armed_at = self._monotonic()
        beats = 1
        while not timer.stop_event.wait(max(armed_at + beats * interval_sec - self._monotonic(), 0.0)):
            with self._tick_lock:
                if not self._is_current(timer):
                    return
                self.tick_once()
            # deadlines follow the arm time; overrun ticks are dropped, not queued
            elapsed = self._monotonic() - armed_at
            beats = max(beats + 1, int(elapsed // interval_sec) + 1)

    def metrics(self) -> dict:
        return {
            **self._metrics,
            "name": self.name,
            "state": self.state,
            "interval_ms": self.interval_ms,
        }
