from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable
from zoneinfo import ZoneInfo

from watchsync.errors import WatchSyncError

logger = logging.getLogger(__name__)

CST = ZoneInfo("Asia/Shanghai")


@dataclass(frozen=True)
class SessionWindow:
    name: str
    start: time
    end: time

    def contains(self, current: time) -> bool:
        return self.start <= current < self.end


SSE_SESSIONS = (
    SessionWindow("morning", time(9, 30), time(11, 30)),
    SessionWindow("afternoon", time(13, 0), time(15, 0)),
)


def _localize(now: datetime, tz: ZoneInfo) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def is_trading_time(
    now: datetime | None = None,
    *,
    sessions: tuple[SessionWindow, ...] = SSE_SESSIONS,
    tz: ZoneInfo = CST,
) -> bool:
    """Return whether ``now`` falls inside a weekday session window in exchange time."""
    local_now = _localize(now or datetime.now(tz), tz)
    if local_now.weekday() >= 5:
        return False
    current_time = local_now.time().replace(tzinfo=None)
    return any(window.contains(current_time) for window in sessions)


class TimeGate:
    """Market-open predicate with a fail-open holiday lookup memoized per exchange day."""

    def __init__(
        self,
        *,
        holiday_lookup: Callable[[date], bool] | None = None,
        sessions: tuple[SessionWindow, ...] = SSE_SESSIONS,
        tz: ZoneInfo = CST,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sessions = sessions
        self.tz = tz
        self._holiday_lookup = holiday_lookup
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._lock = threading.Lock()
        self._lookup_lock = threading.Lock()
        self._holiday = False
        self._holiday_checked_for: date | None = None
        self._lookup_pending = False

    def _today(self) -> date:
        return _localize(self._clock(), self.tz).date()

    def is_holiday(self) -> bool:
        """Holiday flag for today; a memo from an earlier exchange day does not count."""
        with self._lock:
            return self._holiday and self._holiday_checked_for == self._today()

    @property
    def holiday_checked_for(self) -> date | None:
        return self._holiday_checked_for

    def refresh_holiday_state(self) -> bool:
        """Look up today's holiday flag once per exchange day; later calls return the memo."""
        with self._lookup_lock:
            today = self._today()
            with self._lock:
                if self._holiday_checked_for == today:
                    self._lookup_pending = False
                    return self._holiday

            holiday = False
            if self._holiday_lookup is not None:
                try:
                    holiday = bool(self._holiday_lookup(today))
                except WatchSyncError as exc:
                    logger.warning("[HOLIDAY][lookup_failed] day=%s assume_trading_day=1 error=%s", today, exc)
                except Exception:
                    logger.exception("[HOLIDAY][lookup_failed] day=%s assume_trading_day=1", today)
                else:
                    logger.info("[HOLIDAY][lookup_done] day=%s is_holiday=%s", today, holiday)

            with self._lock:
                self._holiday_checked_for = today
                self._holiday = holiday
                self._lookup_pending = False
            return holiday

    def _schedule_rollover_lookup(self) -> None:
        with self._lock:
            if self._holiday_lookup is None or self._lookup_pending:
                return
            # the first lookup belongs to application startup
            if self._holiday_checked_for is None or self._holiday_checked_for == self._today():
                return
            self._lookup_pending = True
        logger.info("[HOLIDAY][day_rollover] previous_day=%s", self._holiday_checked_for)
        threading.Thread(target=self.refresh_holiday_state, daemon=True, name="holiday-lookup").start()

    def is_market_open(self, now: datetime | None = None) -> bool:
        self._schedule_rollover_lookup()
        if self.is_holiday():
            return False
        return is_trading_time(now or self._clock(), sessions=self.sessions, tz=self.tz)
