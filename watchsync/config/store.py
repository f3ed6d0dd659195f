from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Protocol

from pydantic import BaseModel, ConfigDict

from watchsync.errors import ConfigError
from watchsync.schemas.quote import QuoteCategory
from watchsync.schemas.watchlist import SortMode, WatchListEntry

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 10000

WATCHLIST_KEYS = {
    QuoteCategory.FUND: "funds",
    QuoteCategory.STOCK: "stocks",
}
SORT_KEYS = {
    QuoteCategory.FUND: "fund_sort",
    QuoteCategory.STOCK: "stock_sort",
}
DISPLAY_KEYS = ("icon_type", "rise_color", "fall_color", "show_earnings", "fund_amount")

ChangeListener = Callable[[str, Any], None]


class ConfigStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def subscribe(self, callback: ChangeListener) -> Callable[[], None]: ...


class InMemoryConfigStore:
    """Thread-safe key/value store with change notifications."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, Any] = copy.deepcopy(initial or {})
        self._listeners: list[ChangeListener] = []

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._values:
                return default
            return copy.deepcopy(self._values[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = copy.deepcopy(value)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(key, value)
            except Exception:
                logger.exception("[CONFIG][listener_error] key=%s", key)

    def subscribe(self, callback: ChangeListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe


def coerce_interval_ms(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"interval must be a number, got {value!r}")
    try:
        interval = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"interval must be a number, got {value!r}") from exc
    if interval <= 0:
        raise ConfigError(f"interval must be positive, got {interval}")
    return interval


def parse_watch_list(raw: Any) -> list[WatchListEntry]:
    """Accept plain code lists or entry dicts; drop blanks and duplicates."""
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        logger.warning("[CONFIG][invalid_watch_list] value=%r", raw)
        return []

    entries: list[WatchListEntry] = []
    seen: set[str] = set()
    next_order = 0
    for index, item in enumerate(raw):
        if isinstance(item, dict):
            code = str(item.get("code") or "").strip()
            pinned = bool(item.get("pinned", False))
            order = item.get("insertion_order", index)
        else:
            code = str(item or "").strip()
            pinned = False
            order = index
        if not code:
            logger.warning("[CONFIG][ignored_code] reason=blank index=%s", index)
            continue
        if code in seen:
            logger.warning("[CONFIG][ignored_code] reason=duplicate code=%s", code)
            continue
        try:
            order = int(order)
        except (TypeError, ValueError):
            order = next_order
        seen.add(code)
        next_order = max(next_order, order + 1)
        entries.append(WatchListEntry(code=code, pinned=pinned, insertion_order=order))
    return entries


def dump_watch_list(entries: list[WatchListEntry]) -> list[dict]:
    return [entry.model_dump() for entry in entries]


def _parse_sort_mode(value: Any) -> SortMode:
    if isinstance(value, SortMode):
        return value
    try:
        return SortMode(str(value).upper())
    except ValueError:
        return SortMode.NORMAL


class CycleConfig(BaseModel):
    """Configuration as read once at the start of a cycle."""

    model_config = ConfigDict(frozen=True)

    interval_ms: int
    funds: tuple[WatchListEntry, ...] = ()
    stocks: tuple[WatchListEntry, ...] = ()
    fund_sort: SortMode = SortMode.NORMAL
    stock_sort: SortMode = SortMode.NORMAL
    display: dict[str, Any] = {}

    def watch_list(self, category: QuoteCategory) -> tuple[WatchListEntry, ...]:
        return self.funds if category == QuoteCategory.FUND else self.stocks

    def sort_mode(self, category: QuoteCategory) -> SortMode:
        return self.fund_sort if category == QuoteCategory.FUND else self.stock_sort


def read_cycle_config(store: ConfigStore, default_interval_ms: int = DEFAULT_INTERVAL_MS) -> CycleConfig:
    raw_interval = store.get("interval", default_interval_ms)
    try:
        interval_ms = coerce_interval_ms(raw_interval)
    except ConfigError as exc:
        logger.warning("[CONFIG][invalid_interval] fallback=%s error=%s", default_interval_ms, exc)
        interval_ms = default_interval_ms

    display = {}
    for key in DISPLAY_KEYS:
        value = store.get(key)
        if value is not None:
            display[key] = value

    return CycleConfig(
        interval_ms=interval_ms,
        funds=tuple(parse_watch_list(store.get(WATCHLIST_KEYS[QuoteCategory.FUND], []))),
        stocks=tuple(parse_watch_list(store.get(WATCHLIST_KEYS[QuoteCategory.STOCK], []))),
        fund_sort=_parse_sort_mode(store.get(SORT_KEYS[QuoteCategory.FUND], SortMode.NORMAL.value)),
        stock_sort=_parse_sort_mode(store.get(SORT_KEYS[QuoteCategory.STOCK], SortMode.NORMAL.value)),
        display=display,
    )
