from __future__ import annotations

import threading
from typing import Iterable

from watchsync.schemas.quote import QuoteCategory
from watchsync.schemas.snapshot import SnapshotRow
from watchsync.schemas.watchlist import SortMode

_TOGGLE = {
    SortMode.NORMAL: SortMode.CHANGE_DESC,
    SortMode.CHANGE_DESC: SortMode.NORMAL,
    SortMode.CHANGE_ASC: SortMode.NORMAL,
}


def _row_key(row: SnapshotRow, mode: SortMode) -> tuple:
    entry = row.entry
    absent = row.quote is None
    if absent or mode == SortMode.NORMAL:
        value = 0.0
    elif mode == SortMode.CHANGE_DESC:
        value = -row.quote.change_percent
    else:
        value = row.quote.change_percent
    return (not entry.pinned, absent, value, entry.insertion_order, entry.code)


def sort_rows(rows: Iterable[SnapshotRow], mode: SortMode = SortMode.NORMAL) -> list[SnapshotRow]:
    """Order rows: pinned first, quoted before absent, then by mode, then insertion order."""
    return sorted(rows, key=lambda row: _row_key(row, mode))


class SortEngine:
    """Holds the process-wide sort mode per category."""

    def __init__(self, initial: dict[QuoteCategory, SortMode] | None = None) -> None:
        self._lock = threading.Lock()
        self._modes = {category: SortMode.NORMAL for category in QuoteCategory}
        if initial:
            self._modes.update(initial)

    def mode(self, category: QuoteCategory) -> SortMode:
        with self._lock:
            return self._modes[category]

    def set_mode(self, category: QuoteCategory, mode: SortMode) -> None:
        with self._lock:
            self._modes[category] = mode

    def change_order(self, category: QuoteCategory) -> SortMode:
        with self._lock:
            self._modes[category] = _TOGGLE[self._modes[category]]
            return self._modes[category]

    def sort(self, rows: Iterable[SnapshotRow], category: QuoteCategory) -> list[SnapshotRow]:
        return sort_rows(rows, self.mode(category))
