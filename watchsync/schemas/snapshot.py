from __future__ import annotations

import copy
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from watchsync.schemas.quote import FetchError, Quote, QuoteCategory
from watchsync.schemas.watchlist import SortMode, WatchListEntry


class SnapshotRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry: WatchListEntry
    quote: Quote | None = None
    error: FetchError | None = None
    stale: bool = False

    @property
    def code(self) -> str:
        return self.entry.code


class Snapshot(BaseModel):
    """Sorted view of one category; replaced wholesale every cycle."""

    model_config = ConfigDict(frozen=True)

    category: QuoteCategory
    rows: tuple[SnapshotRow, ...] = ()
    sort_mode: SortMode = SortMode.NORMAL
    generation: int = 0
    refreshed_at: float | None = None
    display_items: tuple[tuple[str, Any], ...] = Field(default=(), exclude=True)

    @computed_field
    @property
    def display(self) -> dict[str, Any]:
        return copy.deepcopy(dict(self.display_items))

    def codes(self) -> list[str]:
        return [row.code for row in self.rows]

    def absent_codes(self) -> list[str]:
        return [row.code for row in self.rows if row.quote is None]

    def quote_for(self, code: str) -> Quote | None:
        for row in self.rows:
            if row.code == code:
                return row.quote
        return None
