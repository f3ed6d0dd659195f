from __future__ import annotations

import logging
import threading

from watchsync.config.store import WATCHLIST_KEYS, ConfigStore, dump_watch_list, parse_watch_list
from watchsync.errors import ConfigError
from watchsync.schemas.quote import QuoteCategory
from watchsync.schemas.watchlist import WatchListEntry

logger = logging.getLogger(__name__)


def to_request_code(code: str, category: QuoteCategory) -> str:
    """Store stock codes in the quote feed's request format (``gb_``/``usr_`` for US)."""
    value = code.strip()
    if category != QuoteCategory.STOCK:
        return value
    lowered = value.lower()
    if lowered.startswith(("gb_", "usr_")):
        return lowered
    if lowered.startswith("gb"):
        return "gb_" + lowered[2:]
    if lowered.startswith("us"):
        return "usr_" + lowered[2:]
    # index tickers such as hkHSI are case-sensitive after the market prefix
    return lowered[:2] + value[2:]


class WatchListEditor:
    """User-driven add/remove/pin edits, written back through the config store."""

    def __init__(self, config_store: ConfigStore) -> None:
        self.config_store = config_store
        self._lock = threading.Lock()

    def entries(self, category: QuoteCategory) -> list[WatchListEntry]:
        return parse_watch_list(self.config_store.get(WATCHLIST_KEYS[category], []))

    def _save(self, category: QuoteCategory, entries: list[WatchListEntry]) -> None:
        self.config_store.set(WATCHLIST_KEYS[category], dump_watch_list(entries))

    def add(self, category: QuoteCategory, code: str) -> WatchListEntry:
        value = to_request_code(code or "", category)
        if not value:
            raise ConfigError("code must not be blank")
        with self._lock:
            entries = self.entries(category)
            for entry in entries:
                if entry.code == value:
                    return entry
            next_order = max((e.insertion_order for e in entries), default=-1) + 1
            added = WatchListEntry(code=value, pinned=False, insertion_order=next_order)
            self._save(category, [*entries, added])
        logger.info("[WATCHLIST][add] category=%s code=%s order=%s", category.value, value, next_order)
        return added

    def remove(self, category: QuoteCategory, code: str) -> bool:
        with self._lock:
            entries = self.entries(category)
            kept = [e for e in entries if e.code != code]
            if len(kept) == len(entries):
                return False
            self._save(category, kept)
        logger.info("[WATCHLIST][remove] category=%s code=%s", category.value, code)
        return True

    def toggle_pin(self, category: QuoteCategory, code: str) -> WatchListEntry | None:
        with self._lock:
            entries = self.entries(category)
            updated: WatchListEntry | None = None
            out = []
            for entry in entries:
                if entry.code == code:
                    entry = entry.model_copy(update={"pinned": not entry.pinned})
                    updated = entry
                out.append(entry)
            if updated is None:
                return None
            self._save(category, out)
        logger.info("[WATCHLIST][pin] category=%s code=%s pinned=%s", category.value, code, updated.pinned)
        return updated
