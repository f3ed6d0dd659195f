from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from watchsync.config.store import ConfigStore, CycleConfig, read_cycle_config
from watchsync.schemas.quote import FetchError, Quote, QuoteCategory
from watchsync.schemas.snapshot import Snapshot, SnapshotRow
from watchsync.schemas.watchlist import WatchListEntry
from watchsync.services.quote_fetcher import QuoteFetcher
from watchsync.services.sort_engine import SortEngine, sort_rows

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[QuoteCategory, Snapshot], None]


class _SnapshotMoved(Exception):
    def __init__(self, current_generation: int) -> None:
        super().__init__(current_generation)
        self.current_generation = current_generation


def merge_rows(
    entries: tuple[WatchListEntry, ...] | list[WatchListEntry],
    results: dict[str, Quote | FetchError],
    previous: Snapshot | None,
) -> list[SnapshotRow]:
    """Attach fetched quotes by exact code; failed codes keep their last good quote as stale."""
    last_good: dict[str, Quote] = {}
    if previous is not None:
        for row in previous.rows:
            if row.quote is not None:
                last_good[row.code] = row.quote

    rows: list[SnapshotRow] = []
    for entry in entries:
        result = results.get(entry.code)
        if isinstance(result, Quote) and result.code == entry.code:
            rows.append(SnapshotRow(entry=entry, quote=result))
            continue

        error = result if isinstance(result, FetchError) else FetchError(
            code=entry.code, kind="parse", message="missing from fetch result"
        )
        kept = last_good.get(entry.code)
        rows.append(SnapshotRow(entry=entry, quote=kept, error=error, stale=kept is not None))
    return rows


class SyncCoordinator:
    """Runs refresh cycles per category and publishes the latest sorted snapshot."""

    def __init__(
        self,
        *,
        config_store: ConfigStore,
        fetcher: QuoteFetcher,
        sort_engine: SortEngine | None = None,
        executor: ThreadPoolExecutor | None = None,
        default_interval_ms: int = 10000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config_store = config_store
        self.fetcher = fetcher
        self.sort_engine = sort_engine or SortEngine()
        self.default_interval_ms = default_interval_ms
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=len(QuoteCategory), thread_name_prefix="watchsync-refresh"
        )

        self._lock = threading.Lock()
        self._snapshots: dict[QuoteCategory, Snapshot] = {
            category: Snapshot(category=category) for category in QuoteCategory
        }
        self._inflight: dict[QuoteCategory, Future] = {}
        self._epoch = 0
        self._closed = False
        self._listeners: list[SnapshotListener] = []
        self._metrics = {
            "refresh_requests": 0,
            "coalesced": 0,
            "cycles": 0,
            "cycle_errors": 0,
            "discarded": 0,
            "rederived": 0,
            "rebuilt": 0,
        }

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, category: QuoteCategory, snapshot: Snapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(category, snapshot)
            except Exception:
                logger.exception("[SYNC][listener_error] category=%s", category.value)

    def get_snapshot(self, category: QuoteCategory) -> Snapshot:
        with self._lock:
            return self._snapshots[category]

    def read_config(self) -> CycleConfig:
        return read_cycle_config(self.config_store, self.default_interval_ms)

    def refresh(self, category: QuoteCategory) -> Future:
        """Start a refresh cycle, or join the one already in flight for ``category``."""
        with self._lock:
            self._metrics["refresh_requests"] += 1
            inflight = self._inflight.get(category)
            if inflight is not None and not inflight.done():
                self._metrics["coalesced"] += 1
                return inflight
            if self._closed:
                done: Future = Future()
                done.set_result(self._snapshots[category])
                return done
            epoch = self._epoch
            future = self._executor.submit(self._run_cycle, category, epoch)
            self._inflight[category] = future
        future.add_done_callback(lambda f, c=category: self._clear_inflight(c, f))
        return future

    def _clear_inflight(self, category: QuoteCategory, future: Future) -> None:
        with self._lock:
            if self._inflight.get(category) is future:
                self._inflight.pop(category, None)

    def _build(
        self,
        category: QuoteCategory,
        config: CycleConfig,
        rows: list[SnapshotRow],
        refreshed_at: float | None,
    ) -> Snapshot:
        mode = self.sort_engine.mode(category)
        return Snapshot(
            category=category,
            rows=tuple(sort_rows(rows, mode)),
            sort_mode=mode,
            refreshed_at=refreshed_at,
            display_items=tuple(config.display.items()),
        )

    def _swap(self, category: QuoteCategory, epoch: int, snapshot: Snapshot, base_generation: int) -> Snapshot | None:
        with self._lock:
            if self._closed or epoch != self._epoch:
                self._metrics["discarded"] += 1
                return None
            current = self._snapshots[category]
            if current.generation != base_generation:
                raise _SnapshotMoved(current.generation)
            snapshot = snapshot.model_copy(update={"generation": current.generation + 1})
            self._snapshots[category] = snapshot
            return snapshot

    def _publish(
        self,
        category: QuoteCategory,
        epoch: int,
        config: CycleConfig,
        derive_rows: Callable[[Snapshot], list[SnapshotRow]],
        refreshed_at: float | None = None,
    ) -> Snapshot | None:
        """Derive rows from the current snapshot and swap the result in, rebuilding on a lost race."""
        while True:
            base = self.get_snapshot(category)
            rows = derive_rows(base)
            stamp = refreshed_at if refreshed_at is not None else base.refreshed_at
            try:
                return self._swap(category, epoch, self._build(category, config, rows, stamp), base.generation)
            except _SnapshotMoved as exc:
                with self._lock:
                    self._metrics["rebuilt"] += 1
                logger.info(
                    "[SYNC][snapshot_moved] category=%s base_generation=%s current_generation=%s rebuilding=1",
                    category.value,
                    base.generation,
                    exc.current_generation,
                )

    def _run_cycle(self, category: QuoteCategory, epoch: int) -> Snapshot:
        try:
            config = self.read_config()
            entries = config.watch_list(category)
            results = self.fetcher.fetch_quotes([e.code for e in entries], category)
            snapshot = self._publish(
                category,
                epoch,
                config,
                lambda base: merge_rows(entries, results, base),
                self._clock(),
            )
        except Exception:
            current = self.get_snapshot(category)
            with self._lock:
                self._metrics["cycle_errors"] += 1
            logger.exception("[SYNC][refresh_error] category=%s keeping_generation=%s", category.value, current.generation)
            return current

        if snapshot is None:
            logger.info("[SYNC][refresh_discarded] category=%s reason=torn_down", category.value)
            return self.get_snapshot(category)

        with self._lock:
            self._metrics["cycles"] += 1
        logger.info(
            "[SYNC][refresh_done] category=%s generation=%s rows=%s absent=%s mode=%s",
            category.value,
            snapshot.generation,
            len(snapshot.rows),
            len(snapshot.absent_codes()),
            snapshot.sort_mode.value,
        )
        self._notify(category, snapshot)
        return snapshot

    def rederive(self, category: QuoteCategory) -> Snapshot:
        """Rebuild display order from the last snapshot without touching the network."""
        with self._lock:
            epoch = self._epoch
        config = self.read_config()

        def _reuse(base: Snapshot) -> list[SnapshotRow]:
            known = {row.code: row for row in base.rows}
            rows = []
            for entry in config.watch_list(category):
                row = known.get(entry.code)
                if row is None:
                    rows.append(SnapshotRow(entry=entry))
                else:
                    rows.append(row.model_copy(update={"entry": entry}))
            return rows

        snapshot = self._publish(category, epoch, config, _reuse)
        if snapshot is None:
            return self.get_snapshot(category)
        with self._lock:
            self._metrics["rederived"] += 1
        self._notify(category, snapshot)
        return snapshot

    def watch_list_changed(self, category: QuoteCategory) -> Snapshot:
        """Re-derive now, and again once any in-flight cycle lands with its pre-edit list."""
        with self._lock:
            inflight = self._inflight.get(category)
        snapshot = self.rederive(category)
        if inflight is not None and not inflight.done():
            inflight.add_done_callback(lambda f, c=category: self.rederive(c))
        return snapshot

    def change_order(self, category: QuoteCategory) -> Snapshot:
        mode = self.sort_engine.change_order(category)
        logger.info("[SYNC][sort_mode] category=%s mode=%s", category.value, mode.value)
        return self.rederive(category)

    def on_tick(self, category: QuoteCategory, visible: bool) -> None:
        if visible:
            self.refresh(category)
        else:
            self.rederive(category)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._epoch += 1
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def metrics(self) -> dict:
        with self._lock:
            inflight = sorted(c.value for c, f in self._inflight.items() if not f.done())
            return {**self._metrics, "inflight": inflight}
