import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor

from watchsync.config.store import InMemoryConfigStore
from watchsync.schemas.quote import FetchError, Quote, QuoteCategory
from watchsync.schemas.watchlist import SortMode
from watchsync.services.scheduler import PollScheduler
from watchsync.services.sort_engine import SortEngine
from watchsync.services.sync_coordinator import SyncCoordinator


def quote(code, change_percent=0.0, category=QuoteCategory.FUND):
    return Quote(
        code=code,
        name=f"name-{code}",
        category=category,
        current_value=1.0,
        change_percent=change_percent,
        change_amount=0.01,
        open_value=1.0,
        previous_close_value=1.0,
        timestamp="2026-01-05 14:30",
        source="test",
    )


class StubFetcher:
    def __init__(self, changes=None):
        self.changes = changes or {}
        self.failing = set()
        self.calls = []
        self.gate = None
        self.entered = threading.Event()

    def fetch_quotes(self, codes, category):
        self.calls.append((list(codes), category))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(2.0)
        out = {}
        for code in codes:
            if code in self.failing:
                out[code] = FetchError(code=code, kind="network", message="timeout")
            else:
                out[code] = quote(code, self.changes.get(code, 0.0), category)
        return out

    def search_suggestions(self, query, category=QuoteCategory.STOCK):
        return []

    def metrics(self):
        return {}


class SyncCoordinatorTest(unittest.TestCase):
    def _coordinator(self, store_values=None, fetcher=None, sort_engine=None):
        store = InMemoryConfigStore(store_values or {"funds": ["161725", "000001"]})
        fetcher = fetcher or StubFetcher()
        executor = ThreadPoolExecutor(max_workers=2)
        self.addCleanup(executor.shutdown, wait=True)
        coordinator = SyncCoordinator(
            config_store=store,
            fetcher=fetcher,
            sort_engine=sort_engine,
            executor=executor,
            clock=lambda: 1_767_600_000.0,
        )
        return store, fetcher, coordinator

    def test_round_trip_returns_every_listed_code(self):
        _, _, coordinator = self._coordinator()

        snapshot = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        self.assertEqual(sorted(snapshot.codes()), ["000001", "161725"])
        self.assertEqual(snapshot.absent_codes(), [])
        self.assertEqual(snapshot.generation, 1)
        self.assertEqual(snapshot.refreshed_at, 1_767_600_000.0)

    def test_concurrent_refreshes_share_one_fetch(self):
        fetcher = StubFetcher()
        fetcher.gate = threading.Event()
        _, _, coordinator = self._coordinator(fetcher=fetcher)

        first = coordinator.refresh(QuoteCategory.FUND)
        self.assertTrue(fetcher.entered.wait(1.0))
        second = coordinator.refresh(QuoteCategory.FUND)
        fetcher.gate.set()

        self.assertIs(first, second)
        self.assertEqual(first.result(timeout=2), second.result(timeout=2))
        self.assertEqual(len(fetcher.calls), 1)
        self.assertEqual(coordinator.metrics()["coalesced"], 1)

    def test_refresh_after_completion_starts_new_cycle(self):
        _, fetcher, coordinator = self._coordinator()

        coordinator.refresh(QuoteCategory.FUND).result(timeout=2)
        snapshot = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        self.assertEqual(len(fetcher.calls), 2)
        self.assertEqual(snapshot.generation, 2)

    def test_pinned_entry_leads_snapshot(self):
        store = {
            "funds": [
                {"code": "161725", "pinned": False, "insertion_order": 0},
                {"code": "000001", "pinned": True, "insertion_order": 1},
            ]
        }
        _, _, coordinator = self._coordinator(store_values=store)

        snapshot = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        self.assertEqual(snapshot.codes(), ["000001", "161725"])

    def test_failed_code_keeps_last_good_quote_as_stale(self):
        _, fetcher, coordinator = self._coordinator()
        coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        fetcher.failing.add("000001")
        snapshot = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)
        row = next(r for r in snapshot.rows if r.code == "000001")

        self.assertTrue(row.stale)
        self.assertIsNotNone(row.quote)
        self.assertEqual(row.error.kind, "network")
        self.assertEqual(snapshot.absent_codes(), [])

    def test_failed_code_without_history_is_absent_and_sorted_last(self):
        fetcher = StubFetcher()
        fetcher.failing.add("161725")
        _, _, coordinator = self._coordinator(fetcher=fetcher)

        snapshot = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        self.assertEqual(snapshot.codes(), ["000001", "161725"])
        self.assertEqual(snapshot.absent_codes(), ["161725"])

    def test_change_order_resorts_without_fetching(self):
        fetcher = StubFetcher(changes={"161725": -1.0, "000001": 2.5})
        _, _, coordinator = self._coordinator(fetcher=fetcher)
        coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        snapshot = coordinator.change_order(QuoteCategory.FUND)

        self.assertEqual(snapshot.sort_mode, SortMode.CHANGE_DESC)
        self.assertEqual(snapshot.codes(), ["000001", "161725"])
        self.assertEqual(len(fetcher.calls), 1)
        self.assertEqual(coordinator.change_order(QuoteCategory.FUND).sort_mode, SortMode.NORMAL)

    def test_rederive_picks_up_watch_list_edits(self):
        store, fetcher, coordinator = self._coordinator()
        coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        store.set("funds", ["000001", "110011"])
        snapshot = coordinator.rederive(QuoteCategory.FUND)

        self.assertEqual(snapshot.codes(), ["000001", "110011"])
        self.assertEqual(snapshot.absent_codes(), ["110011"])
        self.assertEqual(len(fetcher.calls), 1)

    def test_hidden_view_tick_rederives_instead_of_fetching(self):
        _, fetcher, coordinator = self._coordinator()

        coordinator.on_tick(QuoteCategory.FUND, visible=False)

        self.assertEqual(fetcher.calls, [])
        self.assertEqual(coordinator.metrics()["rederived"], 1)

    def test_closed_market_tick_leaves_snapshot_untouched(self):
        _, fetcher, coordinator = self._coordinator()
        before = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)
        scheduler = PollScheduler(
            name="coordinator-closed",
            on_tick=lambda visible: coordinator.on_tick(QuoteCategory.FUND, visible),
            market_open_checker=lambda now=None: False,
        )

        self.assertFalse(scheduler.tick_once())

        self.assertEqual(len(fetcher.calls), 1)
        self.assertEqual(coordinator.get_snapshot(QuoteCategory.FUND), before)

    def test_result_arriving_after_close_is_discarded(self):
        fetcher = StubFetcher()
        fetcher.gate = threading.Event()
        _, _, coordinator = self._coordinator(fetcher=fetcher)
        published = []
        coordinator.subscribe(lambda category, snapshot: published.append(snapshot))

        future = coordinator.refresh(QuoteCategory.FUND)
        self.assertTrue(fetcher.entered.wait(1.0))
        coordinator.close()
        fetcher.gate.set()
        future.result(timeout=2)

        self.assertEqual(published, [])
        self.assertEqual(coordinator.get_snapshot(QuoteCategory.FUND).generation, 0)
        self.assertEqual(coordinator.metrics()["discarded"], 1)

    def test_refresh_after_close_returns_current_snapshot(self):
        _, fetcher, coordinator = self._coordinator()
        coordinator.close()

        snapshot = coordinator.refresh(QuoteCategory.FUND).result(timeout=1)

        self.assertEqual(snapshot.generation, 0)
        self.assertEqual(fetcher.calls, [])

    def test_listener_errors_do_not_break_publication(self):
        _, _, coordinator = self._coordinator()
        seen = []

        def broken(category, snapshot):
            raise RuntimeError("view gone")

        coordinator.subscribe(broken)
        unsubscribe = coordinator.subscribe(lambda category, snapshot: seen.append(snapshot.generation))
        coordinator.refresh(QuoteCategory.FUND).result(timeout=2)
        unsubscribe()
        coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        self.assertEqual(seen, [1])

    def test_fetch_exception_keeps_previous_snapshot(self):
        class ExplodingFetcher(StubFetcher):
            def fetch_quotes(self, codes, category):
                raise RuntimeError("boom")

        _, _, coordinator = self._coordinator(fetcher=ExplodingFetcher())

        snapshot = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        self.assertEqual(snapshot.generation, 0)
        self.assertEqual(coordinator.metrics()["cycle_errors"], 1)

    def test_initial_sort_mode_comes_from_engine(self):
        engine = SortEngine({QuoteCategory.STOCK: SortMode.CHANGE_ASC})
        fetcher = StubFetcher(changes={"sh600519": 3.0, "sz000001": -2.0})
        _, _, coordinator = self._coordinator(
            store_values={"stocks": ["sh600519", "sz000001"]}, fetcher=fetcher, sort_engine=engine
        )

        snapshot = coordinator.refresh(QuoteCategory.STOCK).result(timeout=2)

        self.assertEqual(snapshot.codes(), ["sz000001", "sh600519"])

    def test_rederive_racing_a_refresh_keeps_the_fresh_quotes(self):
        class GatedSortEngine(SortEngine):
            def __init__(self):
                super().__init__()
                self.gated_thread = None
                self.entered = threading.Event()
                self.release = threading.Event()

            def mode(self, category):
                if threading.current_thread() is self.gated_thread and not self.release.is_set():
                    self.entered.set()
                    self.release.wait(2.0)
                return super().mode(category)

        engine = GatedSortEngine()
        _, _, coordinator = self._coordinator(sort_engine=engine)
        hidden_tick = threading.Thread(target=coordinator.rederive, args=(QuoteCategory.FUND,))
        engine.gated_thread = hidden_tick
        hidden_tick.start()
        self.assertTrue(engine.entered.wait(1.0))

        refreshed = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)
        engine.release.set()
        hidden_tick.join(timeout=2)

        final = coordinator.get_snapshot(QuoteCategory.FUND)
        self.assertEqual(refreshed.absent_codes(), [])
        self.assertEqual(final.generation, 2)
        self.assertEqual(final.absent_codes(), [])
        self.assertEqual(coordinator.metrics()["rebuilt"], 1)

    def test_pin_during_refresh_survives_the_landing_cycle(self):
        fetcher = StubFetcher()
        fetcher.gate = threading.Event()
        store, _, coordinator = self._coordinator(fetcher=fetcher)

        future = coordinator.refresh(QuoteCategory.FUND)
        self.assertTrue(fetcher.entered.wait(1.0))
        store.set(
            "funds",
            [
                {"code": "161725", "pinned": False, "insertion_order": 0},
                {"code": "000001", "pinned": True, "insertion_order": 1},
            ],
        )
        edited = coordinator.watch_list_changed(QuoteCategory.FUND)
        fetcher.gate.set()
        future.result(timeout=2)

        deadline = time.monotonic() + 2.0
        while coordinator.get_snapshot(QuoteCategory.FUND).generation < 3 and time.monotonic() < deadline:
            time.sleep(0.01)

        final = coordinator.get_snapshot(QuoteCategory.FUND)
        self.assertEqual(edited.codes(), ["000001", "161725"])
        self.assertEqual(final.generation, 3)
        self.assertEqual(final.codes(), ["000001", "161725"])
        self.assertEqual(final.absent_codes(), [])
        self.assertEqual(len(fetcher.calls), 1)

    def test_display_preferences_cannot_be_changed_through_a_snapshot(self):
        _, _, coordinator = self._coordinator(store_values={"funds": ["161725"], "rise_color": "#f00"})
        snapshot = coordinator.refresh(QuoteCategory.FUND).result(timeout=2)

        snapshot.display["rise_color"] = "#0f0"

        self.assertEqual(coordinator.get_snapshot(QuoteCategory.FUND).display, {"rise_color": "#f00"})
        self.assertEqual(snapshot.model_dump(mode="json")["display"], {"rise_color": "#f00"})
        self.assertNotIn("display_items", snapshot.model_dump())


if __name__ == "__main__":
    unittest.main()
