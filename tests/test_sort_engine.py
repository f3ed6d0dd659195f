import itertools
import unittest

from watchsync.schemas.quote import Quote, QuoteCategory
from watchsync.schemas.snapshot import SnapshotRow
from watchsync.schemas.watchlist import SortMode, WatchListEntry
from watchsync.services.sort_engine import SortEngine, sort_rows


def row(code, order, pinned=False, change=None):
    quote = None
    if change is not None:
        quote = Quote(
            code=code,
            name=code,
            category=QuoteCategory.FUND,
            current_value=1.0,
            change_percent=change,
            change_amount=0.0,
            open_value=1.0,
            previous_close_value=1.0,
            timestamp="2026-01-05 14:30",
            source="test",
        )
    return SnapshotRow(entry=WatchListEntry(code=code, pinned=pinned, insertion_order=order), quote=quote)


def codes(rows):
    return [r.code for r in rows]


class SortEngineTest(unittest.TestCase):
    def test_pinned_entry_sorts_first_in_normal_mode(self):
        rows = [row("161725", 0), row("000001", 1, pinned=True)]

        self.assertEqual(codes(sort_rows(rows, SortMode.NORMAL)), ["000001", "161725"])

    def test_normal_mode_preserves_insertion_order(self):
        rows = [row("c", 2, change=9.0), row("a", 0, change=-1.0), row("b", 1, change=3.0)]

        self.assertEqual(codes(sort_rows(rows, SortMode.NORMAL)), ["a", "b", "c"])

    def test_change_desc_orders_by_change_percent(self):
        rows = [row("a", 0, change=-1.0), row("b", 1, change=3.0), row("c", 2, change=9.0)]

        self.assertEqual(codes(sort_rows(rows, SortMode.CHANGE_DESC)), ["c", "b", "a"])
        self.assertEqual(codes(sort_rows(rows, SortMode.CHANGE_ASC)), ["a", "b", "c"])

    def test_absent_quotes_sort_last_in_every_mode(self):
        rows = [row("gone", 0), row("a", 1, change=-5.0), row("b", 2, change=2.0)]

        self.assertEqual(codes(sort_rows(rows, SortMode.NORMAL)), ["a", "b", "gone"])
        self.assertEqual(codes(sort_rows(rows, SortMode.CHANGE_DESC)), ["b", "a", "gone"])

    def test_equal_change_ties_break_on_insertion_order(self):
        rows = [row("late", 5, change=1.0), row("early", 1, change=1.0), row("mid", 3, change=1.0)]

        self.assertEqual(codes(sort_rows(rows, SortMode.CHANGE_DESC)), ["early", "mid", "late"])

    def test_pinned_precede_unpinned_for_all_permutations(self):
        base = [
            row("p1", 3, pinned=True, change=-2.0),
            row("p2", 4, pinned=True),
            row("u1", 0, change=8.0),
            row("u2", 1),
            row("u3", 2, change=0.5),
        ]
        for mode in (SortMode.NORMAL, SortMode.CHANGE_DESC):
            expected = None
            for perm in itertools.permutations(base):
                out = sort_rows(perm, mode)
                pinned_flags = [r.entry.pinned for r in out]
                self.assertEqual(pinned_flags, sorted(pinned_flags, reverse=True))
                self.assertEqual(len(out), len(base))
                if expected is None:
                    expected = codes(out)
                self.assertEqual(codes(out), expected)

    def test_sorting_is_idempotent(self):
        rows = [row("b", 1, change=2.0), row("a", 0, pinned=True), row("c", 2, change=-1.0)]
        for mode in SortMode:
            once = sort_rows(rows, mode)
            self.assertEqual(sort_rows(once, mode), once)

    def test_change_order_toggles_between_two_modes_per_category(self):
        engine = SortEngine()

        self.assertEqual(engine.change_order(QuoteCategory.STOCK), SortMode.CHANGE_DESC)
        self.assertEqual(engine.mode(QuoteCategory.FUND), SortMode.NORMAL)
        self.assertEqual(engine.change_order(QuoteCategory.STOCK), SortMode.NORMAL)

    def test_explicit_ascending_mode_toggles_back_to_normal(self):
        engine = SortEngine({QuoteCategory.FUND: SortMode.CHANGE_ASC})

        self.assertEqual(engine.change_order(QuoteCategory.FUND), SortMode.NORMAL)

    def test_engine_sort_uses_current_mode(self):
        engine = SortEngine()
        rows = [row("a", 0, change=1.0), row("b", 1, change=2.0)]

        self.assertEqual(codes(engine.sort(rows, QuoteCategory.FUND)), ["a", "b"])
        engine.change_order(QuoteCategory.FUND)
        self.assertEqual(codes(engine.sort(rows, QuoteCategory.FUND)), ["b", "a"])


if __name__ == "__main__":
    unittest.main()
