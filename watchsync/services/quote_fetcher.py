from __future__ import annotations

import concurrent.futures
import itertools
import logging
import threading
import time
from typing import Callable, Iterable

from watchsync.errors import NetworkError, ParseError, RateLimitError, WatchSyncError
from watchsync.integrations.eastmoney import EastmoneyFundClient
from watchsync.integrations.sina import SinaQuoteClient, normalize_stock
from watchsync.schemas.quote import FetchError, Quote, QuoteCategory, SuggestionEntry

logger = logging.getLogger(__name__)

FetchResult = dict[str, Quote | FetchError]


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, RateLimitError):
        return "rate_limit"
    if isinstance(exc, ParseError):
        return "parse"
    return "network"


def _fetch_error(code: str, exc: Exception) -> FetchError:
    return FetchError(code=code, kind=_error_kind(exc), message=str(exc) or exc.__class__.__name__)


def unique_codes(codes: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for code in codes:
        value = str(code).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


class SearchToken:
    """Handle for one pending suggestion search; a newer search cancels it."""

    def __init__(self, token_id: int, query: str) -> None:
        self.token_id = token_id
        self.query = query
        self.cancelled = False


class QuoteFetcher:
    """Batched quote retrieval with per-code isolation plus cached suggestion search."""

    def __init__(
        self,
        *,
        stock_client: SinaQuoteClient,
        fund_client: EastmoneyFundClient,
        max_batch_size: int = 50,
        max_fund_workers: int = 6,
        suggest_ttl_sec: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stock_client = stock_client
        self.fund_client = fund_client
        self.max_batch_size = max(1, max_batch_size)
        self.max_fund_workers = max(1, max_fund_workers)
        self.suggest_ttl_sec = suggest_ttl_sec
        self._clock = clock

        self._lock = threading.Lock()
        self._suggest_cache: dict[tuple[QuoteCategory, str], tuple[float, list[SuggestionEntry]]] = {}
        self._token_ids = itertools.count(1)
        self._pending: dict[QuoteCategory, SearchToken] = {}

        self._metrics = {
            "batches": 0,
            "requests": 0,
            "ok_count": 0,
            "failed_count": 0,
            "rate_limited": 0,
            "suggest_hits": 0,
            "suggest_misses": 0,
            "suggest_discarded": 0,
        }

    def _count(self, **deltas: int) -> None:
        with self._lock:
            for name, delta in deltas.items():
                self._metrics[name] += delta

    def _chunks(self, codes: list[str]) -> Iterable[list[str]]:
        for start in range(0, len(codes), self.max_batch_size):
            yield codes[start : start + self.max_batch_size]

    def _fetch_stocks(self, codes: list[str]) -> FetchResult:
        out: FetchResult = {}
        fetched_at = time.strftime("%Y-%m-%d %H:%M:%S")
        for chunk in self._chunks(codes):
            self._count(requests=1)
            try:
                raw = self.stock_client.fetch_raw(chunk)
            except WatchSyncError as exc:
                for code in chunk:
                    out[code] = _fetch_error(code, exc)
                continue
            except Exception as exc:
                logger.warning("[QUOTE][stock_batch_error] codes=%s error=%s", ",".join(chunk), exc)
                for code in chunk:
                    out[code] = _fetch_error(code, NetworkError(str(exc)))
                continue

            for code in chunk:
                if code not in raw:
                    out[code] = _fetch_error(code, ParseError(f"no line for {code} in response"))
                    continue
                try:
                    out[code] = normalize_stock(code, raw[code], fetched_at=fetched_at)
                except ParseError as exc:
                    out[code] = _fetch_error(code, exc)
        return out

    def _fetch_fund(self, code: str) -> Quote | FetchError:
        self._count(requests=1)
        try:
            return self.fund_client.get_quote(code)
        except WatchSyncError as exc:
            return _fetch_error(code, exc)
        except Exception as exc:
            logger.warning("[QUOTE][fund_error] code=%s error=%s", code, exc)
            return _fetch_error(code, NetworkError(str(exc)))

    def _fetch_funds(self, codes: list[str]) -> FetchResult:
        # fundgz has no batch endpoint; codes resolve in parallel
        workers = min(self.max_fund_workers, len(codes))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="watchsync-fund") as ex:
            return dict(zip(codes, ex.map(self._fetch_fund, codes)))

    def fetch_quotes(self, codes: Iterable[str], category: QuoteCategory) -> FetchResult:
        targets = unique_codes(codes)
        if not targets:
            return {}

        self._count(batches=1)
        if category == QuoteCategory.STOCK:
            out = self._fetch_stocks(targets)
        else:
            out = self._fetch_funds(targets)

        failed = [code for code, row in out.items() if isinstance(row, FetchError)]
        limited = sum(1 for code in failed if out[code].kind == "rate_limit")
        self._count(ok_count=len(out) - len(failed), failed_count=len(failed), rate_limited=limited)

        logger.info(
            "[QUOTE][batch_resolve] category=%s target_count=%s ok_count=%s failed_count=%s rate_limited=%s",
            category.value,
            len(targets),
            len(out) - len(failed),
            len(failed),
            limited,
        )
        if failed:
            logger.debug("[QUOTE][batch_failed_codes] category=%s codes=%s", category.value, ",".join(failed))
        return out

    def _prune_expired_suggestions(self, now: float) -> None:
        expired = [key for key, (until, _) in self._suggest_cache.items() if until <= now]
        for key in expired:
            self._suggest_cache.pop(key, None)

    def begin_search(self, query: str, category: QuoteCategory) -> SearchToken:
        with self._lock:
            previous = self._pending.get(category)
            if previous is not None:
                previous.cancelled = True
            token = SearchToken(next(self._token_ids), query)
            self._pending[category] = token
            return token

    def _finish_search(self, token: SearchToken, category: QuoteCategory) -> bool:
        with self._lock:
            if self._pending.get(category) is token:
                self._pending.pop(category, None)
            if token.cancelled:
                self._metrics["suggest_discarded"] += 1
                return False
            return True

    def _lookup_suggestions(self, query: str, category: QuoteCategory) -> list[SuggestionEntry]:
        key = (category, query)
        now = self._clock()
        with self._lock:
            self._prune_expired_suggestions(now)
            cached = self._suggest_cache.get(key)
            if cached is not None:
                self._metrics["suggest_hits"] += 1
                return list(cached[1])
            self._metrics["suggest_misses"] += 1

        client = self.stock_client if category == QuoteCategory.STOCK else self.fund_client
        try:
            rows = client.search(query)
        except WatchSyncError as exc:
            logger.warning("[SUGGEST][lookup_failed] category=%s query=%r error=%s", category.value, query, exc)
            return []

        with self._lock:
            self._suggest_cache[key] = (self._clock() + self.suggest_ttl_sec, list(rows))
        return rows

    def search_suggestions(self, query: str, category: QuoteCategory = QuoteCategory.STOCK) -> list[SuggestionEntry]:
        """Search tickers; a result superseded by a newer search is discarded and ``[]`` returned."""
        value = (query or "").strip()
        token = self.begin_search(value, category)
        if not value:
            self._finish_search(token, category)
            return []

        rows = self._lookup_suggestions(value, category)
        if not self._finish_search(token, category):
            logger.debug("[SUGGEST][discard] category=%s query=%r superseded=1", category.value, value)
            return []
        return rows

    def metrics(self) -> dict[str, int]:
        with self._lock:
            return dict(self._metrics)
