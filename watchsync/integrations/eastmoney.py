from __future__ import annotations

import json
import re
import time
from typing import Any, Callable, Dict, Optional

import requests

from watchsync.errors import ParseError
from watchsync.integrations.http import get_text, rand_headers
from watchsync.schemas.quote import Quote, QuoteCategory, SuggestionEntry

_JSONP_RE = re.compile(r"^\s*jsonpgz\s*\((.*)\)\s*;?\s*$", re.S)
_FUND_INDEX_RE = re.compile(r"var\s+r\s*=\s*(\[.*\])\s*;?\s*$", re.S)


def _to_float(value: Any, *, field_name: str) -> float:
    try:
        if value is None or value == "":
            raise ValueError(f"missing value for {field_name}")
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"invalid numeric value for {field_name}: {value!r}") from exc


def parse_fundgz_jsonp(code: str, text: str) -> Quote:
    """Strip the ``jsonpgz(...)`` wrapper and map the valuation fields."""
    match = _JSONP_RE.match(text or "")
    if not match:
        raise ParseError(f"unexpected fund payload for {code}")
    body = match.group(1).strip()
    if not body:
        raise ParseError(f"no valuation published for {code}")
    try:
        raw = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid fund JSON for {code}") from exc
    if not isinstance(raw, dict):
        raise ParseError(f"fund payload for {code} is not an object")

    fund_code = str(raw.get("fundcode") or "").strip()
    if fund_code and fund_code != code:
        raise ParseError(f"fund payload code mismatch: asked {code}, got {fund_code}")

    nav = _to_float(raw.get("dwjz"), field_name="dwjz")
    estimate_raw = raw.get("gsz")
    estimate = _to_float(estimate_raw, field_name="gsz") if estimate_raw not in (None, "") else nav
    change_percent_raw = raw.get("gszzl")
    if change_percent_raw in (None, ""):
        change_percent = ((estimate - nav) / nav * 100) if nav else 0.0
    else:
        change_percent = _to_float(change_percent_raw, field_name="gszzl")

    timestamp = str(raw.get("gztime") or "").strip()
    if not timestamp:
        nav_date = str(raw.get("jzrq") or "").strip()
        timestamp = f"{nav_date} 15:00" if nav_date else time.strftime("%Y-%m-%d %H:%M")

    return Quote(
        code=code,
        name=str(raw.get("name") or code).strip() or code,
        category=QuoteCategory.FUND,
        current_value=estimate,
        change_percent=change_percent,
        change_amount=estimate - nav,
        open_value=nav,
        previous_close_value=nav,
        timestamp=timestamp,
        source="eastmoney",
    )


def parse_fund_index(text: str) -> list[list[str]]:
    match = _FUND_INDEX_RE.search((text or "").strip().lstrip("\ufeff"))
    if not match:
        raise ParseError("missing fund index array")
    try:
        rows = json.loads(match.group(1))
    except json.JSONDecodeError as exc:
        raise ParseError("invalid fund index JSON") from exc
    return [row for row in rows if isinstance(row, list) and len(row) >= 3]


def filter_fund_index(rows: list[list[str]], query: str, limit: int = 20) -> list[SuggestionEntry]:
    needle = query.strip().upper()
    if not needle:
        return []
    out: list[SuggestionEntry] = []
    for row in rows:
        code, abbr, name = str(row[0]), str(row[1]), str(row[2])
        kind = str(row[3]) if len(row) > 3 else ""
        pinyin = str(row[4]) if len(row) > 4 else ""
        if (
            code.startswith(needle)
            or abbr.upper().startswith(needle)
            or pinyin.upper().startswith(needle)
            or needle in name.upper()
        ):
            label = f"{code} | {name}" + (f" | {kind}" if kind else "")
            out.append(SuggestionEntry(code=code, label=label, category=QuoteCategory.FUND))
            if len(out) >= limit:
                break
    return out


class EastmoneyFundClient:
    """Fund valuation estimates and the fund code index from Eastmoney."""

    VALUATION_URL = "https://fundgz.1234567.com.cn/js/{code}.js"
    INDEX_URL = "https://fund.eastmoney.com/js/fundcode_search.js"

    def __init__(
        self,
        session: Optional[Any] = None,
        *,
        timeout: float = 5,
        header_factory: Callable[..., Dict[str, str]] = rand_headers,
        index_ttl_sec: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session or requests
        self.timeout = timeout
        self._header_factory = header_factory
        self.index_ttl_sec = index_ttl_sec
        self._clock = clock
        self._index: list[list[str]] | None = None
        self._index_loaded_at = 0.0

    def get_quote(self, code: str) -> Quote:
        text = get_text(
            self.session,
            self.VALUATION_URL.format(code=code),
            headers=self._header_factory(referer=f"https://fund.eastmoney.com/{code}.html"),
            # cache-buster, the valuation endpoint is aggressively cached upstream
            params={"rt": int(time.time() * 1000)},
            timeout=self.timeout,
        )
        return parse_fundgz_jsonp(code, text)

    def fund_index(self) -> list[list[str]]:
        now = self._clock()
        if self._index is not None and now - self._index_loaded_at < self.index_ttl_sec:
            return self._index
        text = get_text(
            self.session,
            self.INDEX_URL,
            headers=self._header_factory(referer="https://fund.eastmoney.com/"),
            timeout=self.timeout,
            encoding="utf-8",
        )
        self._index = parse_fund_index(text)
        self._index_loaded_at = now
        return self._index

    def search(self, query: str) -> list[SuggestionEntry]:
        return filter_fund_index(self.fund_index(), query)
