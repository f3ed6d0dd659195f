from __future__ import annotations

import re
import time
from typing import Any, Callable, Dict, Iterable, Optional

import requests

from watchsync.errors import ParseError
from watchsync.integrations.http import get_text, rand_headers
from watchsync.schemas.quote import Quote, QuoteCategory, SuggestionEntry

_LINE_RE = re.compile(r'^var\s+hq_str_([A-Za-z0-9_.$]+)="(.*)";?\s*$')
_SUGGEST_RE = re.compile(r'var\s+suggestvalue="(.*)";?', re.S)

_A_SHARE_PREFIXES = ("sh", "sz", "bj")
_HK_SUGGEST_TYPES = {"31", "33"}
_US_SUGGEST_TYPES = {"41"}


def _to_float(value: Any, *, field_name: str) -> float:
    try:
        if value is None or value == "":
            raise ValueError(f"missing value for {field_name}")
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"invalid numeric value for {field_name}: {value!r}") from exc


def _to_float_default(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def _field(parts: list[str], index: int) -> str:
    return parts[index].strip() if len(parts) > index else ""


def parse_hq_payload(text: str) -> Dict[str, list[str]]:
    """Split a hq.sinajs.cn body into ``{code: fields}``; empty payloads map to ``[]``."""
    out: Dict[str, list[str]] = {}
    for line in (text or "").splitlines():
        match = _LINE_RE.match(line.strip())
        if not match:
            continue
        body = match.group(2)
        out[match.group(1)] = body.split(",") if body else []
    return out


def _normalize_a_share(code: str, parts: list[str]) -> Dict[str, Any]:
    if len(parts) < 32:
        raise ParseError(f"short A-share payload for {code}: {len(parts)} fields")
    price = _to_float(parts[3], field_name="price")
    prev_close = _to_float(parts[2], field_name="previous_close")
    if price == 0:
        # suspended or pre-open: no trade yet, show the previous close
        price = prev_close
    change_amount = price - prev_close
    change_percent = (change_amount / prev_close * 100) if prev_close else 0.0
    return {
        "name": _field(parts, 0),
        "current_value": price,
        "open_value": _to_float_default(parts[1], prev_close),
        "previous_close_value": prev_close,
        "change_amount": change_amount,
        "change_percent": change_percent,
        "timestamp": f"{_field(parts, 30)} {_field(parts, 31)}".strip(),
    }


def _normalize_hk(code: str, parts: list[str]) -> Dict[str, Any]:
    if len(parts) < 19:
        raise ParseError(f"short HK payload for {code}: {len(parts)} fields")
    date = _field(parts, 17).replace("/", "-")
    return {
        "name": _field(parts, 1) or _field(parts, 0),
        "current_value": _to_float(parts[6], field_name="price"),
        "open_value": _to_float_default(parts[2]),
        "previous_close_value": _to_float(parts[3], field_name="previous_close"),
        "change_amount": _to_float_default(parts[7]),
        "change_percent": _to_float_default(parts[8]),
        "timestamp": f"{date} {_field(parts, 18)}".strip(),
    }


def _normalize_us(code: str, parts: list[str]) -> Dict[str, Any]:
    if len(parts) < 27:
        raise ParseError(f"short US payload for {code}: {len(parts)} fields")
    return {
        "name": _field(parts, 0),
        "current_value": _to_float(parts[1], field_name="price"),
        "change_percent": _to_float_default(parts[2]),
        "timestamp": _field(parts, 3),
        "change_amount": _to_float_default(parts[4]),
        "open_value": _to_float_default(parts[5]),
        "previous_close_value": _to_float(parts[26], field_name="previous_close"),
    }


def normalize_stock(code: str, parts: list[str], *, fetched_at: Optional[str] = None) -> Quote:
    """Map one Sina field list onto the canonical quote; layout depends on the market prefix."""
    if not parts:
        raise ParseError(f"empty payload for {code}")

    lowered = code.lower()
    if lowered.startswith(_A_SHARE_PREFIXES):
        fields = _normalize_a_share(code, parts)
    elif lowered.startswith("hk"):
        fields = _normalize_hk(code, parts)
    elif lowered.startswith(("gb_", "usr_")):
        fields = _normalize_us(code, parts)
    else:
        raise ParseError(f"unsupported market prefix for {code}")

    if not fields["timestamp"]:
        fields["timestamp"] = fetched_at or time.strftime("%Y-%m-%d %H:%M:%S")
    fields["name"] = fields["name"] or code
    return Quote(code=code, category=QuoteCategory.STOCK, source="sina", **fields)


def parse_suggestions(text: str) -> list[SuggestionEntry]:
    match = _SUGGEST_RE.search(text or "")
    if not match:
        raise ParseError("missing suggestvalue in payload")

    out: list[SuggestionEntry] = []
    seen: set[str] = set()
    for item in match.group(1).split(";"):
        parts = item.split(",")
        if len(parts) < 5:
            continue
        name, kind, short_code, full_code = parts[0], parts[1], parts[2], parts[3]
        if kind in _HK_SUGGEST_TYPES:
            code = f"hk{short_code}"
        elif kind in _US_SUGGEST_TYPES:
            code = f"gb_{short_code.lower()}"
        else:
            code = full_code
        code = code.strip()
        if not code or code in seen:
            continue
        seen.add(code)
        label = parts[4].strip() or name.strip()
        out.append(SuggestionEntry(code=code, label=f"{code} | {label}", category=QuoteCategory.STOCK))
    return out


class SinaQuoteClient:
    """Batched stock quotes and ticker search against Sina's public feeds."""

    QUOTE_URL = "https://hq.sinajs.cn/list={codes}"
    SUGGEST_URL = "https://suggest3.sinajs.cn/suggest/type=2&key={query}"
    REFERER = "https://finance.sina.com.cn/"

    def __init__(
        self,
        session: Optional[Any] = None,
        *,
        timeout: float = 5,
        header_factory: Callable[..., Dict[str, str]] = rand_headers,
    ) -> None:
        self.session = session or requests
        self.timeout = timeout
        self._header_factory = header_factory

    def fetch_raw(self, codes: Iterable[str]) -> Dict[str, list[str]]:
        joined = ",".join(codes)
        text = get_text(
            self.session,
            self.QUOTE_URL.format(codes=joined),
            headers=self._header_factory(referer=self.REFERER),
            timeout=self.timeout,
            encoding="gbk",
        )
        return parse_hq_payload(text)

    def search(self, query: str) -> list[SuggestionEntry]:
        text = get_text(
            self.session,
            self.SUGGEST_URL.format(query=requests.utils.quote(query)),
            headers=self._header_factory(referer=self.REFERER),
            timeout=self.timeout,
            encoding="gbk",
        )
        return parse_suggestions(text)
