from __future__ import annotations

import random
from typing import Any, Dict, Optional

import requests

from watchsync.errors import NetworkError, RateLimitError

_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36 Edg/123.0.2420.81",
)

# 456 is what hq.sinajs.cn answers with when it blocks a client.
RATE_LIMIT_STATUS_CODES = {429, 456}


def rand_headers(referer: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "User-Agent": random.choice(_USER_AGENTS),
        "Accept": "*/*",
        "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    }
    if referer:
        headers["Referer"] = referer
    return headers


def status_code_from_error(exc: Exception) -> int | None:
    response = getattr(exc, "response", None)
    code = getattr(response, "status_code", None)
    if isinstance(code, int):
        return code
    return None


def get_text(
    session: Any,
    url: str,
    *,
    headers: Dict[str, str],
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 5,
    encoding: Optional[str] = None,
) -> str:
    """GET ``url`` and return its body, mapping failures to the sync error taxonomy."""
    try:
        response = session.get(url, headers=headers, params=params, timeout=timeout)
        response.raise_for_status()
    except Exception as exc:
        status = status_code_from_error(exc)
        if status in RATE_LIMIT_STATUS_CODES:
            raise RateLimitError(f"{url} answered {status}") from exc
        if isinstance(exc, (requests.RequestException, TimeoutError, OSError)):
            raise NetworkError(f"{url}: {exc}") from exc
        raise

    if encoding:
        return response.content.decode(encoding, errors="replace")
    return response.text
