from __future__ import annotations

from datetime import date
from typing import Any, Callable, Dict, Optional

import requests

from watchsync.errors import NetworkError, ParseError
from watchsync.integrations.http import rand_headers, status_code_from_error

HOLIDAY_TYPE = 2


class HolidayCalendarClient:
    """Chinese public-holiday lookup (timor.tech holiday API)."""

    URL = "https://timor.tech/api/holiday/info/{day}"

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

    def is_holiday(self, day: date) -> bool:
        try:
            response = self.session.get(
                self.URL.format(day=day.isoformat()),
                headers=self._header_factory(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except Exception as exc:
            raise NetworkError(f"holiday lookup failed: {exc} status={status_code_from_error(exc)}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError("holiday payload is not JSON") from exc
        if not isinstance(payload, dict) or payload.get("code") != 0:
            raise ParseError(f"holiday lookup rejected: {payload!r}")

        day_type = payload.get("type")
        if not isinstance(day_type, dict) or "type" not in day_type:
            raise ParseError("holiday payload missing type")
        return int(day_type["type"]) == HOLIDAY_TYPE
