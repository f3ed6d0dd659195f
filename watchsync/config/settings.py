import os
from functools import lru_cache

from pydantic import BaseModel


def _split_codes(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [s.strip() for s in raw.split(",") if s.strip()]


class Settings(BaseModel):
    WATCHSYNC_INTERVAL_MS: int = 10000
    WATCHSYNC_MIN_INTERVAL_MS: int = 3000
    WATCHSYNC_EXCHANGE_TZ: str = "Asia/Shanghai"
    WATCHSYNC_HTTP_TIMEOUT_SEC: float = 5.0
    WATCHSYNC_SUGGEST_TTL_SEC: float = 8.0
    WATCHSYNC_FUNDS: list[str] = []
    WATCHSYNC_STOCKS: list[str] = []
    WATCHSYNC_LOG_LEVEL: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {
            "WATCHSYNC_INTERVAL_MS": os.getenv("WATCHSYNC_INTERVAL_MS"),
            "WATCHSYNC_MIN_INTERVAL_MS": os.getenv("WATCHSYNC_MIN_INTERVAL_MS"),
            "WATCHSYNC_EXCHANGE_TZ": os.getenv("WATCHSYNC_EXCHANGE_TZ"),
            "WATCHSYNC_HTTP_TIMEOUT_SEC": os.getenv("WATCHSYNC_HTTP_TIMEOUT_SEC"),
            "WATCHSYNC_SUGGEST_TTL_SEC": os.getenv("WATCHSYNC_SUGGEST_TTL_SEC"),
            "WATCHSYNC_LOG_LEVEL": os.getenv("WATCHSYNC_LOG_LEVEL"),
        }
        values = {k: v for k, v in raw.items() if v not in (None, "")}
        values["WATCHSYNC_FUNDS"] = _split_codes(os.getenv("WATCHSYNC_FUNDS"))
        values["WATCHSYNC_STOCKS"] = _split_codes(os.getenv("WATCHSYNC_STOCKS"))
        return cls.model_validate(values)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
