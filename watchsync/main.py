from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Callable
from zoneinfo import ZoneInfo

from fastapi import FastAPI

from watchsync.api.routes import router
from watchsync.config.settings import Settings, get_settings
from watchsync.config.store import (
    WATCHLIST_KEYS,
    ConfigStore,
    InMemoryConfigStore,
    coerce_interval_ms,
)
from watchsync.errors import ConfigError
from watchsync.integrations.eastmoney import EastmoneyFundClient
from watchsync.integrations.holiday import HolidayCalendarClient
from watchsync.integrations.sina import SinaQuoteClient
from watchsync.logger import configure_logging
from watchsync.schemas.quote import QuoteCategory
from watchsync.services.market_hours import TimeGate
from watchsync.services.quote_fetcher import QuoteFetcher
from watchsync.services.scheduler import PollScheduler
from watchsync.services.sort_engine import SortEngine
from watchsync.services.sync_coordinator import SyncCoordinator
from watchsync.services.watchlist import WatchListEditor

logger = logging.getLogger(__name__)


def _seed_store(settings: Settings) -> InMemoryConfigStore:
    return InMemoryConfigStore(
        {
            "interval": settings.WATCHSYNC_INTERVAL_MS,
            WATCHLIST_KEYS[QuoteCategory.FUND]: list(settings.WATCHSYNC_FUNDS),
            WATCHLIST_KEYS[QuoteCategory.STOCK]: list(settings.WATCHSYNC_STOCKS),
        }
    )


def _on_config_change(app: FastAPI) -> Callable[[str, Any], None]:
    def _handler(key: str, value: Any) -> None:
        if key != "interval":
            return
        try:
            interval_ms = coerce_interval_ms(value)
        except ConfigError as exc:
            logger.warning("[CONFIG][invalid_interval] ignored=%r error=%s", value, exc)
            return
        for scheduler in app.state.schedulers.values():
            scheduler.reconfigure(interval_ms)

    return _handler


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    configure_logging(settings.WATCHSYNC_LOG_LEVEL.upper())

    holiday_worker = threading.Thread(
        target=app.state.time_gate.refresh_holiday_state,
        daemon=True,
        name="holiday-lookup",
    )
    holiday_worker.start()

    config = app.state.coordinator.read_config()
    for category, scheduler in app.state.schedulers.items():
        # prime the snapshot once regardless of market hours
        app.state.coordinator.refresh(category)
        scheduler.start(config.interval_ms)
    unsubscribe = app.state.config_store.subscribe(_on_config_change(app))
    logger.info("[APP][startup] interval_ms=%s", config.interval_ms)

    try:
        yield
    finally:
        unsubscribe()
        for scheduler in app.state.schedulers.values():
            scheduler.stop()
        app.state.coordinator.close()
        logger.info("[APP][shutdown]")


def create_app(
    settings: Settings | None = None,
    *,
    config_store: ConfigStore | None = None,
    fetcher: QuoteFetcher | None = None,
    time_gate: TimeGate | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    config_store = config_store or _seed_store(settings)
    timeout = settings.WATCHSYNC_HTTP_TIMEOUT_SEC

    if fetcher is None:
        fetcher = QuoteFetcher(
            stock_client=SinaQuoteClient(timeout=timeout),
            fund_client=EastmoneyFundClient(timeout=timeout),
            suggest_ttl_sec=settings.WATCHSYNC_SUGGEST_TTL_SEC,
        )
    if time_gate is None:
        time_gate = TimeGate(
            holiday_lookup=HolidayCalendarClient(timeout=timeout).is_holiday,
            tz=ZoneInfo(settings.WATCHSYNC_EXCHANGE_TZ),
        )

    sort_engine = SortEngine()
    coordinator = SyncCoordinator(
        config_store=config_store,
        fetcher=fetcher,
        sort_engine=sort_engine,
        default_interval_ms=settings.WATCHSYNC_INTERVAL_MS,
    )
    initial = coordinator.read_config()
    for category in QuoteCategory:
        sort_engine.set_mode(category, initial.sort_mode(category))

    app = FastAPI(title="Watch List Sync", version="0.1.0", lifespan=lifespan)
    app.include_router(router, prefix="/v1")

    app.state.settings = settings
    app.state.config_store = config_store
    app.state.fetcher = fetcher
    app.state.time_gate = time_gate
    app.state.coordinator = coordinator
    app.state.watchlist_editor = WatchListEditor(config_store)
    app.state.visibility = {category: True for category in QuoteCategory}
    app.state.schedulers = {
        category: PollScheduler(
            name=category.value,
            on_tick=lambda visible, c=category: coordinator.on_tick(c, visible),
            market_open_checker=time_gate.is_market_open,
            visibility=lambda c=category: app.state.visibility[c],
            min_interval_ms=settings.WATCHSYNC_MIN_INTERVAL_MS,
        )
        for category in QuoteCategory
    }
    return app


app = create_app()
