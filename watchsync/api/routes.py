from concurrent.futures import TimeoutError as FutureTimeoutError

from fastapi import APIRouter, HTTPException, Request

from watchsync.errors import ConfigError
from watchsync.schemas.quote import QuoteCategory
from watchsync.schemas.watchlist import VisibilityUpdate, WatchListAdd

router = APIRouter()

_REFRESH_WAIT_SEC = 15.0


@router.get('/snapshots/{category}')
def get_snapshot(category: QuoteCategory, request: Request):
    return request.app.state.coordinator.get_snapshot(category).model_dump(mode='json')


@router.post('/snapshots/{category}/refresh')
def refresh_snapshot(category: QuoteCategory, request: Request):
    future = request.app.state.coordinator.refresh(category)
    try:
        snapshot = future.result(timeout=_REFRESH_WAIT_SEC)
    except FutureTimeoutError as exc:
        raise HTTPException(status_code=504, detail='REFRESH_TIMEOUT') from exc
    return snapshot.model_dump(mode='json')


@router.post('/snapshots/{category}/sort')
def change_order(category: QuoteCategory, request: Request):
    snapshot = request.app.state.coordinator.change_order(category)
    return {'category': category.value, 'sort_mode': snapshot.sort_mode.value}


@router.put('/views/{category}/visibility')
def set_visibility(category: QuoteCategory, body: VisibilityUpdate, request: Request):
    request.app.state.visibility[category] = body.visible
    return {'category': category.value, 'visible': body.visible}


@router.get('/suggestions/{category}')
def search_suggestions(category: QuoteCategory, q: str, request: Request):
    rows = request.app.state.fetcher.search_suggestions(q, category)
    return [row.model_dump(mode='json') for row in rows]


@router.get('/watchlist/{category}')
def list_watchlist(category: QuoteCategory, request: Request):
    return [e.model_dump() for e in request.app.state.watchlist_editor.entries(category)]


@router.post('/watchlist/{category}')
def add_to_watchlist(category: QuoteCategory, body: WatchListAdd, request: Request):
    try:
        entry = request.app.state.watchlist_editor.add(category, body.code)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail='INVALID_CODE') from exc
    request.app.state.coordinator.watch_list_changed(category)
    request.app.state.coordinator.refresh(category)
    return entry.model_dump()


@router.delete('/watchlist/{category}/{code}')
def remove_from_watchlist(category: QuoteCategory, code: str, request: Request):
    if not request.app.state.watchlist_editor.remove(category, code):
        raise HTTPException(status_code=404, detail='code not in watch list')
    request.app.state.coordinator.watch_list_changed(category)
    return {'category': category.value, 'code': code, 'removed': True}


@router.post('/watchlist/{category}/{code}/pin')
def toggle_pin(category: QuoteCategory, code: str, request: Request):
    entry = request.app.state.watchlist_editor.toggle_pin(category, code)
    if entry is None:
        raise HTTPException(status_code=404, detail='code not in watch list')
    request.app.state.coordinator.watch_list_changed(category)
    return entry.model_dump()


@router.get('/market/status')
def market_status(request: Request):
    gate = request.app.state.time_gate
    checked_for = gate.holiday_checked_for
    return {
        'is_open': gate.is_market_open(),
        'is_holiday': gate.is_holiday(),
        'holiday_checked_for': checked_for.isoformat() if checked_for else None,
    }


@router.get('/metrics/sync')
def sync_metrics(request: Request):
    state = request.app.state
    return {
        'fetcher': state.fetcher.metrics(),
        'coordinator': state.coordinator.metrics(),
        'schedulers': {c.value: s.metrics() for c, s in state.schedulers.items()},
    }
