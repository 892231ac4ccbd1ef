"""Session tailing API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from shadowlog.session_queries import compute_stats, filter_events, search_events

logger = logging.getLogger("shadowlog.api")

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _get_store(request: Request):
    store = getattr(request.app.state, "session_store", None)
    if not store:
        raise HTTPException(status_code=503, detail="Session store not initialized")
    return store


def _require_session(store, key: str):
    session = store.get_session(key)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {key} not found")
    return session


@sessions_router.get("")
async def list_sessions(
    request: Request,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
):
    """List known sessions, most recently updated first."""
    store = _get_store(request)
    sessions = store.get_sessions()
    return {
        "total": len(sessions),
        "offset": offset,
        "limit": limit,
        "items": sessions[offset:offset + limit],
    }


@sessions_router.get("/detail")
async def get_session_detail(request: Request, key: str = Query(..., min_length=1)):
    store = _get_store(request)
    session = _require_session(store, key)
    return {"session": session, "eventCount": len(store.get_events(key))}


@sessions_router.get("/events")
async def get_session_events(
    request: Request,
    key: str = Query(..., min_length=1),
    onlyMcp: bool = False,
    onlyShell: bool = False,
    onlyErrors: bool = False,
    kind: list[str] | None = Query(None),
    warm: bool = False,
    offset: int = Query(0, ge=0),
    limit: int = Query(500, ge=1, le=5000),
):
    """Return a page of a session's events in (ts, seq) order."""
    store = _get_store(request)
    _require_session(store, key)
    if warm:
        await store.warm_session(key)

    events = filter_events(
        store.get_events(key),
        only_mcp=onlyMcp,
        only_shell=onlyShell,
        only_errors=onlyErrors,
        kinds=kind,
    )
    return {
        "sessionKey": key,
        "total": len(events),
        "offset": offset,
        "items": events[offset:offset + limit],
    }


@sessions_router.get("/stats")
async def get_session_stats(request: Request, key: str = Query(..., min_length=1)):
    store = _get_store(request)
    _require_session(store, key)
    return compute_stats(store.get_events(key))


@sessions_router.get("/search")
async def search_session(
    request: Request,
    key: str = Query(..., min_length=1),
    q: str = Query(..., min_length=1),
    limit: int = Query(200, ge=1, le=1000),
):
    """Case-insensitive search over titles, details and cached translations."""
    store = _get_store(request)
    _require_session(store, key)
    matches = search_events(store.get_events(key), q, store.get_translation_cache(), limit=limit)
    return {"query": q, "count": len(matches), "items": matches}


@sessions_router.get("/calls/{call_id}")
async def get_call_pair(request: Request, call_id: str, key: str = Query(..., min_length=1)):
    store = _get_store(request)
    _require_session(store, key)
    pair = store.get_call_pair(key, call_id)
    if pair is None:
        raise HTTPException(status_code=404, detail=f"Call {call_id} not found")
    return pair


@sessions_router.post("/warm")
async def warm_session(request: Request, key: str = Query(..., min_length=1)):
    """Catch up every rollout file of a session before reading it."""
    store = _get_store(request)
    _require_session(store, key)
    outcomes = await store.warm_session(key)
    failed = [o for o in outcomes if o.error]
    if failed:
        logger.warning("Warm of %s left %d file(s) failing", key, len(failed))
    return {
        "status": "ok" if not failed else "partial",
        "appended": sum(o.appended for o in outcomes),
        "outcomes": outcomes,
    }


@sessions_router.post("/rescan")
async def rescan_sessions(request: Request):
    store = _get_store(request)
    sessions = await store.rescan_sessions()
    return {"status": "ok", "count": len(sessions)}
