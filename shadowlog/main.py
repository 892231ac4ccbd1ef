"""shadowlog FastAPI app: live tailing of Codex rollout sessions."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from shadowlog import config
from shadowlog.db import connection, sqlite_migrations
from shadowlog.db.repositories import SqliteProgressRepository
from shadowlog.db.session_store import SessionStore
from shadowlog.observability import initialize as initialize_observability, shutdown as shutdown_observability
from shadowlog.routers.sessions import sessions_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("shadowlog")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("shadowlog starting up")
    initialize_observability(app)

    # 1. Progress database
    db = await connection.get_connection()
    await sqlite_migrations.run_migrations(db)

    # 2. Session store (initial scan + watcher)
    settings = config.load_store_settings()
    store = SessionStore(settings, SqliteProgressRepository(db, key=config.PERSIST_KEY))
    await store.start()
    app.state.session_store = store
    logger.info(
        "Tailing %d sessions under %s", len(store.get_sessions()), settings.codex_home
    )

    yield

    logger.info("shadowlog shutting down")
    await store.stop()
    app.state.session_store = None
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="shadowlog API",
    description="Near real-time tailing of agent rollout logs",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)


@app.get("/api/health")
def health(request: Request):
    """Health check endpoint."""
    store = getattr(request.app.state, "session_store", None)
    watcher = store.watcher if store else None
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "watcher": "running" if watcher and watcher.is_running else "stopped",
        "store": "ready" if store else "unavailable",
        "sessions": len(store.get_sessions()) if store else 0,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("shadowlog.main:app", host=config.HOST, port=config.PORT, reload=False)
