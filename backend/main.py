import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import context_router, fragments_router, maintenance_router, memos_router
from db import MemoGraphError, close_sqlite_client, get_sqlite_client
from runtime_state import runtime_state

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle."""
    print("Memo Graph API starting...")

    try:
        sqlite_client = get_sqlite_client()
        await sqlite_client.init_db()
        await runtime_state.ensure_started(get_sqlite_client)
        print("SQLite database initialized.")
    except Exception as e:
        print(f"Failed to initialize SQLite: {e}")
        raise RuntimeError("Failed to initialize SQLite during startup") from e

    yield

    print("Closing database connections...")
    await runtime_state.shutdown()
    await close_sqlite_client()


app = FastAPI(
    title="Memo Graph API",
    description="Memos, fragments and retrieval context for a conversational agent",
    version="0.1.0",
    lifespan=lifespan,
)

# Development default; restrict origins in production.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memos_router)
app.include_router(fragments_router)
app.include_router(context_router)
app.include_router(maintenance_router)


@app.exception_handler(MemoGraphError)
async def memo_graph_error_handler(request: Request, exc: MemoGraphError):
    logger.error("Unhandled store error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": exc.code, "message": str(exc)},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unexpected error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "internal_error", "message": str(exc)},
    )


@app.get("/")
async def root():
    return {
        "message": "Memo Graph API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    try:
        sqlite_client = get_sqlite_client()
        payload["store"] = await sqlite_client.get_store_status()
        payload["runtime"] = {
            "embedding_worker": await runtime_state.embedding_worker.status(),
            "turn_sessions": await runtime_state.turn_sessions.status(),
        }
    except Exception as e:
        payload["status"] = "degraded"
        payload["store"] = {"degraded": True, "reason": str(e)}

    return payload


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
