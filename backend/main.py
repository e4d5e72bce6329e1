import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import maintenance_router
from config import setup_logging
from db import close_sqlite_client, get_sqlite_client
from runtime_state import runtime_state

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(runtime_state.config)
    logger.info("Memory flywheel API starting...")

    try:
        sqlite_client = get_sqlite_client()
        await sqlite_client.init_db()
        await runtime_state.ensure_started(get_sqlite_client)
        logger.info("SQLite database initialized.")
    except Exception as e:
        logger.exception("Failed to initialize SQLite")
        raise RuntimeError("Failed to initialize SQLite during startup") from e

    yield

    logger.info("Draining background work and closing database connections...")
    await runtime_state.shutdown()
    await close_sqlite_client()


app = FastAPI(
    title="Memory Flywheel API",
    description="Memory pipeline and nudge engine for the coaching app",
    version="0.3.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Memory Flywheel API",
        "version": "0.3.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    try:
        runtime = await runtime_state.status()
        payload["runtime"] = runtime
        queue = runtime.get("worker", {}).get("queue") or {}
        if queue.get("terminal_failed"):
            payload["status"] = "degraded"
            payload["reason"] = "terminal_failed_jobs"
    except Exception as e:
        payload["status"] = "degraded"
        payload["runtime"] = {"degraded": True, "reason": str(e)}
    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
