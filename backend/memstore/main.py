import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI

from . import __version__
from .api import memories_router
from .config import StoreSettings
from .store import MemoryStore, build_store

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def create_app(
    settings: Optional[StoreSettings] = None,
    store: Optional[MemoryStore] = None,
) -> FastAPI:
    """Build the API app; the store is created (or adopted) and started on startup."""
    if settings is None:
        settings = store.settings if store is not None else StoreSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = store or build_store(settings)
        try:
            await active.start()
        except Exception as e:
            logger.error("memory store failed to start: %s", e)
            raise RuntimeError("Failed to initialize memory store during startup") from e
        app.state.store = active
        logger.info("memory store started (process %s)", active.process_id)

        yield

        logger.info("closing memory store")
        app.state.store = None
        await active.close()

    app = FastAPI(
        title="Memory Store API",
        description="Versioned memory store for agent records",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = None
    app.include_router(memories_router)

    @app.get("/health")
    async def health():
        payload: Dict[str, Any] = {
            "status": "ok",
            "timestamp": _utc_iso_now(),
        }
        active = getattr(app.state, "store", None)
        if active is None:
            payload["status"] = "starting"
            return payload
        try:
            payload["store"] = await active.status()
        except Exception as e:
            payload["status"] = "degraded"
            payload["store"] = {"degraded": True, "reason": str(e)}
        return payload

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.getenv("MEMORY_LOG_LEVEL", "INFO").upper())
    uvicorn.run(
        create_app(),
        host=os.getenv("MEMORY_API_HOST", "127.0.0.1"),
        port=int(os.getenv("MEMORY_API_PORT", "8000")),
    )
