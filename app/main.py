"""
Standalone FastAPI app wiring for PRIME Memory.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

import prime_memory.config as config
from prime_memory import background
from prime_memory.db import DB, init_db
from prime_memory.embeddings import cleanup_http_client, init_http_client
from prime_memory.mcp import mcp_stream_app
from prime_memory.services import memory_embeddings
from app.routes.health import router as health_router
from app.routes.ingest import router as ingest_router
from app.routes.root import router as root_router


embedding_backfill_task = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global embedding_backfill_task
    init_db()
    if config.EMBEDDING_PROVIDER == "openai":
        init_http_client()
    if config.EMBEDDING_BACKFILL_ENABLED:
        await asyncio.to_thread(memory_embeddings._run_embedding_backfill)
        if config.EMBEDDING_BACKFILL_INTERVAL_SECONDS > 0:
            embedding_backfill_task = asyncio.create_task(memory_embeddings._embedding_backfill_loop())
    try:
        async with mcp_stream_app.lifespan(mcp_stream_app):
            yield
    finally:
        if embedding_backfill_task:
            embedding_backfill_task.cancel()
            try:
                await embedding_backfill_task
            except asyncio.CancelledError:
                pass
            embedding_backfill_task = None
        background.runner.shutdown(wait=True)
        cleanup_http_client()
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title=config.SERVICE_NAME, redirect_slashes=False, lifespan=lifespan)

app.include_router(health_router)
app.include_router(root_router)
app.include_router(ingest_router)

app.mount("/mcp", mcp_stream_app)


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=config.SERVER_HOST, port=config.SERVER_PORT)


if __name__ == "__main__":
    main()
