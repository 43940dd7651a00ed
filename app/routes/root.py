"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import prime_memory.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": config.SERVICE_NAME,
        "version": config.SERVICE_VERSION,
        "description": "Long-term memory and entity store for AI assistants",
        "embedding_provider": config.EMBEDDING_PROVIDER,
        "embedding_model": config.EMBEDDING_MODEL,
        "endpoints": {
            "health": "/health",
            "health_deps": "/health/deps",
            "health_tools": "/health/tools",
            "mcp": "/mcp/",
            "ingest": {
                "email": "/ingest/email",
                "calendar": "/ingest/calendar",
                "slack": "/ingest/slack",
            },
        },
    }
