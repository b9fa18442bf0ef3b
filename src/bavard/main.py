# src/bavard/main.py
"""Main entry point for the BAVARD application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from bavard.api.v1 import (
    contacts_router,
    conversations_router,
    feed_router,
    live_router,
    media_router,
    messages_router,
    notifications_router,
    stories_router,
)
from bavard.core.settings import settings
from bavard.services.ephemeral import StoryReaper, StoryService
from bavard.services.generation import get_generation_client

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="BAVARD API",
    description="Real-time 1:1 messaging, presence and notification fan-out",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(contacts_router, prefix="/api/v1")
app.include_router(conversations_router, prefix="/api/v1")
app.include_router(messages_router, prefix="/api/v1")
app.include_router(notifications_router, prefix="/api/v1")
app.include_router(stories_router, prefix="/api/v1")
app.include_router(feed_router, prefix="/api/v1")
app.include_router(media_router, prefix="/api/v1")
app.include_router(live_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    if settings.story_reaper_enabled:
        reaper = StoryReaper(StoryService())
        await reaper.start()
        app.state.story_reaper = reaper
    else:
        app.state.story_reaper = None
    logger.info("BAVARD API started (AI generation %s)", "enabled" if settings.ai_enabled else "disabled")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    reaper: StoryReaper | None = getattr(app.state, "story_reaper", None)
    if reaper:
        await reaper.stop()
    await get_generation_client().close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": "BAVARD API",
        "version": settings.app_version,
        "description": "Real-time 1:1 messaging, presence and notification fan-out",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("bavard.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
