"""FastAPI entrypoint for the room relay bot."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from roomrelay.api.v1.router import api_router
from roomrelay.core.logging import configure_logging
from roomrelay.core.runtime import build_runtime
from roomrelay.core.settings import get_settings

settings = get_settings()
configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.runtime = await build_runtime(settings)
    try:
        yield
    finally:
        await app.state.runtime.close()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)


@app.get("/")
async def health_check() -> dict[str, str]:
    """Simple health endpoint to validate service status."""
    return {"status": "ok", "message": "Room relay backend is running"}


# Mount API v1 routes under /api/v1.
app.include_router(api_router, prefix="/api/v1")
