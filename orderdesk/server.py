from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from .routers import router as api_router
from .services.layout_store import get_layout_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    store = get_layout_store()
    logger.info("Layout store ready at %s", store.engine.url)
    yield
    # Shutdown
    store.engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(title="Order Desk", version="1.0.0", lifespan=lifespan)
    app.include_router(api_router)

    @app.get("/favicon.ico", include_in_schema=False)
    def favicon() -> Response:
        """Return an empty response so browsers stop logging 404 errors."""

        return Response(status_code=204)

    return app


app = create_app()
