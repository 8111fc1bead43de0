# Run from project root: uvicorn ragchat.main:app --reload

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ragchat.api.routes import router
from ragchat.mcp.server import mcp_router
from ragchat.services.container import Services, build_services

logging.basicConfig(level=logging.INFO)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the app. Services are wired at startup unless injected (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        yield

    app = FastAPI(title="ragchat: retrieval-augmented chat backend", lifespan=lifespan)
    app.state.services = services
    app.include_router(router)
    app.include_router(mcp_router, prefix="/mcp")
    return app


app = create_app()
