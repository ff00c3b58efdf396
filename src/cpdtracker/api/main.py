"""FastAPI application factory.

Run with:
    uvicorn --factory cpdtracker.api.main:create_app
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from cpdtracker.api.routes import assets, subscriptions, sync as sync_routes
from cpdtracker.services import Services, build_services


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build and return the FastAPI app."""

    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await services.aclose()

    app = FastAPI(
        title="CPD Tracker API",
        description="Local-first asset and subscription tracker with backend sync",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.include_router(assets.router, prefix="/assets", tags=["assets"])
    app.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app
