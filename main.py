"""
Main FastAPI application (entrypoint).

Responsibilities:
- Wire the release-alert components (store, registry, matcher pipeline,
  dispatcher) once at startup and inject them everywhere
- Run the stream ingest and (optionally) the poll scheduler as background tasks
- Expose subscription management, alerts-channel and health endpoints
- Register centralized exception handlers and request-id logging
"""
from typing import Optional

import uvicorn
from fastapi import FastAPI

from api import routes_admin, routes_subscriptions
from config.settings import settings
from core import singleton
from core.exception_handlers import register_exception_handlers
from core.logging import configure_logging, request_logging_middleware


def create_app(services: Optional[singleton.ServiceContainer] = None) -> FastAPI:
    """
    Build the app. When `services` is given (tests) it is used as-is and no
    background feeds are started.
    """
    app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION)
    app.state.services = services
    app.state.owns_services = False

    app.include_router(routes_admin.router, prefix="", tags=["admin"])
    app.include_router(routes_subscriptions.router, prefix="", tags=["subscriptions"])

    register_exception_handlers(app)
    app.middleware("http")(request_logging_middleware)

    @app.on_event("startup")
    async def on_startup():
        if app.state.services is None:
            app.state.services = singleton.build_services(settings)
            app.state.owns_services = True
            await singleton.start(app.state.services)

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.owns_services:
            await singleton.stop(app.state.services)

    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()

if __name__ == "__main__":
    # Run with: python main.py for local dev. For production use uvicorn directly.
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
