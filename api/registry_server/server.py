#!/usr/bin/env python3
"""
FastAPI server for the Agrinet node registry.

Endpoints:
 - GET    /health                -> 200 with node / subscriber counts
 - GET    /api/nodes             -> FeatureCollection of nodes with `_isOnline`
 - GET    /api/nodes/stream      -> Server-Sent Events, full snapshot per write
 - GET    /api/nodes/{id}        -> single node
 - POST   /api/nodes             -> register a node (bearer token)
 - PUT    /api/nodes/{id}/ping   -> heartbeat / update (bearer token)
 - DELETE /api/nodes/{id}        -> remove a node (bearer token)

Run (development):
  uvicorn server:app --app-dir api/registry_server --host 0.0.0.0 --port 4000 --reload

Or directly: python api/registry_server/server.py (uses HOST / PORT).
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, load_dotenv_if_present
from services.registry import NodeRegistry
from utils.cors import OriginPolicy, RegistryCORSMiddleware
from utils.rate_limit import FixedWindowRateLimiter

logger = logging.getLogger("agrinet.registry")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

# Load env from repo root .env when available
load_dotenv_if_present()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    registry: NodeRegistry = app.state.registry

    # Startup: load persisted nodes (or the static seed) before serving
    await registry.bootstrap()
    if not settings.writes_enabled:
        logger.warning("REGISTRY_WRITE_TOKEN is not set; all write requests will be refused")
    logger.info("Read origins: %r, write origins: %r", app.state.read_origins, app.state.write_origins)
    # uvicorn reports the bound address itself
    logger.info("Agrinet registry server ready with %d node(s)", len(registry.store))

    yield

    # Shutdown: release stream subscribers so open connections can finish
    registry.hub.close()


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if exc.status_code == 404 and detail == "Not Found":
        detail = "Not found"
    return JSONResponse(status_code=exc.status_code, content={"error": detail}, headers=getattr(exc, "headers", None))


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Optional[Settings] = None, registry: Optional[NodeRegistry] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    registry = registry or NodeRegistry(settings)

    app = FastAPI(title="Agrinet Node Registry", lifespan=lifespan)

    app.state.settings = settings
    app.state.registry = registry
    app.state.read_origins = OriginPolicy.parse(settings.read_origins)
    app.state.write_origins = OriginPolicy.parse(settings.write_origins)
    app.state.rate_limiter = FixedWindowRateLimiter(
        window_ms=settings.rate_limit_window_ms,
        max_writes=settings.rate_limit_max_writes,
    )

    app.add_middleware(
        RegistryCORSMiddleware,
        read_policy=app.state.read_origins,
        write_policy=app.state.write_origins,
    )
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Include routers
    from routes.health import router as health_router
    from routes.nodes import router as nodes_router

    app.include_router(health_router)
    app.include_router(nodes_router)

    return app


app = create_app()


if __name__ == "__main__":
    # Simple dev server when executed directly
    import uvicorn

    logger.info(
        "Agrinet registry server listening on http://%s:%s", app.state.settings.host, app.state.settings.port
    )
    uvicorn.run(
        app,
        host=app.state.settings.host,
        port=app.state.settings.port,
        reload=False,
        timeout_graceful_shutdown=5,
    )
