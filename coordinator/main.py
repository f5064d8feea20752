"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coordinator.config import settings
from coordinator.errors import CoordinatorError
from coordinator.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from coordinator.routers import accounts, agreements, requests, transfers
from coordinator.services.coordinator import build_coordinator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: release pooled connections on shutdown."""
    yield

    from coordinator.database import engine
    from coordinator.redis import redis_pool

    await engine.dispose()
    await redis_pool.aclose()
    logger.info("Coordinator shut down")


app = FastAPI(
    title="Oracle Coordinator",
    description="Service agreements, oracle request aggregation and payment settlement",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.coordinator = build_coordinator()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (order matters: outermost first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware)


@app.exception_handler(CoordinatorError)
async def coordinator_error_handler(request: Request, exc: CoordinatorError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "category": exc.category},
    )


app.include_router(agreements.router)
app.include_router(requests.router)
app.include_router(accounts.router)
app.include_router(transfers.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
