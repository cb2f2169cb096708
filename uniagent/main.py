"""
UniAgent - budget-bounded agent orchestration with x402 micropayments.

Main FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from uniagent.api import router as api_router
from uniagent.core.config import settings
from uniagent.core.errors import (
    general_exception_handler,
    http_exception_handler,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format=settings.log_format,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler for startup and shutdown events.
    """
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Network: {settings.network_id} via {settings.rpc_url}")
    if not settings.agent_registry_address:
        logger.warning("AGENT_REGISTRY_ADDRESS is not set; agent endpoints will return 503")

    yield

    logger.info("Shutting down...")


app = FastAPI(
    title=settings.app_name,
    description="""
## Budget-bounded agent orchestration

UniAgent discovers capability agents on an on-chain registry, invokes them and
pays per call with USDC through the x402 (HTTP 402) protocol, never exceeding
the caller's budget.
    """,
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global exception handlers
app.add_exception_handler(Exception, general_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)


@app.get(
    "/health",
    tags=["Health"],
    summary="Health check",
)
async def health_check() -> dict[str, Any]:
    """Check application health status."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


app.include_router(api_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "uniagent.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
