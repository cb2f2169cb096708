"""
API module containing FastAPI routes and endpoints.

This module provides the main API router that includes all sub-routers.
"""

from fastapi import APIRouter

from uniagent.api.routes import agent

router = APIRouter()

router.include_router(agent.router, prefix="/agent", tags=["Agent"])

__all__ = ["router"]
