"""
Agent orchestration API routes.

This module provides endpoints for running a budget-bounded task, either
buffered or streamed as Server-Sent Events.
"""

import logging
from decimal import Decimal
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from uniagent.agents.orchestrator import AgentOrchestrator
from uniagent.core.errors import DiscoveryUnavailableError
from uniagent.schemas.agent import AgentRequest, AgentResponse, PayerIdentity
from uniagent.services.discovery_service import AgentDiscoveryService
from uniagent.services.registry_service import Web3AgentRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache
def _build_orchestrator() -> AgentOrchestrator:
    discovery = AgentDiscoveryService(Web3AgentRegistry())
    return AgentOrchestrator(discovery)


def get_orchestrator() -> AgentOrchestrator:
    """Dependency providing the shared orchestrator."""
    try:
        return _build_orchestrator()
    except DiscoveryUnavailableError as e:
        logger.error(f"Orchestrator unavailable: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=e.message,
        ) from e


def _identity(request: AgentRequest) -> PayerIdentity:
    return PayerIdentity(wallet_id=request.wallet_id, wallet_address=request.wallet_address)


@router.post(
    "",
    response_model=AgentResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_200_OK,
    summary="Run agent task",
    description="Run a natural-language task within a USDC budget and return the full execution log.",
)
async def run_agent(
    request: AgentRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> AgentResponse:
    """
    Run a task to completion.

    Failed runs still return 200 with ``success=false``, the partial
    execution log and the realized cost.
    """
    logger.info(f"Agent request: budget {request.max_budget} USDC, wallet {request.wallet_address}")
    return await orchestrator.run(request.message, _identity(request), Decimal(str(request.max_budget)))


@router.post(
    "/stream",
    response_class=StreamingResponse,
    summary="Run agent task with streaming",
    description="Run a task and stream execution events via Server-Sent Events.",
)
async def run_agent_stream(
    request: AgentRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """
    Run a task and stream its events.

    Events: start, log, content, payment, error, end. A client disconnect
    cancels the run and any in-flight invocation.
    """
    stream = orchestrator.run_stream(
        request.message, _identity(request), Decimal(str(request.max_budget))
    )

    async def event_generator():
        try:
            async for event in stream:
                yield event.to_sse()
        finally:
            await stream.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
