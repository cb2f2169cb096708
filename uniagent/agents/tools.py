"""
Capabilities exposed to the planner.

The set is closed: the planner may only select one of these by name, with
arguments validated against the matching input model.
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from uniagent.core.errors import InvalidRequestError

logger = logging.getLogger(__name__)


class CapabilityName(str, Enum):
    """Names of the callable capabilities."""

    DISCOVER_AGENTS = "discover_agents"
    EXECUTE_AGENT = "execute_agent"


class DiscoverAgentsInput(BaseModel):
    """Input schema for agent discovery."""

    category: str | None = Field(None, description="Agent category, e.g. 'travel'")
    skill_name: str | None = Field(None, description="Substring of a skill name or description")
    max_price: Decimal | None = Field(None, ge=0, description="Maximum price per call in USDC")
    min_rating: float | None = Field(None, ge=0, le=5, description="Minimum average rating (0-5)")


class ExecuteAgentInput(BaseModel):
    """Input schema for paid agent execution."""

    agent_url: str = Field(..., min_length=1, description="Agent base URL or endpoint from discover_agents")
    task: str = Field(..., min_length=1, description="Task to send to the agent")
    max_price: Decimal = Field(..., gt=0, description="Maximum price in USDC for this call")


CAPABILITY_INPUTS: dict[CapabilityName, type[BaseModel]] = {
    CapabilityName.DISCOVER_AGENTS: DiscoverAgentsInput,
    CapabilityName.EXECUTE_AGENT: ExecuteAgentInput,
}

CAPABILITY_DESCRIPTIONS: dict[CapabilityName, str] = {
    CapabilityName.DISCOVER_AGENTS: (
        "Search the on-chain agent marketplace. Filter by category, skill, "
        "maximum price per call (USDC) and minimum rating. Returns agents sorted "
        "by rating with their price and invocation endpoint."
    ),
    CapabilityName.EXECUTE_AGENT: (
        "Send a task to an external agent found with discover_agents. If the "
        "agent requires payment (HTTP 402) it is paid automatically in USDC, up "
        "to max_price. Payments settle on-chain and cannot be undone. Returns the "
        "agent's result, the amount paid and the remaining budget."
    ),
}


def capability_tool_specs() -> list[dict[str, Any]]:
    """Tool definitions in the OpenAI function format accepted by ``bind_tools``."""
    specs = []
    for name, model in CAPABILITY_INPUTS.items():
        parameters = model.model_json_schema()
        parameters.pop("title", None)
        specs.append({
            "type": "function",
            "function": {
                "name": name.value,
                "description": CAPABILITY_DESCRIPTIONS[name],
                "parameters": parameters,
            },
        })
    return specs


def parse_capability_call(name: str, arguments: dict[str, Any] | None) -> tuple[CapabilityName, BaseModel]:
    """
    Resolve a planner tool call against the closed capability set.

    Raises:
        InvalidRequestError: Unknown capability or invalid arguments
    """
    try:
        capability = CapabilityName(name)
    except ValueError:
        raise InvalidRequestError(
            f"Unknown capability '{name}'",
            details={"allowed": [c.value for c in CapabilityName]},
            suggestion="Use discover_agents or execute_agent.",
        ) from None

    try:
        return capability, CAPABILITY_INPUTS[capability].model_validate(arguments or {})
    except ValidationError as e:
        raise InvalidRequestError(
            f"Invalid arguments for {capability.value}",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
