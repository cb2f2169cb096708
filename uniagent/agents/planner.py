"""
Planner adapter over a LangChain chat model.

The planner sees the conversation so far and answers either with a final
message or with capability calls drawn from the closed set in ``tools``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage

from uniagent.agents.tools import capability_tool_specs
from uniagent.utils.llm import get_llm_client

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are the UniAgent orchestration agent.
You accomplish the user's task by discovering, selecting and executing external agents from an on-chain marketplace.

## Your role
1. Understand the task and decide which kind of agent is needed
2. Search for suitable agents with the discover_agents tool
3. Choose the best agent considering price and rating
4. Run it with the execute_agent tool
5. Report the results clearly to the user

## Budget rules
- Never exceed the user's max budget
- Every execute_agent max_price must be at most the per-call ceiling reported in the budget context
- When several agents are used, keep track of the total cost
- If an agent is too expensive or fails, look for a cheaper or alternative agent instead of retrying it

## Response format
Report the final result concisely, including the agents used and what they cost."""


@dataclass
class CapabilityCall:
    """One capability invocation requested by the planner."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class PlannerDecision:
    """Planner output for one iteration."""

    message: AIMessage
    content: str = ""
    calls: list[CapabilityCall] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return not self.calls


class Planner(Protocol):
    """Opaque planning service."""

    async def plan(self, messages: list[BaseMessage]) -> PlannerDecision:
        ...


def message_text(content: Any) -> str:
    """Flatten chat content, which may be a string or a list of content blocks."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def decision_from_message(message: AIMessage) -> PlannerDecision:
    """Build a PlannerDecision from a model response."""
    calls = [
        CapabilityCall(
            id=call.get("id") or f"call_{index}",
            name=call["name"],
            arguments=call.get("args") or {},
        )
        for index, call in enumerate(message.tool_calls or [])
    ]
    return PlannerDecision(message=message, content=message_text(message.content).strip(), calls=calls)


class LangChainPlanner:
    """Planner backed by a tool-calling chat model."""

    def __init__(self, llm: BaseChatModel | None = None):
        self.llm = (llm or get_llm_client()).bind_tools(capability_tool_specs())

    async def plan(self, messages: list[BaseMessage]) -> PlannerDecision:
        response = await self.llm.ainvoke(messages)
        if not isinstance(response, AIMessage):
            response = AIMessage(content=message_text(getattr(response, "content", "")))
        decision = decision_from_message(response)
        logger.debug(f"Planner returned {len(decision.calls)} call(s)")
        return decision
