"""
Agent discovery and orchestration schemas.

This module defines the Pydantic schemas for capability descriptors,
discovery queries, payer identities and the agent request/response pair.
"""
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from uniagent.schemas.execution_log import ExecutionLogEntry


class AgentSkill(BaseModel):
    """A skill advertised by a capability agent."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    name: str = ""
    description: str = ""


class CapabilityDescriptor(BaseModel):
    """
    Snapshot of a discoverable capability agent.

    Merged from the on-chain registry record and the agent's own off-chain
    descriptor. Never mutated; the next discovery call supersedes it.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Registry agent id (0x-prefixed bytes32)")
    name: str
    description: str = ""
    service_url: str = Field(..., description="Base URL registered on-chain")
    invocation_endpoint: str | None = Field(None, description="Resolved invocation endpoint")
    openapi_url: str | None = None
    price: Decimal = Field(..., description="Price per call in USDC")
    rating_average: float = 0.0
    rating_count: int = 0
    category: str = ""
    skills: tuple[AgentSkill, ...] = ()
    owner: str = ""
    active: bool = True
    version: str = ""
    image_url: str | None = None

    @property
    def skill_tags(self) -> list[str]:
        """Skill names, for display and filtering."""
        return [skill.name for skill in self.skills]

    def matches_skill(self, needle: str) -> bool:
        """Case-insensitive substring match on skill name or description."""
        lowered = needle.lower()
        return any(
            lowered in skill.name.lower() or lowered in skill.description.lower()
            for skill in self.skills
        )

    def to_summary(self) -> dict[str, Any]:
        """Compact JSON-ready view handed to the planner."""
        return {
            "agentId": self.id,
            "name": self.name,
            "description": self.description,
            "url": self.service_url,
            "endpoint": self.invocation_endpoint,
            "openapi": self.openapi_url,
            "price": float(self.price),
            "rating": self.rating_average,
            "ratingCount": self.rating_count,
            "category": self.category,
            "skills": self.skill_tags,
        }


class DiscoveryQuery(BaseModel):
    """Pure filter over the registry. All fields optional."""

    category: str | None = None
    skill_name: str | None = Field(None, description="Skill name or description substring")
    max_price: Decimal | None = Field(None, ge=0, description="Maximum price per call in USDC")
    min_rating: float | None = Field(None, ge=0, le=5)


class DiscoveryResult(BaseModel):
    """Filtered and sorted discovery candidates."""

    candidates: list[CapabilityDescriptor] = Field(default_factory=list)
    total: int = 0


class PayerIdentity(BaseModel):
    """Delegated wallet the run pays from."""

    model_config = ConfigDict(frozen=True)

    wallet_id: str = Field(..., min_length=1)
    wallet_address: str = Field(..., min_length=1)


class AgentRequest(BaseModel):
    """Schema for orchestration requests."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., description="Natural language task")
    wallet_id: str = Field(..., alias="walletId", description="Delegated wallet identifier")
    wallet_address: str = Field(..., alias="walletAddress", description="Delegated wallet address")
    max_budget: float = Field(..., alias="maxBudget", gt=0, description="Maximum total spend in USDC")

    @field_validator("message", "wallet_id", "wallet_address")
    @classmethod
    def require_non_blank(cls, v: str) -> str:
        """Reject empty or whitespace-only strings."""
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class AgentResponse(BaseModel):
    """Schema for orchestration results."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(..., description="Whether the run succeeded")
    message: str = Field(..., description="Accumulated natural-language result")
    execution_log: list[ExecutionLogEntry] = Field(default_factory=list, alias="executionLog")
    total_cost: float = Field(0.0, alias="totalCost", description="Total realized cost in USDC")
    error: dict[str, Any] | None = Field(None, description="Classified error, when unsuccessful")

    def to_dict(self) -> dict[str, Any]:
        """Convert result to a JSON-ready dictionary with wire field names."""
        return self.model_dump(mode="json", by_alias=True)
