"""
Pydantic schemas for execution logs.

Log entries are append-only and ordered by their step counter.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class LogKind(str, Enum):
    """Kinds of execution log entries."""

    PLAN = "plan"
    DISCOVERY = "discovery"
    INVOCATION = "invocation"
    PAYMENT = "payment"
    ERROR = "error"
    COMPLETION = "completion"


class ExecutionLogEntry(BaseModel):
    """Schema for one execution log entry."""
    step: int = Field(..., ge=1, description="Monotonic step counter")
    kind: LogKind = Field(..., description="Entry kind")
    description: str = Field(..., description="Human-readable description")
    details: dict[str, Any] = Field(default_factory=dict, description="Structured details")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Entry timestamp"
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to a JSON-ready dictionary."""
        return self.model_dump(mode="json")
