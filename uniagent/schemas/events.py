"""
Stream event schemas.

Defines the typed events delivered, in emission order, to the consumer of a
streaming orchestration run, and their server-sent-events rendering.
"""
import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class StreamEvent(BaseModel):
    """Base stream event structure."""
    type: str = Field(..., description="Event type")
    data: dict[str, Any] = Field(default_factory=dict, description="Event data")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Event timestamp"
    )

    def to_sse(self) -> str:
        """Render as one SSE message."""
        body = {"type": self.type, **self.model_dump(mode="json")["data"]}
        body["timestamp"] = self.timestamp.isoformat()
        return f"data: {json.dumps(body)}\n\n"


class StartEvent(StreamEvent):
    """Run accepted; carries the task and budget."""
    type: str = "start"


class LogEvent(StreamEvent):
    """A new execution log entry."""
    type: str = "log"


class ContentEvent(StreamEvent):
    """Natural-language output from the planner."""
    type: str = "content"


class PaymentEvent(StreamEvent):
    """A settled payment and the ledger state after booking it."""
    type: str = "payment"


class EndEvent(StreamEvent):
    """Run finished; carries the final response."""
    type: str = "end"


class ErrorEvent(StreamEvent):
    """Run failed; carries the classified error."""
    type: str = "error"
