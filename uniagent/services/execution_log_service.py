"""
Execution log recording for orchestration runs.

The recorder owns the append-only entry sequence of one run and forwards each
new entry to an optional listener, which the streaming mode uses to emit log
events in order.
"""
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from uniagent.schemas.execution_log import ExecutionLogEntry, LogKind

logger = logging.getLogger(__name__)

LogListener = Callable[[ExecutionLogEntry], Awaitable[None]]


class ExecutionLogRecorder:
    """Append-only execution log for one run."""

    def __init__(
        self,
        listener: LogListener | None = None,
        logger: logging.Logger | None = None,
    ):
        self.entries: list[ExecutionLogEntry] = []
        self.listener = listener
        self.logger = logger or logging.getLogger(__name__)

    async def record(
        self,
        kind: LogKind,
        description: str,
        details: dict[str, Any] | None = None,
    ) -> ExecutionLogEntry:
        """
        Append an entry and notify the listener.

        Args:
            kind: Entry kind
            description: Human-readable description
            details: Structured, JSON-serializable details

        Returns:
            The recorded entry
        """
        entry = ExecutionLogEntry(
            step=len(self.entries) + 1,
            kind=kind,
            description=description,
            details=details or {},
        )
        self.entries.append(entry)

        log = self.logger.warning if kind == LogKind.ERROR else self.logger.info
        log(f"[{entry.step}] {kind.value}: {description}")

        if self.listener is not None:
            await self.listener(entry)
        return entry
