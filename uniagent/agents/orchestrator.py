"""
Budget-bounded orchestration loop.

This module provides the plan -> act -> observe loop that:
- Hands the planner the two capabilities (discover, execute-with-payment)
- Keeps a budget ledger per run and advises a per-call ceiling
- Books only realized payment amounts
- Records an ordered execution log, returned at the end or streamed
"""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage, ToolMessage

from uniagent.agents.planner import SYSTEM_PROMPT, CapabilityCall, LangChainPlanner, Planner
from uniagent.agents.tools import (
    CapabilityName,
    DiscoverAgentsInput,
    ExecuteAgentInput,
    parse_capability_call,
)
from uniagent.core.config import Settings, settings
from uniagent.core.errors import (
    BudgetExceededError,
    DiscoveryUnavailableError,
    ErrorType,
    InvalidRequestError,
    UniAgentError,
)
from uniagent.core.payment_errors import ClassifiedError, PaymentErrorClassifier
from uniagent.schemas.agent import (
    AgentResponse,
    CapabilityDescriptor,
    DiscoveryQuery,
    PayerIdentity,
)
from uniagent.schemas.events import (
    ContentEvent,
    EndEvent,
    ErrorEvent,
    LogEvent,
    PaymentEvent,
    StartEvent,
    StreamEvent,
)
from uniagent.schemas.execution_log import ExecutionLogEntry, LogKind
from uniagent.services.budget_service import BudgetLedger
from uniagent.services.discovery_service import AgentDiscoveryService
from uniagent.services.execution_log_service import ExecutionLogRecorder
from uniagent.services.x402_service import X402PaymentClient
from uniagent.x402.signature import TypedDataSigner, create_signer
from uniagent.x402.units import format_usdc

logger = logging.getLogger(__name__)

SignerFactory = Callable[[PayerIdentity], TypedDataSigner]


class EventChannel:
    """Ordered queue of stream events with a cooperative stop signal."""

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize)
        self._stopped = asyncio.Event()
        self.ledger: BudgetLedger | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self):
        self._stopped.set()
        if self.ledger is not None:
            self.ledger.close()

    async def send(self, event: StreamEvent):
        if not self.stopped:
            await self._queue.put(event)

    def finish(self):
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self.stop()

    async def receive(self) -> StreamEvent | None:
        if self.stopped and self._queue.empty():
            return None
        return await self._queue.get()


class OrchestrationStream:
    """
    Async iterator over the events of one streaming run.

    Closing it stops the channel, closes the run's ledger and cancels the
    run, including any in-flight invocation.
    """

    def __init__(self, channel: EventChannel, task: asyncio.Task):
        self.channel = channel
        self._task = task

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self.channel.receive()
        if event is None:
            raise StopAsyncIteration
        return event

    async def aclose(self):
        self.channel.stop()
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()


@dataclass
class _RunState:
    task: str
    identity: PayerIdentity
    ledger: BudgetLedger
    recorder: ExecutionLogRecorder
    payments: X402PaymentClient
    channel: EventChannel | None = None
    candidates: list[CapabilityDescriptor] = field(default_factory=list)
    attempted: int = 0
    succeeded: int = 0
    last_error: ClassifiedError | None = None

    async def emit(self, event: StreamEvent):
        if self.channel is not None:
            await self.channel.send(event)

    def budget(self) -> dict[str, str]:
        return self.ledger.snapshot().to_context()


class AgentOrchestrator:
    """Runs budget-bounded tasks against the capability agent marketplace."""

    def __init__(
        self,
        discovery: AgentDiscoveryService,
        planner: Planner | None = None,
        signer_factory: SignerFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        app_settings: Settings | None = None,
        logger: logging.Logger | None = None,
        max_iterations: int | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            discovery: Discovery service for candidate lookup and endpoint resolution
            planner: Planning service; defaults to the LangChain chat-model planner
            signer_factory: Builds a typed-data signer for the payer identity
            http_client: Shared HTTP client for invocations
            app_settings: Settings override
            logger: Logger override
            max_iterations: Planner iteration cap
        """
        self.settings = app_settings or settings
        self.discovery = discovery
        self.planner = planner or LangChainPlanner()
        self.signer_factory = signer_factory or (lambda identity: create_signer(identity, self.settings))
        self.http_client = http_client
        self.logger = logger or logging.getLogger(__name__)
        self.max_iterations = max_iterations or self.settings.agent_max_iterations

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        task: str,
        identity: PayerIdentity | dict[str, Any],
        max_budget: Decimal | float | str,
    ) -> AgentResponse:
        """
        Run a task to completion and return the buffered result.

        Never raises: failures are returned with ``success=False`` together
        with the partial log and realized cost.
        """
        return await self._run(task, identity, max_budget, channel=None)

    def run_stream(
        self,
        task: str,
        identity: PayerIdentity | dict[str, Any],
        max_budget: Decimal | float | str,
    ) -> OrchestrationStream:
        """
        Start a run whose events are delivered incrementally.

        Must be called from a running event loop. Events arrive in emission
        order: ``start``, then ``log``/``content``/``payment``, then ``error``
        (on failure) and ``end``.
        """
        channel = EventChannel()
        producer = asyncio.create_task(self._produce(task, identity, max_budget, channel))
        return OrchestrationStream(channel, producer)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _produce(self, task, identity, max_budget, channel: EventChannel):
        try:
            await channel.send(StartEvent(data={"task": task, "maxBudget": str(max_budget)}))
            response = await self._run(task, identity, max_budget, channel)
            if not response.success:
                await channel.send(ErrorEvent(data={"error": response.error}))
            await channel.send(EndEvent(data=response.to_dict()))
        finally:
            channel.finish()

    def _validate(
        self,
        task: Any,
        identity: Any,
        max_budget: Any,
    ) -> tuple[str, PayerIdentity, Decimal]:
        if not isinstance(task, str) or not task.strip():
            raise InvalidRequestError("message is required")

        if isinstance(identity, dict):
            wallet_id = identity.get("wallet_id") or identity.get("walletId")
            wallet_address = identity.get("wallet_address") or identity.get("walletAddress")
        else:
            wallet_id = getattr(identity, "wallet_id", None)
            wallet_address = getattr(identity, "wallet_address", None)
        if not isinstance(wallet_id, str) or not wallet_id.strip():
            raise InvalidRequestError("walletId is required")
        if not isinstance(wallet_address, str) or not wallet_address.strip():
            raise InvalidRequestError("walletAddress is required")

        try:
            budget = Decimal(str(max_budget))
        except (InvalidOperation, ValueError):
            raise InvalidRequestError("maxBudget must be a positive number") from None
        if isinstance(max_budget, bool) or not budget.is_finite() or budget <= 0:
            raise InvalidRequestError("maxBudget must be a positive number")
        if budget > Decimal(str(self.settings.max_budget_usd)):
            raise InvalidRequestError(
                f"maxBudget must not exceed {self.settings.max_budget_usd} USDC",
                details={"maxBudget": str(budget)},
            )

        identity = PayerIdentity(wallet_id=wallet_id.strip(), wallet_address=wallet_address.strip())
        return task.strip(), identity, budget

    async def _run(self, task, identity, max_budget, channel: EventChannel | None) -> AgentResponse:
        async def forward(entry: ExecutionLogEntry):
            if channel is not None:
                await channel.send(LogEvent(data=entry.to_dict()))

        recorder = ExecutionLogRecorder(listener=forward, logger=self.logger)

        try:
            task, identity, budget = self._validate(task, identity, max_budget)
        except InvalidRequestError as e:
            await recorder.record(LogKind.ERROR, e.message, e.to_dict())
            return self._response(recorder, False, e.message, Decimal("0"), e.to_dict())

        ledger = BudgetLedger(budget, self.settings.budget_safety_fraction, logger=self.logger)
        if channel is not None:
            channel.ledger = ledger
        self.logger.info(f"Run started: budget {format_usdc(budget)} USDC, wallet {identity.wallet_address}")

        signer: TypedDataSigner | None = None
        payments: X402PaymentClient | None = None
        try:
            signer = self.signer_factory(identity)
            payments = X402PaymentClient(
                signer,
                http_client=self.http_client,
                app_settings=self.settings,
                logger=self.logger,
            )
            state = _RunState(task, identity, ledger, recorder, payments, channel)
            return await self._loop(state)
        except asyncio.CancelledError:
            self.logger.warning("Run cancelled")
            raise
        except Exception as e:
            self.logger.error(f"Run failed: {e}", exc_info=True)
            classified = PaymentErrorClassifier.classify_exception(e)
            await recorder.record(LogKind.ERROR, classified.message, {"type": classified.kind.value})
            return self._response(
                recorder, False, classified.message, ledger.spent,
                PaymentErrorClassifier.format_error_for_user(classified),
            )
        finally:
            ledger.close()
            if payments is not None:
                await payments.close()
            close_signer = getattr(signer, "close", None)
            if close_signer is not None:
                await close_signer()

    def _response(
        self,
        recorder: ExecutionLogRecorder,
        success: bool,
        message: str,
        total_cost: Decimal,
        error: dict[str, Any] | None = None,
    ) -> AgentResponse:
        return AgentResponse(
            success=success,
            message=message,
            execution_log=list(recorder.entries),
            total_cost=float(total_cost),
            error=error,
        )

    # ------------------------------------------------------------------
    # Planning loop
    # ------------------------------------------------------------------

    def _task_prompt(self, state: _RunState) -> str:
        budget = state.budget()
        return (
            f"## User request\n{state.task}\n\n"
            f"## Context\n"
            f"- wallet_address: {state.identity.wallet_address}\n"
            f"- max_budget: {budget['maxBudget']} USDC\n"
            f"- spent: {budget['spent']} USDC\n"
            f"- per-call ceiling: {budget['perCallCeiling']} USDC\n\n"
            f"Set execute_agent max_price no higher than the per-call ceiling. "
            f"Every tool result reports the updated budget."
        )

    async def _loop(self, state: _RunState) -> AgentResponse:
        messages: list[BaseMessage] = [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(content=self._task_prompt(state)),
        ]

        for iteration in range(1, self.max_iterations + 1):
            try:
                decision = await asyncio.wait_for(
                    self.planner.plan(messages),
                    timeout=self.settings.planner_timeout_seconds,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Planner failed: {e}")
                classified = PaymentErrorClassifier.classify_exception(e)
                message = f"Planning service failed: {classified.message}"
                await state.recorder.record(LogKind.ERROR, message, {"type": classified.kind.value})
                error = PaymentErrorClassifier.format_error_for_user(classified)
                error["error"] = message
                return self._response(state.recorder, False, message, state.ledger.spent, error)

            await state.recorder.record(
                LogKind.PLAN,
                decision.content or f"Planner selected {len(decision.calls)} capability call(s)",
                {
                    "iteration": iteration,
                    "calls": [{"name": c.name, "arguments": c.arguments} for c in decision.calls],
                },
            )
            if decision.content:
                await state.emit(ContentEvent(data={"content": decision.content}))
            messages.append(decision.message)

            if decision.is_final:
                return await self._complete(state, decision.content)

            for call in decision.calls:
                result = await self._dispatch(state, call)
                messages.append(
                    ToolMessage(content=json.dumps(result, default=str), tool_call_id=call.id)
                )

        limit_error = UniAgentError(
            f"Iteration limit of {self.max_iterations} reached before the task completed",
            details={"iterations": self.max_iterations},
            suggestion="Simplify the task or raise AGENT_MAX_ITERATIONS.",
            error_type=ErrorType.ITERATION_LIMIT,
        )
        await state.recorder.record(LogKind.ERROR, limit_error.message, limit_error.to_dict())
        return self._response(
            state.recorder, False, limit_error.message, state.ledger.spent, limit_error.to_dict()
        )

    async def _complete(self, state: _RunState, content: str) -> AgentResponse:
        total = state.ledger.spent
        if state.attempted and not state.succeeded and state.last_error is not None:
            error = PaymentErrorClassifier.format_error_for_user(state.last_error)
            await state.recorder.record(
                LogKind.COMPLETION,
                "Task ended without a successful agent invocation",
                {"totalCost": format_usdc(total), "attempts": state.attempted},
            )
            return self._response(state.recorder, False, content or state.last_error.message, total, error)

        await state.recorder.record(
            LogKind.COMPLETION,
            "Task completed",
            {"totalCost": format_usdc(total), "invocations": state.succeeded},
        )
        return self._response(state.recorder, True, content or "Task completed.", total)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def _dispatch(self, state: _RunState, call: CapabilityCall) -> dict[str, Any]:
        try:
            capability, arguments = parse_capability_call(call.name, call.arguments)
        except InvalidRequestError as e:
            await state.recorder.record(
                LogKind.ERROR, e.message, {"capability": call.name, **e.to_dict()}
            )
            return {"success": False, "error": e.to_dict(), "budget": state.budget()}

        if capability == CapabilityName.DISCOVER_AGENTS:
            return await self._discover(state, arguments)
        return await self._execute_agent(state, arguments)

    async def _discover(self, state: _RunState, arguments: DiscoverAgentsInput) -> dict[str, Any]:
        query = DiscoveryQuery(**arguments.model_dump())
        try:
            result = await self.discovery.discover(query)
        except DiscoveryUnavailableError as e:
            await state.recorder.record(LogKind.ERROR, e.message, e.to_dict())
            return {"success": False, "error": e.to_dict(), "budget": state.budget()}

        state.candidates = list(result.candidates)
        summaries = [c.to_summary() for c in result.candidates]
        await state.recorder.record(
            LogKind.DISCOVERY,
            f"Discovered {result.total} agent(s)",
            {
                "query": query.model_dump(mode="json", exclude_none=True),
                "agents": [{"name": s["name"], "price": s["price"], "rating": s["rating"]} for s in summaries],
            },
        )
        return {"success": True, "agents": summaries, "total": result.total, "budget": state.budget()}

    def _known_endpoint(self, state: _RunState, agent_url: str) -> str | None:
        target = agent_url.rstrip("/")
        for candidate in state.candidates:
            keys = {candidate.id, candidate.service_url.rstrip("/")}
            if candidate.invocation_endpoint:
                keys.add(candidate.invocation_endpoint.rstrip("/"))
            if target in keys and candidate.invocation_endpoint:
                return candidate.invocation_endpoint
        return None

    async def _execute_agent(self, state: _RunState, arguments: ExecuteAgentInput) -> dict[str, Any]:
        ceiling = state.ledger.call_ceiling()
        if ceiling <= 0:
            error = BudgetExceededError(
                "Remaining budget is exhausted",
                details={"remaining": format_usdc(state.ledger.remaining)},
                suggestion="Stop and report the results gathered so far.",
            )
            state.last_error = PaymentErrorClassifier.classify_exception(error)
            await state.recorder.record(LogKind.ERROR, error.message, error.to_dict())
            return {"success": False, "error": error.to_dict(), "budget": state.budget()}

        max_price = min(arguments.max_price, ceiling)
        endpoint = self._known_endpoint(state, arguments.agent_url)
        if endpoint is None:
            endpoint, _ = await self.discovery.resolve_endpoint(arguments.agent_url)

        await state.recorder.record(
            LogKind.INVOCATION,
            f"Invoking agent at {endpoint}",
            {
                "agentUrl": arguments.agent_url,
                "endpoint": endpoint,
                "task": arguments.task,
                "maxPrice": format_usdc(max_price),
                "requestedMaxPrice": format_usdc(arguments.max_price),
            },
        )
        state.attempted += 1
        outcome = await state.payments.execute(endpoint, arguments.task, max_price, budget_guard=state.ledger)

        if not outcome.success:
            error = outcome.error or PaymentErrorClassifier.classify_reason(None)
            state.last_error = error
            await state.recorder.record(
                LogKind.ERROR,
                error.message,
                {
                    "type": error.kind.value,
                    "suggestion": error.suggestion,
                    "state": outcome.state.value,
                    "states": [s.value for s in outcome.states],
                    "endpoint": endpoint,
                },
            )
            return {
                "success": False,
                "error": PaymentErrorClassifier.format_error_for_user(error),
                "budget": state.budget(),
            }

        if outcome.reservation is not None:
            await state.ledger.commit(outcome.reservation, outcome.amount_paid)
        state.succeeded += 1

        if outcome.paid:
            payment = {
                "amount": format_usdc(outcome.amount_paid),
                "payTo": outcome.authorization.to,
                "network": outcome.requirement.network if outcome.requirement else None,
                "transactionHash": outcome.transaction_hash,
                "spent": format_usdc(state.ledger.spent),
            }
            await state.recorder.record(
                LogKind.PAYMENT,
                f"Paid {payment['amount']} USDC to {payment['payTo']}",
                payment,
            )
            await state.emit(PaymentEvent(data=payment))

        return {
            "success": True,
            "result": outcome.result,
            "paymentAmount": float(outcome.amount_paid),
            "transactionHash": outcome.transaction_hash,
            "budget": state.budget(),
        }
