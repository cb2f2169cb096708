"""
Tests for the orchestration loop.

The planner is scripted, the registry is in-memory and capability agents are
httpx.MockTransport handlers, so a whole run executes without network access.
"""

import asyncio
import base64
import json
from decimal import Decimal

import httpx
import pytest
from langchain_core.messages import AIMessage, ToolMessage

from tests.conftest import TEST_ADDRESS
from uniagent.agents.orchestrator import AgentOrchestrator
from uniagent.agents.planner import decision_from_message
from uniagent.schemas.execution_log import LogKind

IDENTITY = {"walletId": "wallet-1", "walletAddress": TEST_ADDRESS}


def _call(name: str, args: dict, call_id: str = "call_1") -> AIMessage:
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id}])


def _discover(**args) -> AIMessage:
    return _call("discover_agents", args or {"category": "travel"}, "call_discover")


def _execute(agent_url: str = "https://agent1.test", max_price: float = 0.05, call_id: str = "call_exec") -> AIMessage:
    return _call(
        "execute_agent",
        {"agent_url": agent_url, "task": "Find flights to Tokyo", "max_price": max_price},
        call_id,
    )


@pytest.fixture
def build_orchestrator(signer, test_settings, discovery_factory, registry_factory, make_card):
    """Wire an orchestrator over a fake registry and a fake paid agent transport."""

    def _build(planner, transport, cards=None, **kwargs) -> AgentOrchestrator:
        registry = registry_factory(cards if cards is not None else [make_card(1, total_ratings=9, rating_count=2)])
        return AgentOrchestrator(
            discovery_factory(registry, transport),
            planner=planner,
            signer_factory=lambda identity: signer,
            http_client=httpx.AsyncClient(transport=transport),
            app_settings=test_settings,
            **kwargs,
        )

    return _build


def _tool_result(messages) -> dict:
    tool_message = messages[-1]
    assert isinstance(tool_message, ToolMessage)
    return json.loads(tool_message.content)


class TestRun:
    """Buffered runs."""

    @pytest.mark.asyncio
    async def test_discover_execute_complete(self, build_orchestrator, planner_factory, paywalled_agent, signer):
        transport, requests = paywalled_agent(amount=10000, result={"flights": ["NH7"]})
        planner = planner_factory([
            _discover(),
            _execute(),
            AIMessage(content="Found flight NH7 for 0.01 USDC."),
        ])
        orchestrator = build_orchestrator(planner, transport)

        response = await orchestrator.run("Find flights to Tokyo", IDENTITY, Decimal("1.0"))

        assert response.success is True
        assert response.message == "Found flight NH7 for 0.01 USDC."
        assert response.total_cost == 0.01
        assert response.error is None
        assert [entry.kind for entry in response.execution_log] == [
            LogKind.PLAN,
            LogKind.DISCOVERY,
            LogKind.PLAN,
            LogKind.INVOCATION,
            LogKind.PAYMENT,
            LogKind.PLAN,
            LogKind.COMPLETION,
        ]
        assert [entry.step for entry in response.execution_log] == list(range(1, 8))
        assert len(signer.calls) == 1

        discovery_result = _tool_result(planner.seen[1])
        assert discovery_result["agents"][0]["endpoint"] == "https://agent1.test/api/v1/agent"
        execution_result = _tool_result(planner.seen[2])
        assert execution_result["success"] is True
        assert execution_result["result"] == {"flights": ["NH7"]}
        assert execution_result["paymentAmount"] == 0.01
        assert execution_result["budget"]["spent"] == "0.010000"

    @pytest.mark.asyncio
    async def test_task_prompt_carries_budget_context(self, build_orchestrator, planner_factory, paywalled_agent):
        transport, _ = paywalled_agent()
        planner = planner_factory([AIMessage(content="Nothing to do.")])
        orchestrator = build_orchestrator(planner, transport)

        response = await orchestrator.run("Say hi", IDENTITY, "2")

        prompt = planner.seen[0][1].content
        assert "Say hi" in prompt
        assert "max_budget: 2 USDC" in prompt
        assert "per-call ceiling: 1.800000 USDC" in prompt
        assert response.success is True
        assert response.total_cost == 0

    @pytest.mark.asyncio
    async def test_nonces_unique_across_invocations(self, build_orchestrator, planner_factory, paywalled_agent, signer):
        transport, _ = paywalled_agent(amount=10000)
        planner = planner_factory([
            _discover(),
            _execute(call_id="a"),
            _execute(call_id="b"),
            _execute(call_id="c"),
            AIMessage(content="Done."),
        ])
        orchestrator = build_orchestrator(planner, transport)

        response = await orchestrator.run("Search three times", IDENTITY, Decimal("1.0"))

        assert response.success is True
        assert response.total_cost == 0.03
        assert len(signer.nonces) == 3
        assert len(set(signer.nonces)) == 3

    @pytest.mark.asyncio
    async def test_max_price_clamped_to_ceiling(self, build_orchestrator, planner_factory, paywalled_agent, signer):
        # Agent wants 0.095 USDC; budget 0.1 leaves a 0.09 per-call ceiling
        transport, requests = paywalled_agent(amount=95000)
        planner = planner_factory([_discover(), _execute(max_price=1.0), AIMessage(content="Could not afford it.")])
        orchestrator = build_orchestrator(planner, transport)

        response = await orchestrator.run("Find flights", IDENTITY, Decimal("0.1"))

        invocation = next(e for e in response.execution_log if e.kind == LogKind.INVOCATION)
        assert invocation.details["maxPrice"] == "0.090000"
        assert invocation.details["requestedMaxPrice"] == "1.000000"
        assert signer.calls == []
        assert response.success is False
        assert response.error["type"] == "budget_exceeded"
        assert response.total_cost == 0

    @pytest.mark.asyncio
    async def test_failed_payment_is_reported_to_planner(self, build_orchestrator, planner_factory, paywalled_agent):
        transport, _ = paywalled_agent(amount=10000, settle=False, error_reason="insufficient balance")
        planner = planner_factory([_discover(), _execute(), AIMessage(content="Payment failed.")])
        orchestrator = build_orchestrator(planner, transport)

        response = await orchestrator.run("Find flights", IDENTITY, Decimal("1.0"))

        result = _tool_result(planner.seen[2])
        assert result["success"] is False
        assert result["error"]["type"] == "insufficient_funds"
        assert result["error"]["suggestion"]
        assert response.success is False
        assert response.total_cost == 0
        assert LogKind.ERROR in [e.kind for e in response.execution_log]

    @pytest.mark.asyncio
    async def test_recovery_after_failure_succeeds(self, build_orchestrator, planner_factory, paywalled_agent, make_card):
        transport, _ = paywalled_agent(amount=10000)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "agent2.test":
                return httpx.Response(500, text="boom")
            return transport.handle_request(request)

        mixed = httpx.MockTransport(handler)
        planner = planner_factory([
            _discover(),
            _execute("https://agent2.test"),
            _execute("https://agent1.test"),
            AIMessage(content="Used the second agent."),
        ])
        orchestrator = build_orchestrator(planner, mixed, cards=[make_card(1), make_card(2)])

        response = await orchestrator.run("Find flights", IDENTITY, Decimal("1.0"))

        assert response.success is True
        assert response.total_cost == 0.01

    @pytest.mark.asyncio
    async def test_unknown_capability_is_reported(self, build_orchestrator, planner_factory, paywalled_agent):
        transport, _ = paywalled_agent()
        planner = planner_factory([
            _call("transfer_funds", {"to": "0xabc"}),
            AIMessage(content="I cannot do that."),
        ])
        orchestrator = build_orchestrator(planner, transport)

        response = await orchestrator.run("Send money", IDENTITY, Decimal("1.0"))

        result = _tool_result(planner.seen[1])
        assert result["success"] is False
        assert "Unknown capability" in result["error"]["error"]
        assert response.execution_log[1].kind == LogKind.ERROR

    @pytest.mark.asyncio
    async def test_invalid_arguments_are_reported(self, build_orchestrator, planner_factory, paywalled_agent):
        transport, _ = paywalled_agent()
        planner = planner_factory([
            _call("execute_agent", {"agent_url": "https://agent1.test", "task": "x", "max_price": -1}),
            AIMessage(content="Gave up."),
        ])
        orchestrator = build_orchestrator(planner, transport)

        await orchestrator.run("Find flights", IDENTITY, Decimal("1.0"))

        result = _tool_result(planner.seen[1])
        assert result["error"]["type"] == "validation"

    @pytest.mark.asyncio
    async def test_iteration_limit(self, build_orchestrator, planner_factory, paywalled_agent):
        transport, _ = paywalled_agent()
        planner = planner_factory([_discover() for _ in range(5)])
        orchestrator = build_orchestrator(planner, transport, max_iterations=3)

        response = await orchestrator.run("Loop forever", IDENTITY, Decimal("1.0"))

        assert response.success is False
        assert response.error["type"] == "iteration_limit"
        assert len(planner.seen) == 3

    @pytest.mark.asyncio
    async def test_planner_failure(self, build_orchestrator, paywalled_agent):
        class BrokenPlanner:
            async def plan(self, messages):
                raise RuntimeError("model overloaded")

        transport, _ = paywalled_agent()
        orchestrator = build_orchestrator(BrokenPlanner(), transport)

        response = await orchestrator.run("Anything", IDENTITY, Decimal("1.0"))

        assert response.success is False
        assert response.message.startswith("Planning service failed")
        assert response.execution_log[-1].kind == LogKind.ERROR

    @pytest.mark.asyncio
    async def test_signer_setup_failure_is_reported(
        self, test_settings, discovery_factory, registry_factory, planner_factory, paywalled_agent
    ):
        def broken_signer_factory(identity):
            raise ValueError("Non-hexadecimal digit found")

        transport, requests = paywalled_agent()
        planner = planner_factory([_discover()])
        orchestrator = AgentOrchestrator(
            discovery_factory(registry_factory([]), transport),
            planner=planner,
            signer_factory=broken_signer_factory,
            http_client=httpx.AsyncClient(transport=transport),
            app_settings=test_settings,
        )

        response = await orchestrator.run("do it", IDENTITY, Decimal("1.0"))

        assert response.success is False
        assert "Non-hexadecimal digit found" in response.message
        assert response.error["type"] == "unknown"
        assert [entry.kind for entry in response.execution_log] == [LogKind.ERROR]
        assert response.total_cost == 0
        assert planner.seen == []
        assert requests == []

    @pytest.mark.asyncio
    async def test_negative_challenge_amount_fails_invocation_only(
        self, build_orchestrator, planner_factory, signer
    ):
        challenge = {
            "x402Version": 2,
            "accepts": [{"scheme": "exact", "network": "eip155:84532", "payTo": TEST_ADDRESS, "amount": -5}],
        }
        header = base64.b64encode(json.dumps(challenge).encode()).decode()
        posts = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(404)
            posts.append(request)
            if request.headers.get("PAYMENT-SIGNATURE"):
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"answer": "ok"}})
            return httpx.Response(402, headers={"PAYMENT-REQUIRED": header})

        planner = planner_factory([_discover(), _execute(), AIMessage(content="The agent could not be paid.")])
        orchestrator = build_orchestrator(planner, httpx.MockTransport(handler))

        response = await orchestrator.run("Find flights", IDENTITY, Decimal("1.0"))

        result = _tool_result(planner.seen[2])
        assert result["error"]["type"] == "payment_challenge_malformed"
        assert response.success is False
        assert response.total_cost == 0
        kinds = [entry.kind for entry in response.execution_log]
        assert LogKind.PAYMENT not in kinds
        assert kinds[-1] == LogKind.COMPLETION
        assert len(posts) == 1
        assert signer.calls == []


class TestValidation:
    """Caller input is validated before any planning or payment."""

    @pytest.mark.parametrize(
        "task,identity,budget,message",
        [
            ("", IDENTITY, "1", "message is required"),
            ("   ", IDENTITY, "1", "message is required"),
            ("task", {"walletAddress": TEST_ADDRESS}, "1", "walletId is required"),
            ("task", {"walletId": "w"}, "1", "walletAddress is required"),
            ("task", IDENTITY, "0", "maxBudget must be a positive number"),
            ("task", IDENTITY, "-3", "maxBudget must be a positive number"),
            ("task", IDENTITY, "abc", "maxBudget must be a positive number"),
            ("task", IDENTITY, None, "maxBudget must be a positive number"),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_input(self, build_orchestrator, planner_factory, paywalled_agent, task, identity, budget, message):
        transport, requests = paywalled_agent()
        planner = planner_factory([])
        orchestrator = build_orchestrator(planner, transport)

        response = await orchestrator.run(task, identity, budget)

        assert response.success is False
        assert response.message == message
        assert response.error["type"] == "validation"
        assert response.total_cost == 0
        assert [e.kind for e in response.execution_log] == [LogKind.ERROR]
        assert planner.seen == []
        assert requests == []

    @pytest.mark.asyncio
    async def test_budget_above_service_limit(self, build_orchestrator, planner_factory, paywalled_agent):
        transport, _ = paywalled_agent()
        orchestrator = build_orchestrator(planner_factory([]), transport)

        response = await orchestrator.run("task", IDENTITY, "1000")

        assert response.success is False
        assert response.error["type"] == "validation"


class TestStreaming:
    """Incremental event delivery."""

    @pytest.mark.asyncio
    async def test_event_order(self, build_orchestrator, planner_factory, paywalled_agent):
        transport, _ = paywalled_agent(amount=10000)
        planner = planner_factory([_discover(), _execute(), AIMessage(content="All done.")])
        orchestrator = build_orchestrator(planner, transport)

        async with orchestrator.run_stream("Find flights", IDENTITY, Decimal("1.0")) as stream:
            events = [event async for event in stream]

        assert [event.type for event in events] == [
            "start", "log", "log", "log", "log", "log", "payment", "log", "content", "log", "end",
        ]
        log_steps = [event.data["step"] for event in events if event.type == "log"]
        assert log_steps == sorted(log_steps)
        assert events[6].data["amount"] == "0.010000"
        assert events[-1].data["success"] is True
        assert events[-1].data["totalCost"] == 0.01

    @pytest.mark.asyncio
    async def test_failed_run_emits_error_before_end(self, build_orchestrator, planner_factory, paywalled_agent):
        transport, _ = paywalled_agent()
        orchestrator = build_orchestrator(planner_factory([]), transport)

        async with orchestrator.run_stream("", IDENTITY, "1") as stream:
            events = [event async for event in stream]

        assert [event.type for event in events] == ["start", "log", "error", "end"]
        assert events[2].data["error"]["type"] == "validation"

    @pytest.mark.asyncio
    async def test_close_cancels_run_and_closes_ledger(self, build_orchestrator, paywalled_agent):
        planning = asyncio.Event()

        class StallingPlanner:
            async def plan(self, messages):
                planning.set()
                await asyncio.sleep(30)
                return decision_from_message(AIMessage(content="late"))

        transport, requests = paywalled_agent()
        orchestrator = build_orchestrator(StallingPlanner(), transport)
        stream = orchestrator.run_stream("Slow task", IDENTITY, Decimal("1.0"))

        first = await stream.__anext__()
        await asyncio.wait_for(planning.wait(), timeout=5)
        await stream.aclose()

        assert first.type == "start"
        assert stream._task.done()
        assert stream.channel.ledger is not None
        assert stream.channel.ledger.closed
        assert requests == []
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
