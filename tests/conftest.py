"""
Pytest configuration and shared fixtures.

This module provides settings, signers, a fake agent registry, fake
capability agents speaking x402 over httpx.MockTransport, and a scripted
planner.
"""

import base64
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from langchain_core.messages import AIMessage

from uniagent.agents.planner import PlannerDecision, decision_from_message
from uniagent.core.config import Settings
from uniagent.services.discovery_service import AgentDiscoveryService
from uniagent.x402.signature import LocalAccountSigner

# Well-known development key (Hardhat account #0); never holds real funds.
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
PAY_TO = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


class CountingSigner:
    """Local signer that records every signing request."""

    def __init__(self, private_key: str = TEST_PRIVATE_KEY):
        self._inner = LocalAccountSigner(private_key)
        self.address = self._inner.address
        self.calls: list[dict[str, Any]] = []

    async def sign_typed_data(self, domain, types, message, primary_type="TransferWithAuthorization"):
        self.calls.append({"domain": domain, "types": types, "message": message})
        return await self._inner.sign_typed_data(domain, types, message, primary_type)

    @property
    def nonces(self) -> list[str]:
        return [call["message"]["nonce"] for call in self.calls]


class FakeRegistry:
    """In-memory agent registry."""

    def __init__(self, cards: list[dict[str, Any]] | None = None, failing_ids: set[str] | None = None):
        self.cards = {card["agentId"]: card for card in cards or []}
        self.failing_ids = failing_ids or set()

    async def list_ids_by_category(self, category: str) -> list[str]:
        return [
            agent_id for agent_id, card in self.cards.items()
            if card.get("category") == category and card.get("isActive")
        ]

    async def list_all_ids(self) -> list[str]:
        return list(self.cards) + sorted(self.failing_ids)

    async def get_agent_card(self, agent_id: str) -> dict[str, Any]:
        if agent_id in self.failing_ids:
            raise RuntimeError(f"execution reverted for {agent_id}")
        return self.cards[agent_id]


class ScriptedPlanner:
    """Planner that replays prepared model responses and records what it saw."""

    def __init__(self, responses: list[AIMessage | Callable[[list], AIMessage]]):
        self.responses = list(responses)
        self.seen: list[list] = []

    async def plan(self, messages) -> PlannerDecision:
        self.seen.append(list(messages))
        if not self.responses:
            return decision_from_message(AIMessage(content="Done."))
        response = self.responses.pop(0)
        if callable(response):
            response = response(messages)
        return decision_from_message(response)


def _b64(data: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(data).encode()).decode()


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        agent_registry_address="0x5FbDB2315678afecb367f032d93F642f64180aa3",
        agent_wallet_private_key=None,
        signer_app_id="test-app",
        signer_app_secret="test-secret",
        signer_api_url="https://signer.test",
    )


@pytest.fixture
def signer() -> CountingSigner:
    return CountingSigner()


@pytest.fixture
def make_card() -> Callable[..., dict[str, Any]]:
    """Factory for raw registry AgentCard dicts."""

    def _make(
        index: int,
        price_minor: int = 10000,
        total_ratings: int = 0,
        rating_count: int = 0,
        active: bool = True,
        category: str = "travel",
        skills: list[dict[str, str]] | None = None,
        url: str | None = None,
    ) -> dict[str, Any]:
        return {
            "agentId": "0x" + f"{index:064x}",
            "name": f"Agent {index}",
            "description": f"Test agent {index}",
            "url": url or f"https://agent{index}.test",
            "version": "1.0.0",
            "defaultInputModes": ["text"],
            "defaultOutputModes": ["text"],
            "skills": skills or [{"id": "search", "name": "Flight Search", "description": "Find flights"}],
            "owner": PAY_TO,
            "isActive": active,
            "createdAt": 1700000000,
            "totalRatings": total_ratings,
            "ratingCount": rating_count,
            "payment": {
                "tokenAddress": USDC,
                "receiverAddress": PAY_TO,
                "pricePerCall": price_minor,
                "chain": "base-sepolia",
            },
            "category": category,
            "imageUrl": "",
        }

    return _make


@pytest.fixture
def challenge_header() -> Callable[..., str]:
    """Factory for base64 PAYMENT-REQUIRED header values."""

    def _make(
        amount: int | None = 10000,
        network: str = "eip155:84532",
        error: str | None = None,
        version: int = 2,
    ) -> str:
        accept: dict[str, Any] = {
            "scheme": "exact",
            "network": network,
            "asset": USDC,
            "payTo": PAY_TO,
            "maxTimeoutSeconds": 60,
            "extra": {"name": "USDC", "version": "2"},
        }
        if amount is not None:
            accept["amount" if version >= 2 else "maxAmountRequired"] = str(amount)
        body: dict[str, Any] = {
            "x402Version": version,
            "resource": {"url": "https://agent.test/api/v1/agent", "description": "Test agent"},
            "accepts": [accept],
        }
        if error:
            body["error"] = error
        return _b64(body)

    return _make


@pytest.fixture
def settlement_header() -> Callable[..., str]:
    """Factory for base64 PAYMENT-RESPONSE header values."""

    def _make(success: bool = True, error_reason: str | None = None) -> str:
        body: dict[str, Any] = {
            "success": success,
            "transaction": "0x" + "ab" * 32 if success else "",
            "network": "eip155:84532",
            "payer": TEST_ADDRESS,
        }
        if error_reason:
            body["errorReason"] = error_reason
        return _b64(body)

    return _make


@pytest.fixture
def paywalled_agent(challenge_header, settlement_header):
    """
    Factory for a fake capability agent.

    The agent answers unpaid requests with a 402 challenge and paid requests
    with a JSON-RPC result plus a settlement header. ``requests`` records every
    request received.
    """

    def _make(
        amount: int | None = 10000,
        result: Any = None,
        settle: bool = True,
        error_reason: str | None = None,
        always_challenge: bool = False,
        descriptor: dict[str, Any] | None = None,
    ):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "GET":
                if descriptor is None:
                    return httpx.Response(404)
                return httpx.Response(200, json=descriptor)
            paid = request.headers.get("PAYMENT-SIGNATURE") or request.headers.get("X-PAYMENT")
            if not paid or always_challenge:
                return httpx.Response(
                    402,
                    headers={"PAYMENT-REQUIRED": challenge_header(amount)},
                    json={},
                )
            return httpx.Response(
                200,
                headers={"PAYMENT-RESPONSE": settlement_header(settle, error_reason)},
                json={"jsonrpc": "2.0", "id": 1, "result": result or {"answer": "ok"}},
            )

        return httpx.MockTransport(handler), requests

    return _make


@pytest.fixture
def discovery_factory(test_settings):
    """Build a discovery service over a registry and an optional transport."""

    def _make(registry: FakeRegistry, transport: httpx.MockTransport | None = None) -> AgentDiscoveryService:
        transport = transport or httpx.MockTransport(lambda request: httpx.Response(404))
        return AgentDiscoveryService(
            registry,
            http_client=httpx.AsyncClient(transport=transport),
            app_settings=test_settings,
        )

    return _make


@pytest.fixture
def registry_factory() -> type[FakeRegistry]:
    return FakeRegistry


@pytest.fixture
def planner_factory() -> type[ScriptedPlanner]:
    return ScriptedPlanner
