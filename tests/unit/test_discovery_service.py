"""
Tests for agent discovery: registry lookup, filtering, endpoint resolution.
"""

from decimal import Decimal

import httpx
import pytest

from uniagent.core.errors import DiscoveryUnavailableError
from uniagent.schemas.agent import DiscoveryQuery
from uniagent.services.discovery_service import extract_endpoints, parse_agent_card
from uniagent.services.registry_service import decode_agent_card


def _descriptor_transport(descriptors: dict[str, dict]) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        descriptor = descriptors.get(str(request.url))
        if descriptor is None:
            return httpx.Response(404)
        return httpx.Response(200, json=descriptor)

    return httpx.MockTransport(handler), requests


class TestParseAgentCard:
    """Registry record conversion."""

    def test_price_and_rating(self, make_card):
        descriptor = parse_agent_card(make_card(1, price_minor=500000, total_ratings=9, rating_count=2))

        assert descriptor.price == Decimal("0.5")
        assert descriptor.rating_average == 4.5
        assert descriptor.rating_count == 2
        assert descriptor.skill_tags == ["Flight Search"]
        assert descriptor.service_url == "https://agent1.test"

    def test_unrated_agent_scores_zero(self, make_card):
        assert parse_agent_card(make_card(1)).rating_average == 0

    def test_rating_rounded(self, make_card):
        assert parse_agent_card(make_card(1, total_ratings=10, rating_count=3)).rating_average == 3.33

    def test_summary_uses_wire_names(self, make_card):
        summary = parse_agent_card(make_card(7, price_minor=10000)).to_summary()

        assert summary["agentId"] == "0x" + f"{7:064x}"
        assert summary["price"] == 0.01
        assert summary["skills"] == ["Flight Search"]

    def test_decode_positional_struct(self, make_card):
        card = make_card(3)
        raw = (
            bytes.fromhex(card["agentId"][2:]),
            card["name"],
            card["description"],
            card["url"],
            card["version"],
            card["defaultInputModes"],
            card["defaultOutputModes"],
            [("search", "Flight Search", "Find flights")],
            card["owner"],
            True,
            card["createdAt"],
            0,
            0,
            (card["payment"]["tokenAddress"], card["payment"]["receiverAddress"], 10000, "base-sepolia"),
            "travel",
            "",
        )

        decoded = decode_agent_card(raw)

        assert decoded["agentId"] == card["agentId"]
        assert decoded["skills"] == [{"id": "search", "name": "Flight Search", "description": "Find flights"}]
        assert decoded["payment"]["pricePerCall"] == 10000
        assert parse_agent_card(decoded).price == Decimal("0.01")


class TestExtractEndpoints:
    def test_a2a_form(self):
        assert extract_endpoints(
            {"endpoints": [{"url": "https://a.test/rpc", "spec": "https://a.test/openapi.json"}]}
        ) == ("https://a.test/rpc", "https://a.test/openapi.json")

    def test_flat_form(self):
        assert extract_endpoints({"endpoint": "https://a.test/rpc"}) == ("https://a.test/rpc", None)

    def test_garbage(self):
        assert extract_endpoints(["not", "a", "dict"]) == (None, None)
        assert extract_endpoints({}) == (None, None)


class TestDiscover:
    """End-to-end discovery over a fake registry."""

    @pytest.mark.asyncio
    async def test_price_filter_and_rating_order(self, make_card, registry_factory, discovery_factory):
        registry = registry_factory([
            make_card(1, price_minor=10000, total_ratings=9, rating_count=2),
            make_card(2, price_minor=20000, total_ratings=10, rating_count=2),
            make_card(3, price_minor=50000, total_ratings=5, rating_count=1),
        ])
        service = discovery_factory(registry)

        result = await service.discover(DiscoveryQuery(category="travel", max_price=Decimal("0.02")))

        assert result.total == 2
        assert [c.name for c in result.candidates] == ["Agent 2", "Agent 1"]
        assert all(c.price <= Decimal("0.02") for c in result.candidates)

    @pytest.mark.asyncio
    async def test_inactive_and_unreadable_cards_dropped(self, make_card, registry_factory, discovery_factory):
        registry = registry_factory(
            [make_card(1), make_card(2, active=False)],
            failing_ids={"0x" + "ff" * 32},
        )
        service = discovery_factory(registry)

        result = await service.discover(DiscoveryQuery())

        assert [c.name for c in result.candidates] == ["Agent 1"]

    @pytest.mark.asyncio
    async def test_skill_filter_matches_name_or_description(self, make_card, registry_factory, discovery_factory):
        registry = registry_factory([
            make_card(1),
            make_card(2, skills=[{"id": "w", "name": "Weather", "description": "Forecasts for any city"}]),
        ])
        service = discovery_factory(registry)

        by_name = await service.discover(DiscoveryQuery(skill_name="flight"))
        by_description = await service.discover(DiscoveryQuery(skill_name="FORECAST"))

        assert [c.name for c in by_name.candidates] == ["Agent 1"]
        assert [c.name for c in by_description.candidates] == ["Agent 2"]

    @pytest.mark.asyncio
    async def test_min_rating(self, make_card, registry_factory, discovery_factory):
        registry = registry_factory([
            make_card(1, total_ratings=8, rating_count=2),
            make_card(2, total_ratings=3, rating_count=1),
        ])
        service = discovery_factory(registry)

        result = await service.discover(DiscoveryQuery(min_rating=3.5))

        assert [c.name for c in result.candidates] == ["Agent 1"]

    @pytest.mark.asyncio
    async def test_empty_registry(self, registry_factory, discovery_factory):
        result = await discovery_factory(registry_factory([])).discover(DiscoveryQuery(category="travel"))

        assert result.total == 0
        assert result.candidates == []

    @pytest.mark.asyncio
    async def test_registry_failure_is_discovery_unavailable(self, discovery_factory):
        class BrokenRegistry:
            async def list_all_ids(self):
                raise ConnectionError("rpc down")

        service = discovery_factory(BrokenRegistry())

        with pytest.raises(DiscoveryUnavailableError):
            await service.discover(DiscoveryQuery())

    @pytest.mark.asyncio
    async def test_endpoints_resolved_from_descriptor(self, make_card, registry_factory, discovery_factory):
        transport, _ = _descriptor_transport({
            "https://agent1.test/.well-known/agent.json": {
                "endpoints": [{"url": "https://agent1.test/rpc", "spec": "https://agent1.test/openapi.json"}]
            },
        })
        registry = registry_factory([make_card(1), make_card(2)])
        service = discovery_factory(registry, transport)

        result = await service.discover(DiscoveryQuery())
        by_name = {c.name: c for c in result.candidates}

        assert by_name["Agent 1"].invocation_endpoint == "https://agent1.test/rpc"
        assert by_name["Agent 1"].openapi_url == "https://agent1.test/openapi.json"
        assert by_name["Agent 2"].invocation_endpoint == "https://agent2.test/api/v1/agent"
        assert by_name["Agent 2"].openapi_url is None


class TestResolveEndpoint:
    """Descriptor lookup with fallback."""

    @pytest.mark.asyncio
    async def test_url_already_pointing_at_descriptor(self, registry_factory, discovery_factory):
        transport, requests = _descriptor_transport({
            "https://agent5.test/.well-known/agent.json": {"endpoint": "https://agent5.test/invoke"},
        })
        service = discovery_factory(registry_factory([]), transport)

        endpoint, _ = await service.resolve_endpoint("https://agent5.test/.well-known/agent.json")

        assert endpoint == "https://agent5.test/invoke"
        assert str(requests[0].url) == "https://agent5.test/.well-known/agent.json"

    @pytest.mark.asyncio
    async def test_fallback_keeps_base_without_descriptor_suffix(self, registry_factory, discovery_factory):
        service = discovery_factory(registry_factory([]))

        endpoint, openapi = await service.resolve_endpoint("https://agent5.test/.well-known/agent.json")

        assert endpoint == "https://agent5.test/api/v1/agent"
        assert openapi is None

    @pytest.mark.asyncio
    async def test_transport_error_falls_back(self, registry_factory, discovery_factory):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = discovery_factory(registry_factory([]), httpx.MockTransport(handler))

        endpoint, _ = await service.resolve_endpoint("https://agent9.test/")

        assert endpoint == "https://agent9.test/api/v1/agent"

    @pytest.mark.asyncio
    async def test_malformed_descriptor_falls_back(self, registry_factory, discovery_factory):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        service = discovery_factory(registry_factory([]), transport)

        endpoint, _ = await service.resolve_endpoint("https://agent9.test")

        assert endpoint == "https://agent9.test/api/v1/agent"
