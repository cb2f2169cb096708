"""
Agent discovery service.

Queries the on-chain registry for candidate capability agents, filters them,
resolves each survivor's invocation endpoint from its off-chain descriptor
and orders them by rating.
"""

import asyncio
import logging
from typing import Any

import httpx

from uniagent.core.config import Settings, settings
from uniagent.core.errors import DiscoveryUnavailableError
from uniagent.schemas.agent import (
    AgentSkill,
    CapabilityDescriptor,
    DiscoveryQuery,
    DiscoveryResult,
)
from uniagent.services.registry_service import AgentRegistry
from uniagent.x402.units import to_usdc

logger = logging.getLogger(__name__)


def parse_agent_card(card: dict[str, Any], decimals: int = 6) -> CapabilityDescriptor:
    """
    Convert a registry AgentCard into a CapabilityDescriptor.

    The rating is the average of submitted ratings rounded to two places, or
    0 when nobody has rated the agent yet.
    """
    total_ratings = int(card.get("totalRatings") or 0)
    rating_count = int(card.get("ratingCount") or 0)
    rating = round(total_ratings / rating_count, 2) if rating_count > 0 else 0.0
    payment = card.get("payment") or {}

    return CapabilityDescriptor(
        id=str(card["agentId"]),
        name=card.get("name") or "",
        description=card.get("description") or "",
        service_url=card.get("url") or "",
        price=to_usdc(int(payment.get("pricePerCall") or 0), decimals),
        rating_average=rating,
        rating_count=rating_count,
        category=card.get("category") or "",
        skills=tuple(
            AgentSkill(
                id=skill.get("id") or "",
                name=skill.get("name") or "",
                description=skill.get("description") or "",
            )
            for skill in card.get("skills") or []
        ),
        owner=card.get("owner") or "",
        active=bool(card.get("isActive")),
        version=card.get("version") or "",
        image_url=card.get("imageUrl") or None,
    )


def extract_endpoints(descriptor: Any) -> tuple[str | None, str | None]:
    """
    Pull the invocation endpoint and OpenAPI URL out of an agent descriptor.

    Supports the A2A ``endpoints[0].url`` / ``endpoints[0].spec`` form and the
    flat ``endpoint`` / ``openapi`` form.
    """
    if not isinstance(descriptor, dict):
        return None, None
    endpoints = descriptor.get("endpoints")
    if isinstance(endpoints, list) and endpoints and isinstance(endpoints[0], dict):
        return endpoints[0].get("url") or None, endpoints[0].get("spec") or None
    return descriptor.get("endpoint") or None, descriptor.get("openapi") or None


class AgentDiscoveryService:
    """Service for discovering capability agents."""

    def __init__(
        self,
        registry: AgentRegistry,
        http_client: httpx.AsyncClient | None = None,
        app_settings: Settings | None = None,
        logger: logging.Logger | None = None,
    ):
        self.registry = registry
        self.settings = app_settings or settings
        self.logger = logger or logging.getLogger(__name__)
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=self.settings.descriptor_timeout_seconds)

    def _descriptor_urls(self, base_url: str) -> tuple[str, str]:
        normalized = base_url.rstrip("/")
        suffix = self.settings.descriptor_path
        if suffix in normalized:
            descriptor_url = normalized
            service_base = normalized.split(suffix, 1)[0]
        else:
            descriptor_url = f"{normalized}{suffix}"
            service_base = normalized
        return descriptor_url, f"{service_base}{self.settings.fallback_endpoint_path}"

    async def _fetch_descriptor(self, url: str) -> Any:
        response = await self.client.get(
            url,
            headers={"Accept": "application/json"},
            timeout=self.settings.descriptor_timeout_seconds,
        )
        if response.status_code != 200:
            self.logger.warning(f"Agent descriptor not found at {url}: {response.status_code}")
            return None
        return response.json()

    async def resolve_endpoint(self, base_url: str) -> tuple[str, str | None]:
        """
        Resolve the invocation endpoint for an agent base URL.

        Never raises: an unreachable, non-200 or malformed descriptor yields
        the conventional fallback endpoint.

        Returns:
            Tuple of (invocation endpoint, OpenAPI URL or None)
        """
        descriptor_url, fallback = self._descriptor_urls(base_url)
        try:
            descriptor = await asyncio.wait_for(
                self._fetch_descriptor(descriptor_url),
                timeout=self.settings.descriptor_timeout_seconds,
            )
        except Exception as e:
            self.logger.warning(f"Failed to fetch agent descriptor from {descriptor_url}: {e}")
            return fallback, None

        endpoint, openapi = extract_endpoints(descriptor)
        if not endpoint:
            self.logger.info(f"No endpoint in descriptor at {descriptor_url}; using {fallback}")
            return fallback, openapi
        return endpoint, openapi

    async def _fetch_card(self, agent_id: str) -> CapabilityDescriptor | None:
        try:
            card = await self.registry.get_agent_card(agent_id)
            return parse_agent_card(card, self.settings.usdc_decimals)
        except Exception as e:
            self.logger.warning(f"Dropping agent {agent_id}: {e}")
            return None

    async def _enrich(self, candidate: CapabilityDescriptor) -> CapabilityDescriptor:
        endpoint, openapi = await self.resolve_endpoint(candidate.service_url)
        return candidate.model_copy(update={"invocation_endpoint": endpoint, "openapi_url": openapi})

    async def discover(self, query: DiscoveryQuery) -> DiscoveryResult:
        """
        Discover agents matching a query.

        Args:
            query: Category, skill substring, price ceiling and rating floor

        Returns:
            DiscoveryResult sorted by rating, highest first

        Raises:
            DiscoveryUnavailableError: If the registry itself cannot be read
        """
        self.logger.info(f"Discovering agents: {query.model_dump(exclude_none=True)}")

        try:
            if query.category:
                agent_ids = await self.registry.list_ids_by_category(query.category)
            else:
                agent_ids = await self.registry.list_all_ids()
        except DiscoveryUnavailableError:
            raise
        except Exception as e:
            self.logger.error(f"Registry lookup failed: {e}")
            raise DiscoveryUnavailableError(
                "Agent registry is unavailable",
                details={"reason": str(e)},
            ) from e

        if not agent_ids:
            return DiscoveryResult(candidates=[], total=0)

        fetched = await asyncio.gather(*(self._fetch_card(agent_id) for agent_id in agent_ids))
        candidates = [c for c in fetched if c is not None and c.active]

        if query.skill_name:
            candidates = [c for c in candidates if c.matches_skill(query.skill_name)]
        if query.max_price is not None:
            candidates = [c for c in candidates if c.price <= query.max_price]
        if query.min_rating is not None:
            candidates = [c for c in candidates if c.rating_average >= query.min_rating]

        enriched = list(await asyncio.gather(*(self._enrich(c) for c in candidates)))
        enriched.sort(key=lambda c: c.rating_average, reverse=True)

        self.logger.info(f"Found {len(enriched)} agents")
        return DiscoveryResult(candidates=enriched, total=len(enriched))

    async def close(self):
        """Close the HTTP client if this service created it."""
        if self._owns_client:
            await self.client.aclose()
