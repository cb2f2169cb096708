"""
On-chain agent registry access.

Reads agent ids and AgentCard records from the AgentRegistry contract and
returns them as plain dicts keyed by the contract's field names.
"""

import asyncio
import logging
from typing import Any, Protocol

from web3 import AsyncHTTPProvider, AsyncWeb3

from uniagent.contracts.abis import AGENT_CARD_FIELDS, AGENT_REGISTRY_ABI
from uniagent.core.config import Settings, settings
from uniagent.core.errors import DiscoveryUnavailableError

logger = logging.getLogger(__name__)

SKILL_FIELDS = ("id", "name", "description")
PAYMENT_FIELDS = ("tokenAddress", "receiverAddress", "pricePerCall", "chain")


class AgentRegistry(Protocol):
    """Read interface of the agent registry."""

    async def list_ids_by_category(self, category: str) -> list[str]:
        ...

    async def list_all_ids(self) -> list[str]:
        ...

    async def get_agent_card(self, agent_id: str) -> dict[str, Any]:
        ...


def _hex_id(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _id_bytes(agent_id: str) -> bytes:
    return bytes.fromhex(agent_id.removeprefix("0x"))


def decode_agent_card(raw: Any) -> dict[str, Any]:
    """
    Convert a decoded AgentCard struct into a dict.

    web3 may return the struct as a positional tuple or as a mapping.
    """
    if isinstance(raw, dict):
        card = dict(raw)
    else:
        card = dict(zip(AGENT_CARD_FIELDS, raw))

    card["agentId"] = _hex_id(card.get("agentId"))
    card["skills"] = [
        skill if isinstance(skill, dict) else dict(zip(SKILL_FIELDS, skill))
        for skill in card.get("skills") or []
    ]
    payment = card.get("payment") or {}
    card["payment"] = payment if isinstance(payment, dict) else dict(zip(PAYMENT_FIELDS, payment))
    return card


class Web3AgentRegistry:
    """AgentRegistry contract reader over an async JSON-RPC provider."""

    def __init__(
        self,
        registry_address: str | None = None,
        rpc_url: str | None = None,
        app_settings: Settings | None = None,
        w3: AsyncWeb3 | None = None,
    ):
        self.settings = app_settings or settings
        address = registry_address or self.settings.agent_registry_address
        if not address:
            raise DiscoveryUnavailableError(
                "Agent registry address is not configured",
                suggestion="Set AGENT_REGISTRY_ADDRESS to the deployed AgentRegistry contract.",
            )
        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url or self.settings.rpc_url,
                request_kwargs={"timeout": self.settings.registry_timeout_seconds},
            )
        )
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(address),
            abi=AGENT_REGISTRY_ABI,
        )

    async def _call(self, label: str, call) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.settings.registry_timeout_seconds)
        except Exception as e:
            logger.error(f"Registry call {label} failed: {e}")
            raise DiscoveryUnavailableError(
                f"Agent registry is unavailable ({label})",
                details={"reason": str(e)},
                suggestion="Check the RPC endpoint and registry address, then retry.",
            ) from e

    async def list_ids_by_category(self, category: str) -> list[str]:
        ids = await self._call(
            "getActiveAgentsByCategory",
            self.contract.functions.getActiveAgentsByCategory(category).call(),
        )
        return [_hex_id(agent_id) for agent_id in ids]

    async def list_all_ids(self) -> list[str]:
        ids = await self._call("getAllAgentIds", self.contract.functions.getAllAgentIds().call())
        return [_hex_id(agent_id) for agent_id in ids]

    async def get_agent_card(self, agent_id: str) -> dict[str, Any]:
        raw = await self._call(
            "getAgentCard",
            self.contract.functions.getAgentCard(_id_bytes(agent_id)).call(),
        )
        return decode_agent_card(raw)
