"""
Tests for the on-chain registry reader with a mocked web3 contract.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from uniagent.core.errors import DiscoveryUnavailableError
from uniagent.services.registry_service import Web3AgentRegistry

REGISTRY = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


def _registry(test_settings, contract: MagicMock) -> Web3AgentRegistry:
    w3 = MagicMock()
    w3.eth.contract.return_value = contract
    return Web3AgentRegistry(REGISTRY, app_settings=test_settings, w3=w3)


class TestWeb3AgentRegistry:
    def test_requires_address(self, test_settings):
        cfg = test_settings.model_copy(update={"agent_registry_address": None})

        with pytest.raises(DiscoveryUnavailableError):
            Web3AgentRegistry(app_settings=cfg, w3=MagicMock())

    @pytest.mark.asyncio
    async def test_ids_are_hex(self, test_settings):
        contract = MagicMock()
        contract.functions.getAllAgentIds.return_value.call = AsyncMock(return_value=[b"\x01" * 32])
        registry = _registry(test_settings, contract)

        ids = await registry.list_all_ids()

        assert ids == ["0x" + "01" * 32]

    @pytest.mark.asyncio
    async def test_category_lookup(self, test_settings):
        contract = MagicMock()
        contract.functions.getActiveAgentsByCategory.return_value.call = AsyncMock(return_value=[])
        registry = _registry(test_settings, contract)

        assert await registry.list_ids_by_category("travel") == []
        contract.functions.getActiveAgentsByCategory.assert_called_once_with("travel")

    @pytest.mark.asyncio
    async def test_card_lookup_passes_bytes32(self, test_settings, make_card):
        card = make_card(1)
        contract = MagicMock()
        contract.functions.getAgentCard.return_value.call = AsyncMock(return_value=card)
        registry = _registry(test_settings, contract)

        decoded = await registry.get_agent_card(card["agentId"])

        assert decoded["name"] == "Agent 1"
        contract.functions.getAgentCard.assert_called_once_with(bytes.fromhex(card["agentId"][2:]))

    @pytest.mark.asyncio
    async def test_rpc_failure_is_discovery_unavailable(self, test_settings):
        contract = MagicMock()
        contract.functions.getAllAgentIds.return_value.call = AsyncMock(side_effect=ConnectionError("rpc down"))
        registry = _registry(test_settings, contract)

        with pytest.raises(DiscoveryUnavailableError) as exc_info:
            await registry.list_all_ids()

        assert exc_info.value.details["reason"] == "rpc down"
