"""Contract ABIs used for on-chain reads."""

from uniagent.contracts.abis import AGENT_REGISTRY_ABI

__all__ = ["AGENT_REGISTRY_ABI"]
