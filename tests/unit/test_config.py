"""
Tests for settings loading and the chat model factory.
"""

from langchain_anthropic import ChatAnthropic
from langchain_openai import ChatOpenAI

from uniagent.core.config import Settings
from uniagent.utils.llm import get_llm_client


class TestSettings:
    def test_defaults(self):
        cfg = Settings(_env_file=None)

        assert cfg.network_id == "eip155:84532"
        assert cfg.usdc_decimals == 6
        assert cfg.agent_max_iterations == 10
        assert cfg.budget_safety_fraction == 0.9
        assert cfg.descriptor_path == "/.well-known/agent.json"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("AGENT_MAX_ITERATIONS", "4")
        monkeypatch.setenv("AGENT_REGISTRY_ADDRESS", "0xabc")

        cfg = Settings(_env_file=None)

        assert cfg.agent_max_iterations == 4
        assert cfg.agent_registry_address == "0xabc"

    def test_cors_origins_from_string(self):
        cfg = Settings(_env_file=None, cors_origins="https://a.test, https://b.test")

        assert cfg.cors_origins == ["https://a.test", "https://b.test"]


class TestLLMClient:
    def test_claude_by_default(self):
        llm = get_llm_client("claude-sonnet-4-20250514", api_key="test-key")

        assert isinstance(llm, ChatAnthropic)

    def test_openai_with_provider_prefix(self):
        llm = get_llm_client("openai/gpt-4o", api_key="test-key")

        assert isinstance(llm, ChatOpenAI)
        assert llm.model_name == "gpt-4o"
