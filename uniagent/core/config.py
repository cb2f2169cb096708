"""
Application configuration and settings management.

This module loads configuration from environment variables and provides
a centralized settings object for the orchestrator, payment client and
discovery services.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    AGENT_MAX_BUDGET_USD,
    AGENT_MAX_ITERATIONS,
    BUDGET_SAFETY_FRACTION,
    DEFAULT_APP_PORT,
    DEFAULT_CHAIN_ID,
    DEFAULT_NETWORK_ID,
    DESCRIPTOR_PATH,
    DESCRIPTOR_TIMEOUT_SECONDS,
    FALLBACK_ENDPOINT_PATH,
    INVOCATION_TIMEOUT_SECONDS,
    PAYMENT_VALIDITY_SECONDS,
    PLANNER_TIMEOUT_SECONDS,
    REGISTRY_TIMEOUT_SECONDS,
    SIGNING_TIMEOUT_SECONDS,
    USDC_BASE_SEPOLIA_ADDRESS,
    USDC_DECIMALS,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "UniAgent"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = Field(default="development", description="deployment environment")

    # API Server
    host: str = "0.0.0.0"
    port: int = DEFAULT_APP_PORT
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Parse CORS origins from string or list.

        Args:
            v: CORS origins as string (comma-separated) or list

        Returns:
            list[str]: List of CORS origin URLs
        """
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000"]
            return [origin.strip() for origin in v.split(",")]
        return v

    # LLM Configuration
    anthropic_api_key: str | None = Field(default=None, description="Anthropic API key for Claude")
    openai_api_key: str | None = Field(default=None, description="OpenAI API key for fallback")
    default_model: str = "claude-sonnet-4-20250514"
    planner_temperature: float = 0.0

    # Chain
    rpc_url: str = Field(default="https://sepolia.base.org", description="EVM RPC URL")
    chain_id: int = Field(default=DEFAULT_CHAIN_ID, description="84532 for Base Sepolia")
    network_id: str = Field(default=DEFAULT_NETWORK_ID, description="CAIP-2 network identifier")
    agent_registry_address: str | None = Field(
        default=None,
        description="AgentRegistry contract address"
    )
    usdc_address: str = USDC_BASE_SEPOLIA_ADDRESS
    usdc_decimals: int = USDC_DECIMALS
    usdc_eip712_name: str = "USDC"
    usdc_eip712_version: str = "2"

    # Custodial signer (delegated wallets)
    signer_api_url: str = Field(
        default="https://api.privy.io",
        description="Base URL of the custodial wallet signing API"
    )
    signer_app_id: str | None = None
    signer_app_secret: str | None = None
    signer_authorization_signature: str | None = Field(
        default=None,
        description="Pre-computed authorization signature for delegated signing requests"
    )

    # Wallet Configuration (development only - use the custodial signer in production)
    agent_wallet_private_key: str | None = Field(
        default=None,
        description="Agent wallet private key (development only)"
    )

    # Timeouts
    registry_timeout_seconds: float = REGISTRY_TIMEOUT_SECONDS
    descriptor_timeout_seconds: float = DESCRIPTOR_TIMEOUT_SECONDS
    invocation_timeout_seconds: float = INVOCATION_TIMEOUT_SECONDS
    signing_timeout_seconds: float = SIGNING_TIMEOUT_SECONDS
    planner_timeout_seconds: float = PLANNER_TIMEOUT_SECONDS

    # Discovery
    descriptor_path: str = DESCRIPTOR_PATH
    fallback_endpoint_path: str = FALLBACK_ENDPOINT_PATH

    # Payments
    payment_validity_seconds: int = PAYMENT_VALIDITY_SECONDS

    # Agent Configuration
    agent_max_iterations: int = AGENT_MAX_ITERATIONS
    budget_safety_fraction: float = Field(default=BUDGET_SAFETY_FRACTION, gt=0, le=1)
    max_budget_usd: float = AGENT_MAX_BUDGET_USD

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
