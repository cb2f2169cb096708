"""
Default values shared by settings and services.
"""

# Application
DEFAULT_APP_PORT = 3002

# Agent loop
AGENT_MAX_ITERATIONS = 10
AGENT_MAX_BUDGET_USD = 100.0
BUDGET_SAFETY_FRACTION = 0.9

# Base Sepolia
DEFAULT_CHAIN_ID = 84532
DEFAULT_NETWORK_ID = f"eip155:{DEFAULT_CHAIN_ID}"
USDC_BASE_SEPOLIA_ADDRESS = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
USDC_DECIMALS = 6

# Timeouts (seconds)
REGISTRY_TIMEOUT_SECONDS = 10.0
DESCRIPTOR_TIMEOUT_SECONDS = 5.0
INVOCATION_TIMEOUT_SECONDS = 30.0
SIGNING_TIMEOUT_SECONDS = 15.0
PLANNER_TIMEOUT_SECONDS = 120.0

# x402
X402_VERSION = 2
PAYMENT_VALIDITY_SECONDS = 3600

# Discovery
DESCRIPTOR_PATH = "/.well-known/agent.json"
FALLBACK_ENDPOINT_PATH = "/api/v1/agent"
