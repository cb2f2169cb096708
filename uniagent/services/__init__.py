"""
Service layer: registry access, discovery, budget ledger, x402 payments and
execution logging.

Services are imported directly from their modules:
  from uniagent.services.discovery_service import AgentDiscoveryService
  from uniagent.services.x402_service import X402PaymentClient
"""
