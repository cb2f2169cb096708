"""
UniAgent - budget-bounded agent orchestration with x402 micropayments.
"""

__version__ = "0.1.0"
