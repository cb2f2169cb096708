"""Pydantic schemas shared across services."""
