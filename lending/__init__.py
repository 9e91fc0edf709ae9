"""Lending protocol adapters for LIQBOT."""

from lending.venus import AccountSnapshot, VenusAdapter

__all__ = ["AccountSnapshot", "VenusAdapter"]
