"""Durable storage for LIQBOT."""

from storage.store import BorrowerStore, NullStore, SQLiteStore, open_store

__all__ = ["BorrowerStore", "NullStore", "SQLiteStore", "open_store"]
