"""Borrower discovery: registry, event ingestion and pruning."""
