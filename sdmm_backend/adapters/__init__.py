"""Adapters for external systems (database, command-line tools)."""
