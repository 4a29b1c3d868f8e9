"""
SyncDB Test Suite.

This package contains:
- unit/: Unit tests (schema, config, in-memory store, fetch, dispatch)
- integration/: Integration tests (engine over SQLite and memory, HTTP)
"""
