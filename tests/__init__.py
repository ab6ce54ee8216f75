"""
RetailHub ECA Test Suite.

This package contains:
- unit/: Unit tests (single components, SQLite in a temp dir or in-memory store)
- integration/: Integration tests (action processor and HTTP pipeline end to end)
"""
