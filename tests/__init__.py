"""
VoterDB Test Suite.

This package contains:
- unit/: Unit tests (pure functions and in-memory partitions)
- integration/: Integration tests (SQLite partitions and metadata store)
"""
