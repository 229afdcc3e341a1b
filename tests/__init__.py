"""
Save & Restore Test Suite.

This package contains:
- unit/: Unit tests (one component at a time, temporary SQLite files)
- integration/: Integration tests (engine facade, concurrent writers, CLI)
"""
