"""
logvault Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Orchestrator tests against in-memory collaborators
"""
