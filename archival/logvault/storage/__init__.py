"""
Storage backend collaborator for logvault.

This module provides the remote storage backend interface:
- HTTP client for the backend control API (production)
- In-memory backend (for testing)

Invariants:
    - Backend jobs never carry a database address
    - watch_jobs() starts with the current state of each job
"""

from .base import (
    TERMINAL_STATUSES,
    AccountInfo,
    BalanceInfo,
    DealError,
    Job,
    JobStatus,
    Session,
    StorageBackend,
    WalletAddress,
    create_storage_backend,
    transport_options,
)
from .http import HttpStorageBackend
from .memory import InMemoryStorageBackend

__all__ = [
    # Protocol and types
    "StorageBackend",
    "Job",
    "JobStatus",
    "TERMINAL_STATUSES",
    "DealError",
    "WalletAddress",
    "BalanceInfo",
    "AccountInfo",
    "Session",
    # Factory and helpers
    "create_storage_backend",
    "transport_options",
    # Implementations
    "HttpStorageBackend",
    "InMemoryStorageBackend",
]
