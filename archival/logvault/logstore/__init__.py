"""
Log store collaborator for logvault.

The replicated append-only log database is an external collaborator.
This module defines the protocol the orchestrator drives it through and
ships two implementations:
- In-memory log store with a simulated peer network (tests, embedding)
- SQLite document store for a durable job registry

Invariants:
    - Snapshot serialization belongs to the log store, not the orchestrator
    - Replication events are delivered in emission order per subscription
"""

from .base import (
    DocumentStore,
    Entry,
    EventLog,
    LogDatabase,
    LogStore,
    ReplicationComplete,
    ReplicationEvent,
    ReplicationProgress,
    ReplicationSubscription,
    database_address,
    decode_snapshot,
    encode_snapshot,
    is_address,
    parse_address,
)
from .memory import InMemoryDatabase, InMemoryDocumentStore, InMemoryLogStore, PeerNetwork
from .sqlite import SqliteDocumentStore

__all__ = [
    # Protocols and types
    "LogStore",
    "LogDatabase",
    "DocumentStore",
    "Entry",
    "EventLog",
    "ReplicationEvent",
    "ReplicationProgress",
    "ReplicationComplete",
    "ReplicationSubscription",
    # Helpers
    "database_address",
    "parse_address",
    "is_address",
    "encode_snapshot",
    "decode_snapshot",
    # Implementations
    "InMemoryLogStore",
    "InMemoryDatabase",
    "InMemoryDocumentStore",
    "PeerNetwork",
    "SqliteDocumentStore",
]
