"""
logvault - Snapshot job orchestration for replicated logs.

This package archives replicated append-only log databases into a
content-addressed storage service with a hot and a cold tier:
- Waits until a replicating database has converged across peers
- Exports it to a portable snapshot and submits an archival job
- Tracks every job in a registry until the process stops
- Fetches stored snapshots and rebuilds working logs

Architecture:
    ┌─────────────┐  replication   ┌──────────────────┐
    │  Log store  │───events──────▶│   Convergence    │
    │   (peers)   │                │    detector      │
    └──────┬──────┘                └────────┬─────────┘
           │ export / import                │ converged
           ▼                                ▼
    ┌──────────────────────────────────────────────────┐
    │              SnapshotOrchestrator                │
    │   submit ── initial status ── reconcile loops    │
    └──────┬───────────────────────────────┬───────────┘
           │ stage / push / watch / get    │ upsert / query
           ▼                               ▼
    ┌─────────────┐                 ┌─────────────┐
    │   Storage   │                 │ Job registry│
    │   backend   │                 │ (documents) │
    └─────────────┘                 └─────────────┘

Invariants:
    - Every stored job record carries the address of its source database
    - A job's registry record is only rewritten when its status changes
    - All background loops are owned by the orchestrator and stop with it

Version: see _version.py.
"""

from ._version import __version__
from .orchestrator import Snapshot, SnapshotOrchestrator
from .registry import JobRecord, JobRegistry

__all__ = [
    "__version__",
    "SnapshotOrchestrator",
    "Snapshot",
    "JobRecord",
    "JobRegistry",
]
