"""
Job registry for logvault.

A durable mapping from job id to JobRecord, kept in a document store
owned by the log store collaborator (or a local SQLite file). The
document store already serializes concurrent upserts by key, so the
registry adds no locking of its own.

Invariants:
    - Every persisted record carries a non-empty db_address
    - Records are never deleted here
    - Document keys: id, cid, dbAddress, status, errCause, dealErrorsList
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List

from .logstore.base import DocumentStore
from .storage.base import DealError, Job, JobStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobRecord:
    """One archival job as tracked by logvault.

    Attributes:
        id: Job identifier assigned by the storage backend
        cid: Content identifier of the stored snapshot
        db_address: Address of the source log database
        status: Last known job status
        err_cause: Failure reason, empty unless failed
        deal_errors: Errors of individual storage deals
    """

    id: str
    cid: str
    db_address: str
    status: JobStatus
    err_cause: str = ""
    deal_errors: tuple = field(default_factory=tuple)

    @classmethod
    def from_job(cls, job: Job, db_address: str) -> JobRecord:
        """Attach a database address to a backend job."""
        return cls(
            id=job.id,
            cid=job.cid,
            db_address=db_address,
            status=job.status,
            err_cause=job.err_cause,
            deal_errors=tuple(job.deal_errors),
        )

    def with_db_address(self, db_address: str) -> JobRecord:
        return replace(self, db_address=db_address)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to document for the registry."""
        return {
            "id": self.id,
            "cid": self.cid,
            "dbAddress": self.db_address,
            "status": self.status.value,
            "errCause": self.err_cause,
            "dealErrorsList": [e.to_dict() for e in self.deal_errors],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobRecord:
        """Create from a registry document."""
        return cls(
            id=data["id"],
            cid=data.get("cid", ""),
            db_address=data.get("dbAddress", ""),
            status=JobStatus.parse(data["status"]),
            err_cause=data.get("errCause", ""),
            deal_errors=tuple(DealError.from_dict(e) for e in data.get("dealErrorsList", [])),
        )


class JobRegistry:
    """Job records keyed by id on top of a DocumentStore.

    Example:
        >>> registry = JobRegistry(await log_store.docs("jobs", index_by="id"))
        >>> await registry.put(record)
        >>> await registry.get(record.id)
        [JobRecord(...)]
    """

    def __init__(self, docs: DocumentStore) -> None:
        if docs.index_by != "id":
            raise ValueError(f"Job registry must be indexed by 'id', not '{docs.index_by}'")
        self.docs = docs

    async def load(self) -> None:
        await self.docs.load()

    async def put(self, record: JobRecord) -> None:
        """Insert or replace a record.

        Raises:
            ValueError: If the record has no db_address
        """
        if not record.db_address:
            raise ValueError(f"Job record {record.id} has no db_address")
        await self.docs.put(record.to_dict())
        logger.debug(
            "Stored job record",
            extra={"job_id": record.id, "status": record.status.value},
        )

    async def get(self, job_id: str) -> List[JobRecord]:
        """Records for a job id, after loading current state."""
        await self.docs.load()
        return [JobRecord.from_dict(d) for d in self.docs.get(job_id)]

    async def find_by_db_address(self, db_address: str) -> List[JobRecord]:
        """Every record whose dbAddress equals `db_address`."""
        await self.docs.load()
        return [
            JobRecord.from_dict(d)
            for d in self.docs.query(lambda d: d.get("dbAddress") == db_address)
        ]

    async def find_active(self) -> List[JobRecord]:
        """Records whose status is not terminal."""
        await self.docs.load()
        records = [JobRecord.from_dict(d) for d in self.docs.query(lambda d: True)]
        return [r for r in records if not r.is_terminal]
