"""
In-memory storage backend for testing.

Behaves like the remote backend closely enough to drive the orchestrator:
sessions, funding addresses with balances, content-addressed blobs and
jobs whose status the test advances explicitly.

Invariants:
    - cids are content derived, staging the same bytes twice gives one cid
    - watch_jobs() yields the current job state first, then every change
    - All data is lost on process exit

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the StorageBackend protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set

from ..errors import BlobNotFoundError, JobNotFoundError, StorageConnectionError, StorageError
from .base import (
    AccountInfo,
    BalanceInfo,
    DealError,
    Job,
    JobStatus,
    Session,
    WalletAddress,
)

logger = logging.getLogger(__name__)


class InMemoryStorageBackend:
    """In-memory implementation of StorageBackend.

    Attributes:
        initial_status: Status assigned to a job when it is pushed
        auto_fund: Balance credited to every new address (0 = none)

    Example:
        >>> backend = InMemoryStorageBackend()
        >>> cid = await backend.stage(b"data")
        >>> job_id = await backend.push_storage_config(cid)
        >>> backend.set_job_status(job_id, JobStatus.SUCCESS)
    """

    def __init__(
        self,
        initial_status: JobStatus = JobStatus.EXECUTING,
        auto_fund: int = 0,
    ) -> None:
        self.initial_status = initial_status
        self.auto_fund = auto_fund
        self.token: Optional[str] = None
        self.reachable = True
        self.info_available = True
        self._sessions: Dict[str, Session] = {}
        self._addrs: Dict[str, Dict[str, WalletAddress]] = defaultdict(dict)
        self._balances: Dict[str, int] = {}
        self._blobs: Dict[str, bytes] = {}
        self._jobs: Dict[str, Job] = {}
        self._watchers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._failures: List[Exception] = []
        self.info_calls = 0
        self.watch_calls = 0

    def _ensure_reachable(self) -> None:
        if self._failures:
            raise self._failures.pop(0)
        if not self.reachable:
            raise StorageConnectionError("Storage backend unreachable", endpoint="memory://")

    def _session_id(self) -> str:
        for session in self._sessions.values():
            if session.token == self.token:
                return session.id
        raise StorageError("No session for current token", code="UNAUTHORIZED")

    async def create_session(self) -> Session:
        self._ensure_reachable()
        session = Session(id=str(uuid.uuid4()), token=uuid.uuid4().hex)
        self._sessions[session.id] = session
        return session

    def set_token(self, token: str) -> None:
        self.token = token

    async def new_addr(self, name: str, addr_type: str = "bls") -> WalletAddress:
        self._ensure_reachable()
        session_id = self._session_id()
        addr = WalletAddress(addr=f"f3{uuid.uuid4().hex}", name=name, type=addr_type)
        self._addrs[session_id][addr.addr] = addr
        self._balances[addr.addr] = self.auto_fund
        return addr

    async def info(self) -> Optional[AccountInfo]:
        self.info_calls += 1
        self._ensure_reachable()
        if not self.info_available:
            return None
        session_id = self._session_id()
        return AccountInfo(
            id=session_id,
            balances=[
                BalanceInfo(addr=addr, balance=self._balances.get(addr.addr, 0))
                for addr in self._addrs[session_id].values()
            ],
        )

    async def stage(self, data: bytes) -> str:
        self._ensure_reachable()
        cid = "sha256-" + hashlib.sha256(data).hexdigest()
        self._blobs[cid] = bytes(data)
        return cid

    async def get(self, cid: str) -> bytes:
        self._ensure_reachable()
        if cid not in self._blobs:
            raise BlobNotFoundError(cid)
        return self._blobs[cid]

    async def push_storage_config(self, cid: str) -> str:
        self._ensure_reachable()
        if cid not in self._blobs:
            raise BlobNotFoundError(cid)
        job = Job(id=str(uuid.uuid4()), cid=cid, status=self.initial_status)
        self._jobs[job.id] = job
        return job.id

    async def watch_jobs(self, job_ids: Sequence[str]) -> AsyncIterator[Job]:
        self.watch_calls += 1
        self._ensure_reachable()
        for job_id in job_ids:
            if job_id not in self._jobs:
                raise JobNotFoundError(job_id)

        queue: asyncio.Queue = asyncio.Queue()
        for job_id in job_ids:
            self._watchers[job_id].add(queue)
            queue.put_nowait(self._jobs[job_id])
        try:
            while True:
                yield await queue.get()
        finally:
            for job_id in job_ids:
                self._watchers[job_id].discard(queue)

    async def close(self) -> None:
        self.token = None

    # Testing helpers

    def fund(self, addr: str, amount: int) -> None:
        """Credit an address."""
        self._balances[addr] = self._balances.get(addr, 0) + amount

    def forget_address(self, addr: str) -> None:
        """Remove an address from every session (simulates a missing address)."""
        for addrs in self._addrs.values():
            addrs.pop(addr, None)

    def fail_next(self, exception: Exception) -> None:
        """Make the next backend call raise `exception`."""
        self._failures.append(exception)

    def set_job_status(
        self,
        job_id: str,
        status: JobStatus,
        err_cause: str = "",
        deal_errors: Sequence[DealError] = (),
    ) -> Job:
        """Change a job's status and notify watchers."""
        if job_id not in self._jobs:
            raise JobNotFoundError(job_id)
        job = Job(
            id=job_id,
            cid=self._jobs[job_id].cid,
            status=status,
            err_cause=err_cause,
            deal_errors=tuple(deal_errors),
        )
        self._jobs[job_id] = job
        for queue in list(self._watchers[job_id]):
            queue.put_nowait(job)
        logger.debug("Job status changed", extra={"job_id": job_id, "status": status.value})
        return job

    def get_job(self, job_id: str) -> Job:
        return self._jobs[job_id]

    def active_watchers(self, job_id: str) -> int:
        return len(self._watchers.get(job_id, ()))
