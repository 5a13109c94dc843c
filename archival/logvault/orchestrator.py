"""
Snapshot job orchestrator.

Takes a live, replicating log database, waits until it has converged,
captures a snapshot, hands it to the storage backend as an archival job
and tracks that job in the job registry until the process stops. In the
other direction it finds stored snapshots for a database address, fetches
them and rebuilds working logs.

Lifecycle of one job:
    1. store_snapshot() opens the database and waits for convergence
    2. The database is exported, staged and pushed as a storage job
    3. The job's initial status is read from the backend's job stream
    4. The record (with db_address) is written to the registry
    5. A reconciliation loop for the job starts
    6. The local replica is dropped

Invariants:
    - The registry write from submission happens before the job's
      reconciliation loop starts
    - Reconciliation rewrites a record only when the status changed, and
      always keeps the stored db_address
    - A failed submission leaves no record and no local replica behind
    - Captures of one address never overlap
    - stop() cancels every background task, then releases the log store
      and the backend client

How to change safely:
    - Keep registry writes stitched with db_address
    - Test cancellation paths when adding background tasks
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Optional

from .config import OrchestratorConfig, RegistryBackend, RegistryConfig
from .convergence import ConvergenceDetector
from .errors import JobNotFoundError, RetrievalError, SubmissionError
from .logstore.base import EventLog, LogStore, decode_snapshot
from .logstore.memory import InMemoryLogStore
from .logstore.sqlite import SqliteDocumentStore
from .provisioning import initialize, wait_for_balance
from .registry import JobRecord, JobRegistry
from .storage.base import Job, StorageBackend, WalletAddress, create_storage_backend

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """A stored job paired with the log rebuilt from its snapshot.

    Attributes:
        job: Registry record of the archival job
        log: Reconstructed log, owned by the caller
    """

    job: JobRecord
    log: EventLog


async def open_registry(config: RegistryConfig, log_store: LogStore) -> JobRegistry:
    """Open the job registry configured by `config`."""
    if config.backend == RegistryBackend.SQLITE:
        docs = SqliteDocumentStore(config.path, name=config.name, index_by="id")
    else:
        docs = await log_store.docs(config.name, index_by="id")
    registry = JobRegistry(docs)
    await registry.load()
    return registry


class SnapshotOrchestrator:
    """Drives snapshot jobs between a log store and a storage backend.

    This constructor should not be called directly, use create().

    Attributes:
        config: Orchestrator configuration
        registry: Job registry
        address: Default funding address

    Example:
        >>> orchestrator = await SnapshotOrchestrator.create()
        >>> record = await orchestrator.store_snapshot(db.address)
        >>> snapshots = await orchestrator.retrieve_snapshot(db.address)
        >>> await orchestrator.stop()
    """

    def __init__(
        self,
        registry: JobRegistry,
        log_store: LogStore,
        backend: StorageBackend,
        config: OrchestratorConfig,
        address: Optional[WalletAddress] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.address = address
        self._log_store = log_store
        self._backend = backend
        self._wallet: dict[str, Any] = {}
        self._job_watchers: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._capture_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    async def create(
        cls,
        config: OrchestratorConfig | str | None = None,
        *,
        backend: StorageBackend | None = None,
        log_store: LogStore | None = None,
        registry: JobRegistry | None = None,
    ) -> SnapshotOrchestrator:
        """Provision a storage session and return a ready orchestrator.

        Args:
            config: Configuration, or a backend endpoint URL (loaded from
                the environment when omitted)
            backend: Storage backend client (built from config when omitted)
            log_store: Log store session (in-memory when omitted)
            registry: Job registry (opened from config when omitted)

        Raises:
            StorageConnectionError: If the backend cannot be reached
        """
        if isinstance(config, str):
            config = OrchestratorConfig.for_endpoint(config)
        config = config or OrchestratorConfig.from_env()

        owns_backend = backend is None
        backend = backend or create_storage_backend(config.storage)
        try:
            provisioned = await initialize(
                backend,
                address_name=config.storage.address_name,
                address_type=config.storage.address_type,
            )
        except Exception:
            if owns_backend:
                await backend.close()
            raise

        log_store = log_store or InMemoryLogStore()
        if registry is None:
            registry = await open_registry(config.registry, log_store)

        orchestrator = cls(registry, log_store, backend, config, address=provisioned.address)
        orchestrator._spawn(orchestrator._fill_wallet(provisioned.address))
        return orchestrator

    @property
    def wallet(self) -> dict[str, Any]:
        """Funding address info, {} until its balance has been observed."""
        return dict(self._wallet)

    @property
    def log_store(self) -> LogStore:
        """The log store session shared with callers."""
        return self._log_store

    @property
    def backend(self) -> StorageBackend:
        """The authorized storage backend client."""
        return self._backend

    @property
    def watched_jobs(self) -> set[str]:
        """Job ids with a running reconciliation loop."""
        return {job_id for job_id, task in self._job_watchers.items() if not task.done()}

    async def _fill_wallet(self, address: WalletAddress) -> None:
        try:
            balance = await wait_for_balance(
                self._backend,
                address.addr,
                self.config.balance.min_balance,
                interval=self.config.balance.poll_seconds,
                deadline=self.config.balance.deadline_seconds,
            )
        except Exception as e:
            logger.error(f"Wallet balance wait failed: {e}", exc_info=True)
            return

        self._wallet = replace(address, balance=balance).to_dict()
        logger.info("Wallet funded", extra={"address": address.addr, "balance": balance})

    async def get_job_status(self, job_id: str) -> list[JobRecord]:
        """Records stored for a job id (zero or one)."""
        return await self.registry.get(job_id)

    async def snapshot_job(self, job_id: str) -> Job:
        """Current status of a job.

        Subscribes to the job stream, takes the first update and closes
        the subscription.

        Raises:
            JobNotFoundError: If the stream ends without an update
        """
        async with aclosing(self._backend.watch_jobs([job_id])) as updates:
            async for job in updates:
                return job
        raise JobNotFoundError(job_id)

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Wait until a job reaches a terminal status.

        Raises:
            asyncio.TimeoutError: If timeout elapses first
            JobNotFoundError: If the stream ends before a terminal status
        """

        async def consume() -> Job:
            async with aclosing(self._backend.watch_jobs([job_id])) as updates:
                async for job in updates:
                    if job.status.is_terminal:
                        return job
            raise JobNotFoundError(job_id)

        return await asyncio.wait_for(consume(), timeout=timeout)

    async def store_snapshot(
        self,
        db_address: str,
        convergence_timeout: Optional[float] = None,
    ) -> JobRecord:
        """Snapshot a database once replicated and submit it as a job.

        The local replica is dropped after submission.

        Captures of the same address run one at a time, each on a fresh
        replica.

        Args:
            db_address: Address of the database to snapshot
            convergence_timeout: Seconds to wait for convergence (None = no limit)

        Returns:
            The persisted job record

        Raises:
            SubmissionError: If opening, converging, exporting or submitting
                fails. No record is written and the local replica is
                dropped in that case.
        """
        lock = self._capture_locks.setdefault(db_address, asyncio.Lock())
        async with lock:
            return await self._capture(db_address, convergence_timeout)

    async def _capture(self, db_address: str, convergence_timeout: Optional[float]) -> JobRecord:
        try:
            db = await self._log_store.open(db_address)
        except Exception as e:
            raise SubmissionError(f"Failed to open database: {e}", db_address) from e

        subscription = db.subscribe_replication()
        detector = ConvergenceDetector(db_address)
        logger.info("Waiting for replication", extra={"address": db_address})

        try:
            await detector.wait(subscription, timeout=convergence_timeout)
            await db.load()
            data = await db.export_snapshot()
            cid = await self._backend.stage(data)
            job_id = await self._backend.push_storage_config(cid)
            job = await self.snapshot_job(job_id)
            record = JobRecord.from_job(job, db_address)
            await self.registry.put(record)
        except Exception as e:
            await db.drop()
            raise SubmissionError(f"Failed to submit snapshot: {e}", db_address) from e
        finally:
            subscription.close()

        self.watch_job(job_id)

        await db.drop()
        logger.info(
            "Snapshot submitted",
            extra={
                "address": db_address,
                "job_id": record.id,
                "cid": record.cid,
                "status": record.status.value,
                "bytes": len(data),
            },
        )
        return record

    def watch_job(self, job_id: str, interval: Optional[float] = None) -> asyncio.Task:
        """Start the reconciliation loop for a job (one loop per job id)."""
        task = self._job_watchers.get(job_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(
            self._reconcile_loop(
                job_id,
                interval if interval is not None else self.config.reconcile.interval_seconds,
            ),
            name=f"reconcile-{job_id}",
        )
        self._job_watchers[job_id] = task
        return task

    async def _reconcile_loop(self, job_id: str, interval: float) -> None:
        while True:
            record = await self.reconcile(job_id)
            if self.config.reconcile.stop_on_terminal and record and record.is_terminal:
                logger.info(
                    "Job reached terminal status, reconciliation stopped",
                    extra={"job_id": job_id, "status": record.status.value},
                )
                return
            await asyncio.sleep(interval)

    async def reconcile(self, job_id: str) -> Optional[JobRecord]:
        """Run one reconciliation tick for a job.

        Errors are logged and swallowed so the loop keeps running.

        Returns:
            The record as stored after the tick, None if the tick failed
        """
        try:
            current = await self.registry.get(job_id)
            fresh = await self.snapshot_job(job_id)
            if not current:
                logger.warning("No stored record for watched job", extra={"job_id": job_id})
                return None

            stored = current[0]
            if stored.status == fresh.status:
                return stored

            updated = JobRecord.from_job(fresh, stored.db_address)
            await self.registry.put(updated)
            logger.info(
                "Job status changed",
                extra={
                    "job_id": job_id,
                    "from_status": stored.status.value,
                    "to_status": updated.status.value,
                },
            )
            return updated

        except Exception as e:
            logger.error(f"Reconciliation of job {job_id} failed: {e}", exc_info=True)
            return None

    async def resume_watchers(self) -> int:
        """Start reconciliation loops for every non-terminal stored job."""
        records = await self.registry.find_active()
        for record in records:
            self.watch_job(record.id)
        if records:
            logger.info(f"Resumed {len(records)} job watchers")
        return len(records)

    async def retrieve_snapshot(self, db_address: str) -> list[Snapshot]:
        """Fetch and rebuild every stored snapshot of a database.

        All matching jobs are fetched concurrently. The first failure
        cancels the remaining fetches and aborts the call.

        Raises:
            RetrievalError: If a fetch or reconstruction fails
        """
        records = await self.registry.find_by_db_address(db_address)
        tasks = [asyncio.create_task(self._fetch_snapshot(r)) for r in records]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def iter_snapshots(self, db_address: str) -> AsyncIterator[Snapshot]:
        """Yield stored snapshots of a database as their fetches complete."""
        records = await self.registry.find_by_db_address(db_address)
        tasks = [asyncio.create_task(self._fetch_snapshot(r)) for r in records]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            for task in tasks:
                task.cancel()

    async def _fetch_snapshot(self, record: JobRecord) -> Snapshot:
        try:
            data = await self._backend.get(record.cid)
            log = await self._log_store.log_from_snapshot(
                decode_snapshot(data),
                length=-1,
                timeout=self.config.retrieval.reconstruct_timeout_seconds,
            )
        except Exception as e:
            raise RetrievalError(
                f"Failed to retrieve snapshot {record.cid}: {e!r}",
                db_address=record.db_address,
                job_id=record.id,
            ) from e

        logger.debug(
            "Snapshot retrieved",
            extra={"job_id": record.id, "cid": record.cid, "entries": len(log)},
        )
        return Snapshot(job=record, log=log)

    async def stop(self) -> None:
        """Cancel every background task and release collaborators."""
        tasks = [*self._job_watchers.values(), *self._tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._job_watchers.clear()
        self._tasks.clear()

        await self._log_store.disconnect()
        await self._backend.close()
        logger.info("Orchestrator stopped")

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
