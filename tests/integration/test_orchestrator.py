"""
Integration tests for SnapshotOrchestrator with in-memory collaborators.

A writer log store and the orchestrator's log store share one
PeerNetwork, so opening the writer's database from the orchestrator
replicates it exactly as a remote peer would.

Tests cover:
- Snapshot submission and job records
- Reconciliation of job status
- Retrieval and reconstruction of stored snapshots
- Wallet provisioning
- Shutdown
"""

import asyncio
import os
import tempfile
import time

import pytest

from archival.logvault.config import (
    BalanceConfig,
    OrchestratorConfig,
    ReconcileConfig,
    RegistryBackend,
    RegistryConfig,
)
from archival.logvault.errors import (
    BlobNotFoundError,
    RetrievalError,
    StorageConnectionError,
    SubmissionError,
)
from archival.logvault.logstore.memory import InMemoryLogStore, PeerNetwork
from archival.logvault.orchestrator import SnapshotOrchestrator
from archival.logvault.registry import JobRecord
from archival.logvault.storage.base import JobStatus
from archival.logvault.storage.memory import InMemoryStorageBackend


async def wait_until(predicate, timeout=2.0):
    """Poll a predicate until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


async def wait_for_status(orchestrator, job_id, status, timeout=2.0):
    """Poll the registry until a job's stored status matches."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        records = await orchestrator.get_job_status(job_id)
        if records and records[0].status == status:
            return records[0]
        await asyncio.sleep(0.01)
    return None


def fast_config(**reconcile):
    return OrchestratorConfig(
        balance=BalanceConfig(poll_seconds=0.01),
        reconcile=ReconcileConfig(interval_seconds=0.02, **reconcile),
    )


class TestSnapshotOrchestrator:
    """Integration tests for SnapshotOrchestrator."""

    @pytest.fixture
    def network(self):
        return PeerNetwork()

    @pytest.fixture
    def backend(self):
        return InMemoryStorageBackend(auto_fund=1)

    @pytest.fixture
    async def writer(self, network):
        """Log store of the peer that owns the data."""
        store = InMemoryLogStore(network)
        yield store
        await store.disconnect()

    @pytest.fixture
    async def source(self, writer):
        """Database with ten entries on the writer peer."""
        db = await writer.eventlog("powergate-test")
        for i in range(10):
            await db.add(f"entry{i}")
        return db

    @pytest.fixture
    async def orchestrator(self, network, backend):
        orchestrator = await SnapshotOrchestrator.create(
            fast_config(),
            backend=backend,
            log_store=InMemoryLogStore(network),
        )
        yield orchestrator
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_store_snapshot_creates_record(self, orchestrator, backend, source):
        """Submitted snapshot is recorded with its database address."""
        record = await asyncio.wait_for(orchestrator.store_snapshot(source.address), 2.0)

        assert record.status == JobStatus.EXECUTING
        assert record.err_cause == ""
        assert record.db_address == source.address

        stored = await orchestrator.get_job_status(record.id)
        assert len(stored) == 1
        assert stored[0].cid == record.cid
        assert backend.get_job(record.id).cid == record.cid
        assert record.id in orchestrator.watched_jobs

    @pytest.mark.asyncio
    async def test_status_change_is_reconciled(self, orchestrator, backend, source):
        """Status change reaches the registry without losing the address."""
        record = await orchestrator.store_snapshot(source.address)

        backend.set_job_status(record.id, JobStatus.SUCCESS)
        updated = await wait_for_status(orchestrator, record.id, JobStatus.SUCCESS)

        assert updated is not None
        assert updated.db_address == source.address
        assert updated.cid == record.cid

    @pytest.mark.asyncio
    async def test_unchanged_status_is_not_rewritten(self, orchestrator, source):
        """Reconciliation ticks without a status change write nothing."""
        await orchestrator.store_snapshot(source.address)
        docs = orchestrator.registry.docs
        assert docs.put_count == 1

        await asyncio.sleep(0.15)

        assert docs.put_count == 1

    @pytest.mark.asyncio
    async def test_failure_details_are_recorded(self, orchestrator, backend, source):
        record = await orchestrator.store_snapshot(source.address)

        backend.set_job_status(record.id, JobStatus.FAILED, err_cause="no miners")
        updated = await wait_for_status(orchestrator, record.id, JobStatus.FAILED)

        assert updated.err_cause == "no miners"
        assert updated.db_address == source.address

    @pytest.mark.asyncio
    async def test_replica_dropped_after_submission(self, orchestrator, network, source):
        await orchestrator.store_snapshot(source.address)

        # Only the writer still holds the database
        assert network.peers_of(source) == []
        assert len(source.values) == 10

    @pytest.mark.asyncio
    async def test_round_trip(self, orchestrator, source):
        """A stored snapshot rebuilds the log in insertion order."""
        await orchestrator.store_snapshot(source.address)

        snapshots = await orchestrator.retrieve_snapshot(source.address)

        assert len(snapshots) == 1
        log = snapshots[0].log
        assert [e.payload for e in log.values] == [f"entry{i}" for i in range(10)]

        fresh = await InMemoryLogStore().open(source.address)
        assert await fresh.merge(log) == 10
        assert [e.payload for e in fresh.values] == [f"entry{i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_retrieve_returns_every_job(self, orchestrator, source):
        first = await orchestrator.store_snapshot(source.address)
        second = await orchestrator.store_snapshot(source.address)

        snapshots = await orchestrator.retrieve_snapshot(source.address)

        assert {s.job.id for s in snapshots} == {first.id, second.id}
        assert all(len(s.log) == 10 for s in snapshots)

    @pytest.mark.asyncio
    async def test_retrieve_unknown_address(self, orchestrator):
        assert await orchestrator.retrieve_snapshot("/logvault/abc/nothing") == []

    @pytest.mark.asyncio
    async def test_retrieve_fails_fast(self, orchestrator, source):
        record = await orchestrator.store_snapshot(source.address)
        await orchestrator.registry.put(
            JobRecord(
                id="job-orphan",
                cid="sha256-missing",
                db_address=source.address,
                status=JobStatus.SUCCESS,
            )
        )

        with pytest.raises(RetrievalError) as exc_info:
            await orchestrator.retrieve_snapshot(source.address)

        assert exc_info.value.job_id == "job-orphan"
        assert record.id != "job-orphan"

    @pytest.mark.asyncio
    async def test_retrieve_failure_settles_other_fetches(
        self, orchestrator, backend, source, monkeypatch
    ):
        record = await orchestrator.store_snapshot(source.address)
        await orchestrator.registry.put(
            JobRecord(
                id="job-orphan",
                cid="sha256-missing",
                db_address=source.address,
                status=JobStatus.SUCCESS,
            )
        )
        cancelled = []

        async def get(cid):
            if cid == "sha256-missing":
                raise BlobNotFoundError(cid)
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(cid)
                raise

        monkeypatch.setattr(backend, "get", get)

        with pytest.raises(RetrievalError):
            await orchestrator.retrieve_snapshot(source.address)

        assert cancelled == [record.cid]

    @pytest.mark.asyncio
    async def test_iter_snapshots(self, orchestrator, source):
        await orchestrator.store_snapshot(source.address)

        snapshots = [s async for s in orchestrator.iter_snapshots(source.address)]

        assert len(snapshots) == 1
        assert snapshots[0].job.db_address == source.address

    @pytest.mark.asyncio
    async def test_submission_failure_leaves_no_record(self, orchestrator, backend, source):
        assert await wait_until(lambda: orchestrator.wallet)
        backend.fail_next(StorageConnectionError("stage failed"))

        with pytest.raises(SubmissionError) as exc_info:
            await orchestrator.store_snapshot(source.address)

        assert isinstance(exc_info.value.__cause__, StorageConnectionError)
        assert await orchestrator.registry.find_by_db_address(source.address) == []
        assert orchestrator.watched_jobs == set()

    @pytest.mark.asyncio
    async def test_retry_after_failed_submission(self, orchestrator, backend, network, source):
        """A failed attempt drops its replica so the retry replicates again."""
        assert await wait_until(lambda: orchestrator.wallet)
        backend.fail_next(StorageConnectionError("stage failed"))

        with pytest.raises(SubmissionError):
            await orchestrator.store_snapshot(source.address)
        assert network.peers_of(source) == []

        record = await orchestrator.store_snapshot(source.address, convergence_timeout=2.0)

        snapshots = await orchestrator.retrieve_snapshot(source.address)
        assert [s.job.id for s in snapshots] == [record.id]
        assert len(snapshots[0].log) == 10

    @pytest.mark.asyncio
    async def test_retry_after_convergence_timeout(self, orchestrator, writer):
        late = await writer.eventlog("late")

        with pytest.raises(SubmissionError):
            await orchestrator.store_snapshot(late.address, convergence_timeout=0.05)

        await late.add("entry0")
        record = await orchestrator.store_snapshot(late.address, convergence_timeout=2.0)

        assert record.db_address == late.address

    @pytest.mark.asyncio
    async def test_concurrent_captures_of_one_address(self, orchestrator, source):
        """Overlapping captures each archive the full log."""
        first, second = await asyncio.wait_for(
            asyncio.gather(
                orchestrator.store_snapshot(source.address),
                orchestrator.store_snapshot(source.address),
            ),
            2.0,
        )

        assert first.id != second.id
        snapshots = await orchestrator.retrieve_snapshot(source.address)
        assert sorted(len(s.log) for s in snapshots) == [10, 10]

    @pytest.mark.asyncio
    async def test_database_loaded_before_export(self, orchestrator, source, monkeypatch):
        store = orchestrator.log_store
        opened = []
        original_open = store.open

        async def recording_open(address):
            db = await original_open(address)
            opened.append(db)
            return db

        monkeypatch.setattr(store, "open", recording_open)

        await orchestrator.store_snapshot(source.address)

        assert len(opened) == 1
        assert opened[0].load_count >= 1
        assert opened[0].dropped

    @pytest.mark.asyncio
    async def test_malformed_address_is_submission_error(self, orchestrator):
        with pytest.raises(SubmissionError):
            await orchestrator.store_snapshot("not-an-address")

    @pytest.mark.asyncio
    async def test_empty_database_never_converges(self, orchestrator, writer):
        empty = await writer.eventlog("empty")

        with pytest.raises(SubmissionError) as exc_info:
            await orchestrator.store_snapshot(empty.address, convergence_timeout=0.05)

        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)

    @pytest.mark.asyncio
    async def test_snapshot_job_closes_subscription(self, orchestrator, backend, source):
        record = await orchestrator.store_snapshot(source.address)

        job = await orchestrator.snapshot_job(record.id)

        assert job.id == record.id
        assert backend.active_watchers(record.id) == 0

    @pytest.mark.asyncio
    async def test_wait_for_job(self, orchestrator, backend, source):
        record = await orchestrator.store_snapshot(source.address)

        async def finish():
            await asyncio.sleep(0.02)
            backend.set_job_status(record.id, JobStatus.SUCCESS)

        task = asyncio.create_task(finish())
        job = await orchestrator.wait_for_job(record.id, timeout=1.0)
        await task

        assert job.status == JobStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_wallet_populated_after_funding(self, network):
        backend = InMemoryStorageBackend()
        orchestrator = await SnapshotOrchestrator.create(
            fast_config(), backend=backend, log_store=InMemoryLogStore(network)
        )
        try:
            await asyncio.sleep(0.05)
            assert orchestrator.wallet == {}

            backend.fund(orchestrator.address.addr, 5)

            assert await wait_until(lambda: orchestrator.wallet)
            assert orchestrator.wallet["balance"] == 5
            assert orchestrator.wallet["name"] == "_default"
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_create_unreachable_backend(self, network):
        backend = InMemoryStorageBackend()
        backend.reachable = False

        with pytest.raises(StorageConnectionError):
            await SnapshotOrchestrator.create(
                fast_config(), backend=backend, log_store=InMemoryLogStore(network)
            )

    @pytest.mark.asyncio
    async def test_stop_cancels_watchers(self, orchestrator, backend, source):
        record = await orchestrator.store_snapshot(source.address)
        assert orchestrator.watched_jobs == {record.id}

        await orchestrator.stop()
        calls = backend.watch_calls
        await asyncio.sleep(0.1)

        assert orchestrator.watched_jobs == set()
        assert backend.watch_calls == calls

    @pytest.mark.asyncio
    async def test_watch_job_is_idempotent(self, orchestrator, source):
        record = await orchestrator.store_snapshot(source.address)

        assert orchestrator.watch_job(record.id) is orchestrator.watch_job(record.id)


class TestReconciliation:
    """Tests for single reconciliation ticks and loop policy."""

    @pytest.fixture
    def backend(self):
        return InMemoryStorageBackend(auto_fund=1)

    @pytest.fixture
    async def orchestrator(self, backend):
        orchestrator = await SnapshotOrchestrator.create(
            fast_config(stop_on_terminal=True), backend=backend, log_store=InMemoryLogStore()
        )
        await wait_until(lambda: orchestrator.wallet)
        yield orchestrator
        await orchestrator.stop()

    async def submit(self, orchestrator, backend, status=JobStatus.EXECUTING):
        """Create a backend job and its record without starting a loop."""
        cid = await backend.stage(b"snapshot")
        job_id = await backend.push_storage_config(cid)
        backend.set_job_status(job_id, status)
        record = JobRecord(
            id=job_id, cid=cid, db_address="/logvault/abc/events", status=status
        )
        await orchestrator.registry.put(record)
        return record

    @pytest.mark.asyncio
    async def test_tick_error_is_isolated(self, orchestrator, backend):
        record = await self.submit(orchestrator, backend)
        backend.fail_next(StorageConnectionError("watch failed"))

        assert await orchestrator.reconcile(record.id) is None

        backend.set_job_status(record.id, JobStatus.SUCCESS)
        updated = await orchestrator.reconcile(record.id)
        assert updated.status == JobStatus.SUCCESS
        assert updated.db_address == record.db_address

    @pytest.mark.asyncio
    async def test_tick_without_record(self, orchestrator, backend):
        cid = await backend.stage(b"orphan")
        job_id = await backend.push_storage_config(cid)

        assert await orchestrator.reconcile(job_id) is None

    @pytest.mark.asyncio
    async def test_stop_on_terminal(self, orchestrator, backend):
        record = await self.submit(orchestrator, backend)
        orchestrator.watch_job(record.id)

        backend.set_job_status(record.id, JobStatus.CANCELED)

        assert await wait_until(lambda: record.id not in orchestrator.watched_jobs)
        stored = await orchestrator.get_job_status(record.id)
        assert stored[0].status == JobStatus.CANCELED

    @pytest.mark.asyncio
    async def test_explicit_zero_interval(self, orchestrator, backend):
        """An explicit interval of 0 is used, not the configured default."""
        orchestrator.config.reconcile = ReconcileConfig(interval_seconds=60.0)
        record = await self.submit(orchestrator, backend)
        calls = backend.watch_calls

        orchestrator.watch_job(record.id, interval=0)

        assert await wait_until(lambda: backend.watch_calls >= calls + 5, timeout=1.0)

    @pytest.mark.asyncio
    async def test_resume_watchers(self, orchestrator, backend):
        active = await self.submit(orchestrator, backend, JobStatus.QUEUED)
        await self.submit(orchestrator, backend, JobStatus.SUCCESS)

        assert await orchestrator.resume_watchers() == 1
        assert orchestrator.watched_jobs == {active.id}


class TestDurableRegistry:
    """Orchestrator with a SQLite-backed registry."""

    @pytest.fixture
    def config(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield OrchestratorConfig(
                balance=BalanceConfig(poll_seconds=0.01),
                reconcile=ReconcileConfig(interval_seconds=0.02),
                registry=RegistryConfig(
                    backend=RegistryBackend.SQLITE,
                    path=os.path.join(tmpdir, "jobs.db"),
                ),
            )

    @pytest.mark.asyncio
    async def test_records_survive_restart(self, config):
        network = PeerNetwork()
        writer = InMemoryLogStore(network)
        source = await writer.eventlog("durable")
        await source.add("entry0")
        backend = InMemoryStorageBackend(auto_fund=1)

        first = await SnapshotOrchestrator.create(
            config, backend=backend, log_store=InMemoryLogStore(network)
        )
        record = await first.store_snapshot(source.address)
        await first.stop()

        second = await SnapshotOrchestrator.create(
            config, backend=backend, log_store=InMemoryLogStore(network)
        )
        try:
            assert await second.get_job_status(record.id) == [record]
            assert await second.resume_watchers() == 1
        finally:
            await second.stop()
            await writer.disconnect()
