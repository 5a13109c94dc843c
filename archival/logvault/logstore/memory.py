"""
In-memory log store implementation.

This module provides a replicating log store that keeps all data in
process memory. It is used for:
- Unit and integration tests of the orchestrator
- Embedding logvault in a process that already holds the log data

Replication model:
    Stores attached to the same PeerNetwork are peers. Opening an address
    that other peers hold starts a replication pass: entries are fetched
    from each peer's heads back towards the root, one
    ReplicationProgress event per entry, followed by one
    ReplicationComplete event for the batch. Appending to a database
    announces the new head so the other replicas run the same pass.

Invariants:
    - All data is lost on process exit
    - Replication never delivers an entry the target already has
    - A peer with an empty log produces no events

How to change safely:
    - Keep interface compatible with the LogStore protocol
    - Keep the event order (progress events, then one complete event)
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import DatabaseNotFoundError
from .base import (
    Entry,
    EventLog,
    ReplicationComplete,
    ReplicationFanout,
    ReplicationProgress,
    ReplicationSubscription,
    database_address,
    encode_snapshot,
    parse_address,
)

logger = logging.getLogger(__name__)


class PeerNetwork:
    """Connects in-memory log stores so their databases replicate.

    Example:
        >>> network = PeerNetwork()
        >>> writer = InMemoryLogStore(network)
        >>> reader = InMemoryLogStore(network)
    """

    def __init__(self, fetch_delay: float = 0.0) -> None:
        """Initialize the network.

        Args:
            fetch_delay: Seconds to wait per fetched entry (simulated latency)
        """
        self.fetch_delay = fetch_delay
        self._replicas: Dict[str, Set[InMemoryDatabase]] = {}

    def join(self, db: InMemoryDatabase) -> None:
        self._replicas.setdefault(db.address, set()).add(db)

    def leave(self, db: InMemoryDatabase) -> None:
        replicas = self._replicas.get(db.address)
        if replicas is not None:
            replicas.discard(db)
            if not replicas:
                del self._replicas[db.address]

    def peers_of(self, db: InMemoryDatabase) -> List[InMemoryDatabase]:
        return [r for r in self._replicas.get(db.address, ()) if r is not db]

    async def replicate(self, target: InMemoryDatabase) -> int:
        """Pull missing entries from every peer replica into `target`.

        Returns:
            Number of entries received
        """
        total = 0
        for peer in self.peers_of(target):
            total += await self._replicate_from(peer, target)
        return total

    async def _replicate_from(self, peer: InMemoryDatabase, target: InMemoryDatabase) -> int:
        to_fetch = deque(h for h in peer.heads if not target.has(h))
        seen = set(to_fetch)
        count = 0

        while to_fetch:
            entry_hash = to_fetch.popleft()
            entry = peer.get(entry_hash)
            if entry is None:
                continue
            for parent in entry.next:
                if parent not in seen and not target.has(parent):
                    seen.add(parent)
                    to_fetch.append(parent)

            await asyncio.sleep(self.fetch_delay)
            if target.dropped:
                return count
            target.receive(entry, pending=tuple(to_fetch))
            count += 1

        if count:
            target.complete(count)
            logger.debug(
                "Replicated entries from peer",
                extra={"address": target.address, "count": count},
            )
        return count


class InMemoryDatabase:
    """Append-only event log held in memory.

    Implements the LogDatabase protocol.
    """

    def __init__(self, store: InMemoryLogStore, address: str) -> None:
        self.address = address
        self.name = parse_address(address)[1]
        self._store = store
        self._entries: Dict[str, Entry] = {}
        self._max_clock = 0
        self._fanout = ReplicationFanout()
        self.dropped = False
        self.load_count = 0

    @property
    def log(self) -> EventLog:
        return EventLog(self.address, self._entries.values())

    @property
    def values(self) -> List[Entry]:
        return self.log.values

    @property
    def heads(self) -> List[str]:
        return self.log.heads

    def has(self, entry_hash: str) -> bool:
        return entry_hash in self._entries

    def get(self, entry_hash: str) -> Optional[Entry]:
        return self._entries.get(entry_hash)

    async def add(self, payload: Any) -> Entry:
        entry = Entry.create(self.address, payload, self.heads, self._max_clock + 1)
        self._insert(entry)
        self._store.announce(self)
        return entry

    async def load(self) -> None:
        self.load_count += 1

    def subscribe_replication(self) -> ReplicationSubscription:
        return self._fanout.subscribe()

    async def export_snapshot(self) -> bytes:
        return encode_snapshot(self.log)

    async def merge(self, log: EventLog) -> int:
        added = 0
        for entry in log.values:
            if entry.hash not in self._entries:
                self._insert(entry)
                added += 1
        return added

    async def drop(self) -> None:
        self.dropped = True
        self._entries.clear()
        self._max_clock = 0
        self._fanout.close_all()
        self._store.forget(self)
        logger.info("Dropped database", extra={"address": self.address})

    def receive(self, entry: Entry, pending: tuple = ()) -> None:
        """Store an entry received from a peer and emit a progress event."""
        if entry.hash in self._entries:
            return
        self._insert(entry)
        self._fanout.publish(ReplicationProgress(self.address, entry, pending))

    def complete(self, count: int) -> None:
        self._fanout.publish(ReplicationComplete(self.address, count))

    def close(self) -> None:
        self._fanout.close_all()

    def _insert(self, entry: Entry) -> None:
        self._entries[entry.hash] = entry
        self._max_clock = max(self._max_clock, entry.clock)


class InMemoryDocumentStore:
    """Keyed document store held in memory.

    Implements the DocumentStore protocol. Documents are copied on the
    way in and out so callers cannot mutate stored state.
    """

    def __init__(self, name: str, index_by: str = "id") -> None:
        self.name = name
        self.index_by = index_by
        self._docs: Dict[str, Dict[str, Any]] = {}
        self.put_count = 0

    async def load(self) -> None:
        pass

    async def put(self, doc: Dict[str, Any]) -> None:
        key = doc.get(self.index_by)
        if not key:
            raise ValueError(f"Document is missing index field '{self.index_by}'")
        self._docs[key] = copy.deepcopy(doc)
        self.put_count += 1

    def get(self, key: str) -> List[Dict[str, Any]]:
        doc = self._docs.get(key)
        return [copy.deepcopy(doc)] if doc is not None else []

    def query(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._docs.values() if predicate(d)]


class InMemoryLogStore:
    """In-memory implementation of LogStore.

    Attributes:
        network: Peer network shared with other stores (optional)

    Example:
        >>> store = InMemoryLogStore(PeerNetwork())
        >>> db = await store.eventlog("events")
        >>> await db.add("entry0")
    """

    def __init__(self, network: Optional[PeerNetwork] = None) -> None:
        self.network = network or PeerNetwork()
        self._databases: Dict[str, InMemoryDatabase] = {}
        self._docs: Dict[str, InMemoryDocumentStore] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._connected = True

    async def eventlog(self, name: str) -> InMemoryDatabase:
        return await self.open(database_address(name))

    async def docs(self, name: str, index_by: str = "id") -> InMemoryDocumentStore:
        if name not in self._docs:
            self._docs[name] = InMemoryDocumentStore(name, index_by=index_by)
        return self._docs[name]

    async def open(self, address: str) -> InMemoryDatabase:
        if not self._connected:
            raise DatabaseNotFoundError(address)
        parse_address(address)

        db = self._databases.get(address)
        if db is None:
            db = InMemoryDatabase(self, address)
            self._databases[address] = db
            self.network.join(db)
            logger.debug("Opened database", extra={"address": address})

        if self.network.peers_of(db):
            self._spawn(self.network.replicate(db))
        return db

    async def log_from_snapshot(
        self,
        data: Dict[str, Any],
        length: int = -1,
        timeout: float = 1.0,
    ) -> EventLog:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, EventLog.from_snapshot, data, length),
            timeout=timeout,
        )

    async def disconnect(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for db in list(self._databases.values()):
            db.close()
            self.network.leave(db)
        self._databases.clear()
        self._connected = False
        logger.debug("InMemoryLogStore disconnected")

    def announce(self, db: InMemoryDatabase) -> None:
        """Tell the replicas of `db` on other stores that new heads exist."""
        for peer in self.network.peers_of(db):
            peer._store._spawn(self.network.replicate(peer))

    def forget(self, db: InMemoryDatabase) -> None:
        self.network.leave(db)
        self._databases.pop(db.address, None)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
