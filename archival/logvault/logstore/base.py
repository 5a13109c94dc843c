"""
Base protocol and types for the replicated log store collaborator.

The orchestrator never owns log data. It drives a log store through the
protocols defined here:
- LogStore: opens databases, creates document stores, rebuilds logs
- LogDatabase: an append-only event log that replicates between peers
- DocumentStore: a keyed document database used for the job registry
- EventLog: an immutable, ordered view of log entries

Portable snapshot format:
    UTF-8 JSON {"id": <log id>, "heads": [<hash>...], "values": [<entry>...]}

    Each entry is {"hash", "id", "payload", "next", "clock"}. The hash is
    the SHA-256 of the canonical JSON of the other fields and is checked
    when a log is rebuilt from a snapshot.

Database addresses:
    /logvault/<manifest hash>/<name>

Invariants:
    - Entry hashes are content derived and verified on reconstruction
    - EventLog.values are ordered by (clock, hash), i.e. insertion order
      for a single writer
    - Replication subscriptions are registered synchronously so no event
      emitted after subscribe_replication() returns can be missed

How to change safely:
    - Snapshot format changes must stay readable by log_from_snapshot
    - Add protocol methods with default implementations
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
    Union,
    runtime_checkable,
)

from ..errors import DatabaseNotFoundError, SnapshotFormatError

logger = logging.getLogger(__name__)

ADDRESS_PREFIX = "logvault"


def _canonical_json(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def database_address(name: str, db_type: str = "eventlog") -> str:
    """Build the address of a database from its name and type."""
    manifest = _canonical_json({"name": name, "type": db_type})
    root = hashlib.sha256(manifest).hexdigest()[:46]
    return f"/{ADDRESS_PREFIX}/{root}/{name}"


def parse_address(address: str) -> Tuple[str, str]:
    """Split an address into (root, name).

    Raises:
        DatabaseNotFoundError: If the address is malformed
    """
    parts = address.strip("/").split("/", 2)
    if len(parts) != 3 or parts[0] != ADDRESS_PREFIX or not parts[1] or not parts[2]:
        raise DatabaseNotFoundError(address)
    return parts[1], parts[2]


def is_address(value: str) -> bool:
    """Whether a string is a database address rather than a bare name."""
    try:
        parse_address(value)
    except DatabaseNotFoundError:
        return False
    return True


@dataclass(frozen=True)
class Entry:
    """One immutable log entry.

    Attributes:
        hash: Content hash of the entry
        id: Identifier of the log the entry belongs to
        payload: Entry payload (any JSON value)
        next: Hashes of the entries this one was appended after
        clock: Logical clock, strictly increasing along the chain
    """

    hash: str
    id: str
    payload: Any
    next: Tuple[str, ...]
    clock: int

    @staticmethod
    def compute_hash(log_id: str, payload: Any, next: Iterable[str], clock: int) -> str:
        body = {"id": log_id, "payload": payload, "next": list(next), "clock": clock}
        return hashlib.sha256(_canonical_json(body)).hexdigest()

    @classmethod
    def create(cls, log_id: str, payload: Any, next: Iterable[str], clock: int) -> Entry:
        next = tuple(next)
        return cls(
            hash=cls.compute_hash(log_id, payload, next, clock),
            id=log_id,
            payload=payload,
            next=next,
            clock=clock,
        )

    def verify(self) -> bool:
        return self.hash == self.compute_hash(self.id, self.payload, self.next, self.clock)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "id": self.id,
            "payload": self.payload,
            "next": list(self.next),
            "clock": self.clock,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Entry:
        try:
            return cls(
                hash=data["hash"],
                id=data["id"],
                payload=data.get("payload"),
                next=tuple(data.get("next", ())),
                clock=int(data["clock"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotFormatError(f"Malformed log entry: {e}") from e


class EventLog:
    """Immutable ordered set of entries belonging to one log.

    Example:
        >>> log = EventLog("db", [e1, e2])
        >>> [e.payload for e in log.values]
        ['entry0', 'entry1']
    """

    def __init__(self, log_id: str, entries: Iterable[Entry] = ()) -> None:
        self.id = log_id
        self._entries: Dict[str, Entry] = {e.hash: e for e in entries}

    @property
    def values(self) -> List[Entry]:
        return sorted(self._entries.values(), key=lambda e: (e.clock, e.hash))

    @property
    def heads(self) -> List[str]:
        referenced = {h for e in self._entries.values() for h in e.next}
        return [e.hash for e in self.values if e.hash not in referenced]

    def has(self, entry_hash: str) -> bool:
        return entry_hash in self._entries

    def get(self, entry_hash: str) -> Optional[Entry]:
        return self._entries.get(entry_hash)

    def __len__(self) -> int:
        return len(self._entries)

    def to_snapshot(self) -> Dict[str, Any]:
        """Portable snapshot representation of this log."""
        return {
            "id": self.id,
            "heads": self.heads,
            "values": [e.to_dict() for e in self.values],
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any], length: int = -1) -> EventLog:
        """Rebuild a log from its portable snapshot representation.

        Args:
            data: Parsed snapshot
            length: Keep only the newest `length` entries (-1 keeps all)

        Raises:
            SnapshotFormatError: If the snapshot is malformed, an entry hash
                does not match its content, or a head is missing
        """
        if not isinstance(data, dict) or "id" not in data or "values" not in data:
            raise SnapshotFormatError("Snapshot must contain 'id' and 'values'")

        entries = [Entry.from_dict(item) for item in data["values"]]
        for entry in entries:
            if not entry.verify():
                raise SnapshotFormatError(f"Entry hash mismatch: {entry.hash}")

        log = cls(data["id"], entries)
        for head in data.get("heads", []):
            if not log.has(head):
                raise SnapshotFormatError(f"Snapshot head not in values: {head}")

        if length >= 0:
            log = cls(data["id"], log.values[-length:] if length else [])
        return log


def encode_snapshot(log: EventLog) -> bytes:
    """Serialize a log to snapshot bytes."""
    return json.dumps(log.to_snapshot()).encode("utf-8")


def decode_snapshot(data: bytes) -> Dict[str, Any]:
    """Parse snapshot bytes.

    Raises:
        SnapshotFormatError: If the bytes are not UTF-8 JSON
    """
    try:
        return json.loads(bytes(data).decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SnapshotFormatError(f"Failed to parse snapshot: {e}") from e


@dataclass(frozen=True)
class ReplicationProgress:
    """One entry was received from a peer.

    Attributes:
        address: Database address
        entry: The entry just received
        pending: Hashes of entries still to be fetched after this one
    """

    address: str
    entry: Entry
    pending: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReplicationComplete:
    """A batch of replicated entries has been fully processed."""

    address: str
    count: int = 0


ReplicationEvent = Union[ReplicationProgress, ReplicationComplete]


class ReplicationSubscription:
    """Async iterator over a database's replication events.

    The subscription is registered with its source when constructed and
    stops receiving events once close() is called.

    Example:
        >>> subscription = db.subscribe_replication()
        >>> async for event in subscription:
        ...     handle(event)
        >>> subscription.close()
    """

    def __init__(self, registry: Set[ReplicationSubscription]) -> None:
        self._registry = registry
        self._queue: asyncio.Queue[Optional[ReplicationEvent]] = asyncio.Queue()
        self._closed = False
        registry.add(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ReplicationEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._registry.discard(self)
        # Wake a consumer blocked in __anext__
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[ReplicationEvent]:
        return self

    async def __anext__(self) -> ReplicationEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


@runtime_checkable
class DocumentStore(Protocol):
    """Keyed document database.

    Documents are JSON objects indexed by one field (`index_by`). put()
    is an upsert by that key and is safe for concurrent callers.
    """

    index_by: str

    @abstractmethod
    async def load(self) -> None:
        """Bring the local materialized index up to date."""
        ...

    @abstractmethod
    async def put(self, doc: Dict[str, Any]) -> None:
        """Insert or replace the document keyed by doc[index_by]."""
        ...

    @abstractmethod
    def get(self, key: str) -> List[Dict[str, Any]]:
        """Documents whose key equals `key` (zero or one)."""
        ...

    @abstractmethod
    def query(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        """All documents matching a predicate."""
        ...


@runtime_checkable
class LogDatabase(Protocol):
    """An append-only event log database that replicates between peers."""

    address: str

    @abstractmethod
    async def add(self, payload: Any) -> Entry:
        """Append a payload and return its entry."""
        ...

    @abstractmethod
    async def load(self) -> None:
        """Bring local materialized state up to date."""
        ...

    @property
    @abstractmethod
    def values(self) -> List[Entry]:
        """Entries in insertion order."""
        ...

    @abstractmethod
    def subscribe_replication(self) -> ReplicationSubscription:
        """Subscribe to replication progress and completion events."""
        ...

    @abstractmethod
    async def export_snapshot(self) -> bytes:
        """Serialize the current log to portable snapshot bytes."""
        ...

    @abstractmethod
    async def merge(self, log: EventLog) -> int:
        """Merge entries of another log, returning how many were new."""
        ...

    @abstractmethod
    async def drop(self) -> None:
        """Discard the local replica."""
        ...


@runtime_checkable
class LogStore(Protocol):
    """Factory and session for log databases."""

    @abstractmethod
    async def eventlog(self, name: str) -> LogDatabase:
        """Open or create an event log by name."""
        ...

    @abstractmethod
    async def docs(self, name: str, index_by: str = "id") -> DocumentStore:
        """Open or create a document store by name."""
        ...

    @abstractmethod
    async def open(self, address: str) -> LogDatabase:
        """Open a database by address, replicating from known peers."""
        ...

    @abstractmethod
    async def log_from_snapshot(
        self,
        data: Dict[str, Any],
        length: int = -1,
        timeout: float = 1.0,
    ) -> EventLog:
        """Materialize an EventLog from a parsed snapshot."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close every open database and release the session."""
        ...


@dataclass
class ReplicationFanout:
    """Fan-out helper for replication events."""

    subscriptions: Set[ReplicationSubscription] = field(default_factory=set)

    def subscribe(self) -> ReplicationSubscription:
        return ReplicationSubscription(self.subscriptions)

    def publish(self, event: ReplicationEvent) -> None:
        for subscription in list(self.subscriptions):
            subscription.publish(event)

    def close_all(self) -> None:
        for subscription in list(self.subscriptions):
            subscription.close()
