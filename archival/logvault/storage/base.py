"""
Base protocol and types for the remote storage backend.

The storage backend is a content-addressed store that runs asynchronous
archival jobs into a hot and a cold tier. logvault consumes it through
the StorageBackend protocol:
- session and token management
- funding addresses and balances
- staging and fetching blobs by content identifier (cid)
- pushing a storage configuration for a cid (creates a job)
- watching job status

Invariants:
    - Job objects never carry a database address; that is logvault's
      concern and is attached by the orchestrator
    - watch_jobs() yields the current state of each watched job first,
      then every later change
    - Terminal statuses are SUCCESS, FAILED and CANCELED

How to change safely:
    - Protocol changes require updating all implementations
    - Keep Job.to_dict() keys stable, they are persisted by the registry
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from ..config import StorageBackendConfig

AUTH_HEADER = "x-ffs-token"
TRANSPORT_AUTH_HEADER = "x-ipfs-ffs-auth"


class JobStatus(Enum):
    """Lifecycle of an archival job as reported by the backend."""

    QUEUED = "QUEUED"
    EXECUTING = "EXECUTING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: Any) -> JobStatus:
        """Accept enum members, names, or backend-prefixed names.

        Raises:
            ValueError: If the value is not a known status
        """
        if isinstance(value, cls):
            return value
        text = str(value).upper()
        if text.startswith("JOB_STATUS_"):
            text = text[len("JOB_STATUS_"):]
        return cls(text)


TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELED})


@dataclass(frozen=True)
class DealError:
    """Failure of one underlying storage deal.

    Attributes:
        proposal_cid: Deal proposal identifier
        miner: Storage provider the deal was made with
        message: Failure description
    """

    proposal_cid: str = ""
    miner: str = ""
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"proposalCid": self.proposal_cid, "miner": self.miner, "message": self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DealError:
        return cls(
            proposal_cid=data.get("proposalCid", ""),
            miner=data.get("miner", ""),
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class Job:
    """Backend-native job status.

    Attributes:
        id: Job identifier assigned by the backend
        cid: Content identifier the job stores
        status: Current status
        err_cause: Failure reason, empty unless failed
        deal_errors: Errors of individual storage deals
    """

    id: str
    cid: str
    status: JobStatus
    err_cause: str = ""
    deal_errors: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "cid": self.cid,
            "status": self.status.value,
            "errCause": self.err_cause,
            "dealErrorsList": [e.to_dict() for e in self.deal_errors],
        }


@dataclass(frozen=True)
class WalletAddress:
    """Funding address on the backend.

    Attributes:
        addr: Address string
        name: Human readable name
        type: Key scheme tag
        balance: Last observed balance
    """

    addr: str
    name: str
    type: str = "bls"
    balance: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"addr": self.addr, "name": self.name, "type": self.type, "balance": self.balance}


@dataclass(frozen=True)
class BalanceInfo:
    """Balance of one address."""

    addr: WalletAddress
    balance: int


@dataclass(frozen=True)
class AccountInfo:
    """Account info of the current session."""

    id: str
    balances: List[BalanceInfo] = field(default_factory=list)

    def balance_of(self, address: str) -> Optional[BalanceInfo]:
        for info in self.balances:
            if info.addr and info.addr.addr == address:
                return info
        return None


@dataclass(frozen=True)
class Session:
    """An authenticated session on the backend."""

    id: str
    token: str


def transport_options(endpoint: str, token: str) -> Dict[str, Any]:
    """Client options for the content-addressed transport behind `endpoint`.

    The same long-lived transport is shared by the log store and the
    storage backend; the session token authorizes both.

    Returns:
        Dict with host, port, protocol and headers
    """
    parts = urlsplit(endpoint)
    return {
        "host": parts.hostname,
        "port": parts.port or 443,
        "protocol": parts.scheme,
        "headers": {TRANSPORT_AUTH_HEADER: token},
    }


@runtime_checkable
class StorageBackend(Protocol):
    """Protocol for storage backends."""

    @abstractmethod
    async def create_session(self) -> Session:
        """Create a session and return it with its token.

        Raises:
            StorageConnectionError: If the backend is unreachable
        """
        ...

    @abstractmethod
    def set_token(self, token: str) -> None:
        """Authorize subsequent calls with a session token."""
        ...

    @abstractmethod
    async def new_addr(self, name: str, addr_type: str = "bls") -> WalletAddress:
        """Create a funding address in the current session."""
        ...

    @abstractmethod
    async def info(self) -> Optional[AccountInfo]:
        """Account info for the current session, None if unavailable."""
        ...

    @abstractmethod
    async def stage(self, data: bytes) -> str:
        """Store a blob in the hot tier and return its cid."""
        ...

    @abstractmethod
    async def get(self, cid: str) -> bytes:
        """Fetch a blob by cid.

        Raises:
            BlobNotFoundError: If no blob is stored under cid
        """
        ...

    @abstractmethod
    async def push_storage_config(self, cid: str) -> str:
        """Start an archival job for cid and return the job id."""
        ...

    @abstractmethod
    def watch_jobs(self, job_ids: Sequence[str]) -> AsyncIterator[Job]:
        """Stream status updates for jobs.

        Close the iterator (aclose()) to cancel the subscription.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release client resources."""
        ...


def create_storage_backend(config: "StorageBackendConfig") -> StorageBackend:
    """Factory function to create the storage backend client from configuration."""
    from .http import HttpStorageBackend

    return HttpStorageBackend(
        endpoint=config.endpoint,
        timeout_seconds=config.timeout_seconds,
    )
