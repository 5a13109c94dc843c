"""
Error types for logvault.

This module defines the exception hierarchy shared by the orchestrator
and its collaborators:
- LogVaultError: Base exception
- StorageError: Storage backend failures
- LogStoreError: Log store failures
- SubmissionError / RetrievalError: Orchestrator operation failures

Invariants:
    - All errors inherit from LogVaultError
    - Errors include context for debugging
    - Orchestrator errors chain the collaborator error as __cause__
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LogVaultError(Exception):
    """Base exception for all logvault errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "LOGVAULT_ERROR"
        self.details = details or {}


class StorageError(LogVaultError):
    """Base exception for storage backend operations."""

    def __init__(self, message: str, code: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, code=code or "STORAGE_ERROR", details=details)


class StorageConnectionError(StorageError):
    """Storage backend is unreachable or returned a transport error.

    Raised when:
    - The control API cannot be reached
    - A request times out
    - The backend answers with a server error
    """

    def __init__(self, message: str, endpoint: Optional[str] = None) -> None:
        super().__init__(message, code="STORAGE_CONNECTION_ERROR", endpoint=endpoint)
        self.endpoint = endpoint


class ProvisioningError(StorageError):
    """Provisioning cannot succeed, retrying will not help.

    Raised when:
    - The backend returns no account info
    - The funding address is missing from the balances list
    """

    def __init__(self, message: str, address: Optional[str] = None) -> None:
        super().__init__(message, code="PROVISIONING_ERROR", address=address)
        self.address = address


class JobNotFoundError(StorageError):
    """The backend does not know the requested job."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", code="JOB_NOT_FOUND", job_id=job_id)
        self.job_id = job_id


class BlobNotFoundError(StorageError):
    """No blob is stored under the requested content identifier."""

    def __init__(self, cid: str) -> None:
        super().__init__(f"Blob not found: {cid}", code="BLOB_NOT_FOUND", cid=cid)
        self.cid = cid


class LogStoreError(LogVaultError):
    """Base exception for log store operations."""

    def __init__(self, message: str, code: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, code=code or "LOG_STORE_ERROR", details=details)


class DatabaseNotFoundError(LogStoreError):
    """Database address is malformed or unknown to the log store."""

    def __init__(self, address: str) -> None:
        super().__init__(
            f"Database not found: {address}", code="DATABASE_NOT_FOUND", address=address
        )
        self.address = address


class SnapshotFormatError(LogStoreError):
    """Snapshot bytes are not a valid portable log snapshot."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SNAPSHOT_FORMAT_ERROR")


class SubmissionError(LogVaultError):
    """Capturing or submitting a snapshot failed. No job record was written."""

    def __init__(self, message: str, db_address: str) -> None:
        super().__init__(message, code="SUBMISSION_ERROR", details={"db_address": db_address})
        self.db_address = db_address


class RetrievalError(LogVaultError):
    """Fetching or reconstructing a stored snapshot failed."""

    def __init__(self, message: str, db_address: str, job_id: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="RETRIEVAL_ERROR",
            details={"db_address": db_address, "job_id": job_id},
        )
        self.db_address = db_address
        self.job_id = job_id
