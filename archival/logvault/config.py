"""
Configuration management for logvault.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Polling loops have no deadline unless one is configured
    - Secrets (session tokens) are never part of configuration or logs

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://0.0.0.0:6002"


class RegistryBackend(Enum):
    """Where job records are kept."""

    LOGSTORE = "logstore"
    SQLITE = "sqlite"


def _optional_float(value: str | None) -> float | None:
    return float(value) if value not in (None, "") else None


@dataclass(frozen=True)
class StorageBackendConfig:
    """Storage backend connection configuration.

    Attributes:
        endpoint: URL of the backend control API
        timeout_seconds: Per-request timeout
        address_name: Name of the default funding address
        address_type: Key scheme of the default funding address
    """

    endpoint: str = DEFAULT_ENDPOINT
    timeout_seconds: float = 30.0
    address_name: str = "_default"
    address_type: str = "bls"

    @classmethod
    def from_env(cls) -> StorageBackendConfig:
        """Load configuration from environment variables."""
        return cls(
            endpoint=os.getenv("POWERGATE_ENDPOINT", DEFAULT_ENDPOINT),
            timeout_seconds=float(os.getenv("POWERGATE_TIMEOUT_SECONDS", "30")),
            address_name=os.getenv("POWERGATE_ADDRESS_NAME", "_default"),
            address_type=os.getenv("POWERGATE_ADDRESS_TYPE", "bls"),
        )


@dataclass(frozen=True)
class BalanceConfig:
    """Funding address balance wait.

    Attributes:
        poll_seconds: Interval between balance queries
        min_balance: Balance must be strictly greater than this
        deadline_seconds: Give up after this long (None = wait forever)
    """

    poll_seconds: float = 1.0
    min_balance: int = 0
    deadline_seconds: float | None = None

    @classmethod
    def from_env(cls) -> BalanceConfig:
        """Load configuration from environment variables."""
        return cls(
            poll_seconds=float(os.getenv("BALANCE_POLL_SECONDS", "1.0")),
            min_balance=int(os.getenv("BALANCE_MIN", "0")),
            deadline_seconds=_optional_float(os.getenv("BALANCE_DEADLINE_SECONDS")),
        )


@dataclass(frozen=True)
class ReconcileConfig:
    """Job reconciliation loop configuration.

    Attributes:
        interval_seconds: Interval between status checks per job
        stop_on_terminal: End a job's loop once its stored status is terminal
    """

    interval_seconds: float = 1.0
    stop_on_terminal: bool = False

    @classmethod
    def from_env(cls) -> ReconcileConfig:
        """Load configuration from environment variables."""
        return cls(
            interval_seconds=float(os.getenv("RECONCILE_INTERVAL_SECONDS", "1.0")),
            stop_on_terminal=os.getenv("RECONCILE_STOP_ON_TERMINAL", "false").lower() == "true",
        )


@dataclass(frozen=True)
class RetrievalConfig:
    """Snapshot retrieval configuration.

    Attributes:
        reconstruct_timeout_seconds: Timeout for rebuilding one log
    """

    reconstruct_timeout_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> RetrievalConfig:
        """Load configuration from environment variables."""
        return cls(
            reconstruct_timeout_seconds=float(os.getenv("RECONSTRUCT_TIMEOUT_SECONDS", "1.0")),
        )


@dataclass(frozen=True)
class RegistryConfig:
    """Job registry configuration.

    Attributes:
        backend: LOGSTORE keeps records in the log store's document store,
            SQLITE keeps them in a local file
        path: SQLite file (SQLITE backend only)
        name: Document store name
    """

    backend: RegistryBackend = RegistryBackend.LOGSTORE
    path: str = "/var/lib/logvault/jobs.db"
    name: str = "jobs"

    @classmethod
    def from_env(cls) -> RegistryConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("REGISTRY_BACKEND", "logstore").lower()
        try:
            backend = RegistryBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid REGISTRY_BACKEND '{backend_str}'. Must be one of: logstore, sqlite"
            )
        return cls(
            backend=backend,
            path=os.getenv("REGISTRY_PATH", "/var/lib/logvault/jobs.db"),
            name=os.getenv("REGISTRY_NAME", "jobs"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class OrchestratorConfig:
    """Complete orchestrator configuration.

    Attributes:
        storage: Storage backend configuration
        balance: Balance wait configuration
        reconcile: Reconciliation loop configuration
        retrieval: Retrieval configuration
        registry: Job registry configuration
        observability: Logging configuration
    """

    storage: StorageBackendConfig = field(default_factory=StorageBackendConfig)
    balance: BalanceConfig = field(default_factory=BalanceConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageBackendConfig.from_env(),
            balance=BalanceConfig.from_env(),
            reconcile=ReconcileConfig.from_env(),
            retrieval=RetrievalConfig.from_env(),
            registry=RegistryConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    @classmethod
    def for_endpoint(cls, endpoint: str) -> OrchestratorConfig:
        """Default configuration pointing at a specific backend endpoint."""
        config = cls(storage=StorageBackendConfig(endpoint=endpoint))
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        parts = urlsplit(self.storage.endpoint)
        if not parts.scheme or not parts.hostname:
            raise ValueError(
                f"POWERGATE_ENDPOINT must be an absolute URL, got '{self.storage.endpoint}'"
            )
        if self.storage.timeout_seconds <= 0:
            raise ValueError("POWERGATE_TIMEOUT_SECONDS must be positive")
        if self.balance.poll_seconds <= 0:
            raise ValueError("BALANCE_POLL_SECONDS must be positive")
        if self.balance.deadline_seconds is not None and self.balance.deadline_seconds <= 0:
            raise ValueError("BALANCE_DEADLINE_SECONDS must be positive when set")
        if self.reconcile.interval_seconds <= 0:
            raise ValueError("RECONCILE_INTERVAL_SECONDS must be positive")
        if self.retrieval.reconstruct_timeout_seconds <= 0:
            raise ValueError("RECONSTRUCT_TIMEOUT_SECONDS must be positive")

        if self.registry.backend == RegistryBackend.SQLITE and not os.path.exists(
            os.path.dirname(self.registry.path) or "."
        ):
            logger.warning(
                f"Registry directory does not exist: {os.path.dirname(self.registry.path)}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Orchestrator configuration loaded",
            extra={
                "endpoint": self.storage.endpoint,
                "address_name": self.storage.address_name,
                "balance_deadline_seconds": self.balance.deadline_seconds,
                "reconcile_interval_seconds": self.reconcile.interval_seconds,
                "reconcile_stop_on_terminal": self.reconcile.stop_on_terminal,
                "reconstruct_timeout_seconds": self.retrieval.reconstruct_timeout_seconds,
                "registry_backend": self.registry.backend.value,
                "registry_path": self.registry.path
                if self.registry.backend == RegistryBackend.SQLITE
                else None,
                "log_level": self.observability.log_level,
            },
        )
