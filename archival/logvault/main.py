"""
logvault - Main entry point.

Commands:
    serve           Provision, resume job watchers and run until signalled
    status JOB_ID   Print registry records of a job as JSON
    wallet          Wait for the funding address balance and print it

Usage:
    python -m archival.logvault.main [serve|status JOB_ID|wallet]

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - serve stops every reconciliation loop before exiting
    - status never contacts the storage backend
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace

import json_log_formatter

from .config import OrchestratorConfig, RegistryBackend
from .logstore.memory import InMemoryLogStore
from .orchestrator import SnapshotOrchestrator, open_registry
from .provisioning import wait_for_balance

logger = logging.getLogger(__name__)


def setup_logging(config: OrchestratorConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Orchestrator configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Service:
    """Long-running orchestrator process.

    Example:
        >>> service = Service(config)
        >>> await service.start()  # Runs until request_shutdown()
    """

    def __init__(self, config: OrchestratorConfig) -> None:
        self.config = config
        self.orchestrator: SnapshotOrchestrator | None = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        logger.info("Starting logvault")
        self.config.log_config()

        self.orchestrator = await SnapshotOrchestrator.create(self.config)
        resumed = await self.orchestrator.resume_watchers()
        logger.info("logvault started", extra={"resumed_watchers": resumed})

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.stop()
            self.orchestrator = None
        logger.info("logvault stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()


async def print_status(config: OrchestratorConfig, job_id: str) -> int:
    if config.registry.backend != RegistryBackend.SQLITE:
        logger.warning("Registry is not durable (REGISTRY_BACKEND=logstore), no records to read")
    registry = await open_registry(config.registry, InMemoryLogStore())
    records = await registry.get(job_id)
    print(json.dumps([r.to_dict() for r in records], indent=2))
    return 0 if records else 1


async def print_wallet(config: OrchestratorConfig) -> int:
    orchestrator = await SnapshotOrchestrator.create(config)
    try:
        balance = await wait_for_balance(
            orchestrator.backend,
            orchestrator.address.addr,
            config.balance.min_balance,
            interval=config.balance.poll_seconds,
            deadline=config.balance.deadline_seconds,
        )
        print(json.dumps({**orchestrator.address.to_dict(), "balance": balance}, indent=2))
        return 0
    finally:
        await orchestrator.stop()


def serve(config: OrchestratorConfig) -> None:
    service = Service(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Archive replicated log snapshots")
    parser.add_argument("--endpoint", help="Storage backend endpoint (overrides POWERGATE_ENDPOINT)")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run the orchestrator until signalled")
    status_parser = subparsers.add_parser("status", help="Print registry records of a job")
    status_parser.add_argument("job_id", help="Job id")
    subparsers.add_parser("wallet", help="Wait for the funding address balance")
    args = parser.parse_args(argv)

    try:
        config = OrchestratorConfig.from_env()
        if args.endpoint:
            config.storage = replace(config.storage, endpoint=args.endpoint)
            config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    if args.command == "status":
        sys.exit(asyncio.run(print_status(config, args.job_id)))
    elif args.command == "wallet":
        sys.exit(asyncio.run(print_wallet(config)))
    else:
        serve(config)


if __name__ == "__main__":
    main()
