"""
Storage backend provisioning.

Runs once at startup: create a session, authorize the client with its
token, create the default funding address. The funding address balance
is then awaited with wait_for_balance(), which the orchestrator runs in
the background.

Invariants:
    - An unreachable backend fails provisioning, no internal retry
    - A missing account info or missing address fails the balance wait
      immediately; both are permanent conditions
    - Transient errors during the balance wait are retried on the next tick
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import ProvisioningError, StorageConnectionError
from .storage.base import Session, StorageBackend, WalletAddress

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Provisioned:
    """Result of provisioning.

    Attributes:
        session: Backend session (its token is already set on the client)
        address: Default funding address
    """

    session: Session
    address: WalletAddress


async def initialize(
    backend: StorageBackend,
    address_name: str = "_default",
    address_type: str = "bls",
) -> Provisioned:
    """Create a session and the default funding address.

    Raises:
        StorageConnectionError: If the backend cannot be reached
    """
    session = await backend.create_session()
    backend.set_token(session.token)
    address = await backend.new_addr(address_name, address_type)
    logger.info(
        "Provisioned storage session",
        extra={"session_id": session.id, "address": address.addr},
    )
    return Provisioned(session=session, address=address)


async def wait_for_balance(
    backend: StorageBackend,
    address: str,
    min_balance: int = 0,
    interval: float = 1.0,
    deadline: Optional[float] = None,
) -> int:
    """Poll until `address` holds more than `min_balance`.

    Args:
        backend: Authorized storage backend
        address: Funding address to watch
        min_balance: Balance must be strictly greater than this
        interval: Seconds between polls
        deadline: Seconds before giving up (None = poll forever)

    Returns:
        The observed balance

    Raises:
        ProvisioningError: If account info or the address is missing
        asyncio.TimeoutError: If the deadline passes
    """

    async def poll() -> int:
        while True:
            try:
                info = await backend.info()
            except StorageConnectionError as e:
                logger.warning(f"Balance query failed, retrying: {e}")
            else:
                if info is None:
                    raise ProvisioningError("No balance info returned", address=address)
                balance = info.balance_of(address)
                if balance is None:
                    raise ProvisioningError("Address not in balances list", address=address)
                if balance.balance > min_balance:
                    return balance.balance
            await asyncio.sleep(interval)

    return await asyncio.wait_for(poll(), timeout=deadline)
