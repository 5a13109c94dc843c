"""
Replication convergence detection.

A database has converged when replication has delivered the tail of the
log (an entry with nothing left pending behind it) and the batch that
carried it has been fully processed.

State machine (one instance per capture attempt):

    AWAITING_TAIL --(progress with no pending entries)--> tail_observed
    AWAITING_TAIL --(complete, tail_observed)-----------> CONVERGED

Invariants:
    - A complete event seen before the tail entry never converges
    - The transition to CONVERGED is reported exactly once
    - Events after convergence are ignored
    - There is no timeout unless the caller asks for one
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from .errors import LogStoreError
from .logstore.base import (
    ReplicationComplete,
    ReplicationEvent,
    ReplicationProgress,
    ReplicationSubscription,
)

logger = logging.getLogger(__name__)


class ConvergenceState(Enum):
    AWAITING_TAIL = "awaiting_tail"
    CONVERGED = "converged"


class ConvergenceDetector:
    """Consumes replication events and reports convergence.

    Example:
        >>> detector = ConvergenceDetector(db.address)
        >>> subscription = db.subscribe_replication()
        >>> await detector.wait(subscription)
    """

    def __init__(self, address: str) -> None:
        self.address = address
        self.state = ConvergenceState.AWAITING_TAIL
        self.tail_observed = False
        self.events_seen = 0

    @property
    def converged(self) -> bool:
        return self.state is ConvergenceState.CONVERGED

    def reset(self) -> None:
        self.state = ConvergenceState.AWAITING_TAIL
        self.tail_observed = False
        self.events_seen = 0

    def feed(self, event: ReplicationEvent) -> bool:
        """Advance the state machine.

        Returns:
            True only for the event that causes convergence
        """
        if self.converged:
            return False
        self.events_seen += 1

        if isinstance(event, ReplicationProgress):
            if not event.pending:
                self.tail_observed = True
            return False

        if isinstance(event, ReplicationComplete) and self.tail_observed:
            self.state = ConvergenceState.CONVERGED
            logger.info(
                "Replication converged",
                extra={"address": self.address, "events": self.events_seen},
            )
            return True
        return False

    async def wait(
        self,
        subscription: ReplicationSubscription,
        timeout: Optional[float] = None,
    ) -> None:
        """Consume `subscription` until convergence, then close it.

        Args:
            subscription: Replication events of the database
            timeout: Seconds to wait (None = no limit)

        Raises:
            asyncio.TimeoutError: If timeout elapses first
            LogStoreError: If the subscription ends before convergence
        """
        try:
            await asyncio.wait_for(self._consume(subscription), timeout=timeout)
        finally:
            subscription.close()

    async def _consume(self, subscription: ReplicationSubscription) -> None:
        async for event in subscription:
            if self.feed(event):
                return
        raise LogStoreError(f"Replication stream for {self.address} closed before convergence")
