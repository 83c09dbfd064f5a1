# =============================================================================
# Operation Store — In-Memory Registry of Search Operations
# =============================================================================
#
# Holds every in-flight search operation plus recently finished ones so that
# GET /api/chat/searches can show what happened in the last minute.
#
# TWO TIERS:
#   in-flight  plain dict, never expires
#   finished   cachetools.TTLCache, dropped ttl_seconds after mark_finished()
#
# DESIGN DECISION: Expiry belongs to TTLCache.
# Entries expire lazily on access, so there is no background task to run.
# The finished tier is also size capped; when full, the least recently
# used finished operation is evicted first.
#
# DESIGN DECISION: No locks.
# All access happens on the event loop thread between awaits, and each
# provider callback only writes its own slot on the operation.
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Generic, Protocol, TypeVar

from cachetools import TTLCache

logger = logging.getLogger(__name__)


class _HasId(Protocol):
    id: str


T = TypeVar("T", bound=_HasId)


class OperationStore(Generic[T]):
    """
    Expiring id → operation mapping.

    Args:
        ttl_seconds: How long an operation stays visible after
            mark_finished(). In-flight operations never expire.
        maxsize: Cap on finished operations kept around.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        maxsize: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._in_flight: dict[str, T] = {}
        self._finished: TTLCache = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds, timer=clock,
        )

    def add(self, operation: T) -> None:
        self._in_flight[operation.id] = operation

    def get(self, operation_id: str) -> T | None:
        operation = self._in_flight.get(operation_id)
        if operation is None:
            operation = self._finished.get(operation_id)
        return operation

    def values(self) -> list[T]:
        self._finished.expire()
        return [*self._in_flight.values(), *self._finished.values()]

    def mark_finished(self, operation_id: str) -> None:
        """Move an operation to the finished tier, starting its TTL."""
        operation = self._in_flight.pop(operation_id, None)
        if operation is not None:
            self._finished[operation_id] = operation

    def sweep(self) -> int:
        """Drop expired operations. Returns how many were removed."""
        expired = self._finished.expire()
        if expired:
            logger.debug("Expired %d search operations", len(expired))
        return len(expired)

    def __len__(self) -> int:
        self._finished.expire()
        return len(self._in_flight) + len(self._finished)

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._in_flight or operation_id in self._finished
