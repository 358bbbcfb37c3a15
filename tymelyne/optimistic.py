"""
TymeLyne - Optimistic Updates
Local-first mutations with O(1) compensation, and suppression of duplicate
in-flight requests for the same control.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Set

from .errors import TymeLyneError

logger = logging.getLogger(__name__)

IN_FLIGHT_MESSAGE = "Request already in progress"


class RequestInFlight(Exception):
    """Raised by InFlightGuard.hold when the key is already busy."""


class InFlightGuard:
    """Tracks which mutations are awaiting the server."""

    def __init__(self):
        self._busy: Set[Hashable] = set()

    def is_busy(self, key: Hashable) -> bool:
        return key in self._busy

    @contextmanager
    def hold(self, key: Hashable):
        if key in self._busy:
            raise RequestInFlight(key)
        self._busy.add(key)
        try:
            yield
        finally:
            self._busy.discard(key)


@dataclass
class OptimisticCommand:
    """
    A mutation applied locally before the server confirms it.

    ``apply`` and ``compensate`` touch local state only; ``remote`` performs
    the request. If the request fails, ``compensate`` restores the local
    state and the error propagates.
    """
    apply: Callable[[], None]
    compensate: Callable[[], None]
    remote: Callable[[], Awaitable[Any]]
    label: str = "mutation"

    async def run(self) -> Any:
        self.apply()
        try:
            return await self.remote()
        except TymeLyneError as e:
            logger.warning(f"{self.label} failed, reverting local change: {e}")
            self.compensate()
            raise
