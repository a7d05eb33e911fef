"""
Heirloom — Single-Flight Initialisation

Compute an expensive async value once and share it with every concurrent
caller. Used for the cryptographic verifier, whose construction loads
circuits and registers chain resolvers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

import structlog

T = TypeVar("T")

logger = structlog.get_logger("heirloom.primitives.singleflight")


class SingleFlight(Generic[T]):
    """
    Run ``factory`` at most once at a time and memoise its success.

    All callers that arrive while a construction is in flight await that same
    construction and receive its single result or exception. A failed flight
    is forgotten once it settles so that a later call can try again; a
    successful one is kept for the lifetime of this object.

    Waiters are shielded: cancelling one caller never cancels the shared
    construction the others are waiting on.

    Not thread-safe. Intended for use inside a single event loop.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]], name: str = "") -> None:
        self._factory = factory
        self._name = name or getattr(factory, "__qualname__", "anonymous")
        self._task: asyncio.Task[T] | None = None
        self._constructions = 0

    @property
    def constructions(self) -> int:
        """How many times the factory has been invoked."""
        return self._constructions

    @property
    def ready(self) -> bool:
        """True once a construction has completed successfully."""
        return (
            self._task is not None
            and self._task.done()
            and not self._task.cancelled()
            and self._task.exception() is None
        )

    async def get(self) -> T:
        # No await between the check and the assignment, so concurrent
        # callers on the same loop always observe the same task.
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._task)

    async def _run(self) -> T:
        self._constructions += 1
        logger.info("single_flight_started", name=self._name, attempt=self._constructions)
        try:
            value = await self._factory()
        except BaseException as exc:
            self._task = None
            logger.warning("single_flight_failed", name=self._name, error=str(exc))
            raise
        logger.info("single_flight_ready", name=self._name)
        return value
