"""
Heirloom — Verification Session Store

Holds the proof requests handed out by ``POST /start`` until the matching
``POST /verify`` arrives.

Sessions are never removed on verification, successful or not. The only way
out is TTL eviction, and eviction is lazy: every ``create()`` call reaps all
sessions older than the TTL. There is no background timer.

Thread-safety
-------------
A single ``threading.Lock`` guards the map, so the store is safe to share
between the event loop and worker threads. Nothing under the lock awaits.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

import structlog

from heirloom.primitives.common import new_id
from heirloom.systems.identity.types import VerificationSession

logger = structlog.get_logger("heirloom.identity.sessions")

DEFAULT_SESSION_TTL_S = 10 * 60.0


class RequestDescriber(Protocol):
    """Builds the mode-dependent request descriptor for a new session."""

    def __call__(
        self, request_id: str, nonce: str, wallet_address: str | None
    ) -> dict[str, Any]: ...


class SessionStore:
    """
    Process-wide store of live verification sessions, keyed by request id.

    Constructed once at startup and handed to whoever needs it; there is no
    module-level instance.
    """

    def __init__(
        self,
        ttl_s: float = DEFAULT_SESSION_TTL_S,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        self._new_id = id_factory
        self._lock = threading.Lock()
        self._sessions: dict[str, VerificationSession] = {}
        self._evicted_total = 0

    def create(
        self,
        describe: RequestDescriber,
        wallet_address: str | None = None,
    ) -> VerificationSession:
        """
        Mint a session with fresh ``request_id`` and ``nonce``, store it, and
        reap expired sessions.

        ``describe`` runs under the lock; if it raises, nothing is stored and
        nothing is evicted.
        """
        with self._lock:
            now = self._clock()
            request_id = self._unused_id()
            nonce = self._new_id()
            request = describe(request_id, nonce, wallet_address)

            session = VerificationSession(
                request_id=request_id,
                nonce=nonce,
                request=request,
                created_at=now,
                wallet_address=wallet_address,
            )
            self._sessions[request_id] = session
            evicted = self._evict_expired(now)
            live = len(self._sessions)

        logger.debug(
            "session_created",
            request_id=request_id,
            evicted=evicted,
            live_sessions=live,
        )
        return session

    def get(self, request_id: str) -> VerificationSession | None:
        with self._lock:
            return self._sessions.get(request_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "live_sessions": len(self._sessions),
                "evicted_total": self._evicted_total,
                "ttl_s": self._ttl_s,
            }

    # ── Internals (lock held) ─────────────────────────────────────

    def _unused_id(self) -> str:
        while True:
            candidate = self._new_id()
            if candidate not in self._sessions:
                return candidate

    def _evict_expired(self, now: float) -> int:
        expired = [
            key
            for key, session in self._sessions.items()
            if now - session.created_at > self._ttl_s
        ]
        for key in expired:
            del self._sessions[key]
        self._evicted_total += len(expired)
        return len(expired)
