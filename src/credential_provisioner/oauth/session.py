"""Session storage for in-flight authorization attempts.

An AuthAttempt holds the PKCE verifier and state between ``start`` and
``complete``. Expiry is checked by the reader; the store itself only
serializes single-key access.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from credential_provisioner.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_ATTEMPT_TTL = timedelta(minutes=10)


def session_key(provider: str) -> str:
    """Fixed per-provider key under which the live attempt is kept."""
    return f"{provider.lower()}-oauth-data"


@dataclass(frozen=True)
class AuthAttempt:
    """An in-flight authorization for one provider.

    Attributes:
        flow_id: Session key the attempt is stored under
        verifier: PKCE code verifier
        state: Anti-forgery state sent in the authorization URL
        created_at: When the attempt was started
    """

    flow_id: str
    verifier: str = field(repr=False)
    state: str = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_expired(
        self,
        ttl: timedelta = DEFAULT_ATTEMPT_TTL,
        now: datetime | None = None,
    ) -> bool:
        """Check whether the attempt outlived its TTL.

        Args:
            ttl: Attempt lifetime
            now: Reference time (defaults to the current UTC time)

        Returns:
            True if more than ``ttl`` has elapsed since creation
        """
        current = now or datetime.now(UTC)
        return current - self.created_at > ttl


class SessionStore(ABC):
    """Key-value store for in-flight authorization attempts.

    Implementations must make each single-key operation atomic.
    """

    @abstractmethod
    async def upsert(self, key: str, attempt: AuthAttempt) -> None:
        """Store an attempt, replacing any previous one under the key."""

    @abstractmethod
    async def get(self, key: str) -> AuthAttempt | None:
        """Return the attempt under the key, or None."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the attempt under the key if present."""

    async def cleanup_expired(self, ttl: timedelta = DEFAULT_ATTEMPT_TTL) -> int:
        """Remove attempts older than ``ttl``; stores without a sweep keep them."""
        return 0


class InMemorySessionStore(SessionStore):
    """Process-local session store.

    Attempts are lost on restart, which only forces the user to restart
    the flow.
    """

    def __init__(self) -> None:
        self._attempts: dict[str, AuthAttempt] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, key: str, attempt: AuthAttempt) -> None:
        async with self._lock:
            if key in self._attempts:
                logger.debug("Replacing in-flight attempt %s", key)
            self._attempts[key] = attempt

    async def get(self, key: str) -> AuthAttempt | None:
        async with self._lock:
            return self._attempts.get(key)

    async def delete(self, key: str) -> None:
        async with self._lock:
            if self._attempts.pop(key, None) is not None:
                logger.debug("Deleted attempt %s", key)

    async def cleanup_expired(self, ttl: timedelta = DEFAULT_ATTEMPT_TTL) -> int:
        """Remove attempts older than ``ttl``.

        Returns:
            Number of attempts removed
        """
        async with self._lock:
            now = datetime.now(UTC)
            expired = [
                key for key, attempt in self._attempts.items()
                if attempt.is_expired(ttl, now)
            ]

            for key in expired:
                logger.debug("Attempt %s expired", key)
                del self._attempts[key]

            return len(expired)

    def __len__(self) -> int:
        return len(self._attempts)
