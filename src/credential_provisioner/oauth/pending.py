"""Registry of pending browser logins.

Each polling login is tracked until its completion signal is consumed or
it outlives its TTL. A background reaper evicts stale entries on a fixed
interval so the registry cannot grow without bound.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from credential_provisioner.errors import SessionNotFoundError
from credential_provisioner.logging_config import get_logger
from credential_provisioner.security import short_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)

DEFAULT_PENDING_TTL = timedelta(minutes=5)
DEFAULT_REAP_INTERVAL = 30.0


@dataclass
class PendingWebLogin:
    """A browser login awaiting completion.

    Attributes:
        flow_id: Registry key
        provider: Provider name the login belongs to
        auth_url: URL handed to the user
        signal: One-shot future resolved when the login finishes
        created_at: Registration time
    """

    flow_id: str
    provider: str
    auth_url: str
    signal: asyncio.Future[Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_expired(self, ttl: timedelta, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) - self.created_at > ttl


class PendingLoginRegistry:
    """Tracks pending browser logins keyed by flow id."""

    def __init__(
        self,
        ttl: timedelta = DEFAULT_PENDING_TTL,
        reap_interval: float = DEFAULT_REAP_INTERVAL,
    ) -> None:
        """Initialize the registry.

        Args:
            ttl: How long an entry is kept, resolved or not
            reap_interval: Seconds between reaper sweeps
        """
        self._ttl = ttl
        self._reap_interval = reap_interval
        self._entries: dict[str, PendingWebLogin] = {}
        self._lock = asyncio.Lock()
        self._reaper: asyncio.Task[None] | None = None
        self._sweeps: list[Callable[[], Awaitable[object]]] = []

    async def register(self, entry: PendingWebLogin) -> None:
        async with self._lock:
            self._entries[entry.flow_id] = entry
        logger.debug("Registered pending login %s for %s", short_id(entry.flow_id), entry.provider)

    async def get(self, flow_id: str) -> PendingWebLogin | None:
        async with self._lock:
            return self._entries.get(flow_id)

    async def find_by_auth_url(self, auth_url: str) -> PendingWebLogin | None:
        async with self._lock:
            for entry in self._entries.values():
                if entry.auth_url == auth_url:
                    return entry
            return None

    async def discard(self, flow_id: str) -> None:
        """Remove an entry, cancelling its signal if still unresolved."""
        async with self._lock:
            entry = self._entries.pop(flow_id, None)
        if entry is not None:
            _cancel(entry)
            logger.debug("Discarded pending login %s", short_id(flow_id))

    async def wait(self, flow_id: str, timeout: float | None = None) -> Any:
        """Await the completion signal of a pending login.

        The entry is removed once its signal has produced a result.

        Args:
            flow_id: Registry key
            timeout: Optional seconds to wait

        Returns:
            The signal's result

        Raises:
            SessionNotFoundError: If the entry is unknown, was discarded or reaped
            TimeoutError: If ``timeout`` elapses first
        """
        entry = await self.get(flow_id)
        if entry is None:
            raise SessionNotFoundError("Pending login not found or already expired.")

        try:
            result = await asyncio.wait_for(asyncio.shield(entry.signal), timeout)
        except asyncio.CancelledError:
            if entry.signal.cancelled():
                raise SessionNotFoundError("Pending login was discarded.") from None
            raise

        async with self._lock:
            if self._entries.get(flow_id) is entry:
                del self._entries[flow_id]
        return result

    async def reap_expired(self, now: datetime | None = None) -> int:
        """Evict entries older than the TTL.

        Returns:
            Number of entries evicted
        """
        current = now or datetime.now(UTC)
        async with self._lock:
            expired = [e for e in self._entries.values() if e.is_expired(self._ttl, current)]
            for entry in expired:
                del self._entries[entry.flow_id]

        for entry in expired:
            _cancel(entry)
            logger.debug("Reaped pending login %s", short_id(entry.flow_id))

        return len(expired)

    def add_sweep(self, sweep: Callable[[], Awaitable[object]]) -> None:
        """Run an extra cleanup coroutine on every reaper sweep."""
        self._sweeps.append(sweep)

    def start_reaper(self) -> None:
        """Start the background reaper on the running event loop."""
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_forever())

    async def stop_reaper(self) -> None:
        if self._reaper is None:
            return
        self._reaper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reaper
        self._reaper = None

    async def _reap_forever(self) -> None:
        while True:
            await asyncio.sleep(self._reap_interval)
            try:
                count = await self.reap_expired()
            except Exception:
                logger.exception("Pending login reaper sweep failed")
                continue
            if count:
                logger.info("Reaped %d stale pending logins", count)
            for sweep in self._sweeps:
                try:
                    await sweep()
                except Exception:
                    logger.exception("Reaper sweep hook failed")

    async def clear(self) -> None:
        """Discard every entry."""
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            _cancel(entry)

    def __len__(self) -> int:
        return len(self._entries)


def _cancel(entry: PendingWebLogin) -> None:
    if not entry.signal.done():
        entry.signal.cancel()
