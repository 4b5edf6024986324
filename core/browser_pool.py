#!/usr/bin/env python3
"""
Browser Session Pool - bounded set of reusable automation sessions.

At most ``max_sessions`` sessions are leased at any moment (counting
semaphore). Sessions are created lazily, reused between jobs, and recycled
when they are too old, overused, idle too long, or fail a health check.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.browser import BrowserSession, SessionFactory
from core.exceptions import AutomationFailure, PoolExhausted

logger = logging.getLogger(__name__)


@dataclass
class PooledSession:
    """A browser session in the pool."""
    session: BrowserSession
    created_at: float
    last_used: float
    uses: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def page(self) -> Any:
        return self.session.page

    def is_expired(self, now: float, max_age_seconds: float) -> bool:
        return (now - self.created_at) > max_age_seconds

    def is_overused(self, max_uses: int) -> bool:
        return self.uses >= max_uses

    def is_idle(self, now: float, max_idle_seconds: float) -> bool:
        return (now - self.last_used) > max_idle_seconds


class BrowserSessionPool:
    """
    Lease browser sessions to dispatch workers.

    Every successful acquire() must be matched by exactly one release();
    lease() does that on every exit path.
    """

    def __init__(
        self,
        factory: SessionFactory,
        max_sessions: int = 5,
        max_uses_per_session: int = 25,
        max_session_age_seconds: float = 300,
        max_idle_seconds: float = 120,
        acquire_timeout: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.factory = factory
        self.max_sessions = max_sessions
        self.max_uses_per_session = max_uses_per_session
        self.max_session_age = max_session_age_seconds
        self.max_idle = max_idle_seconds
        self.acquire_timeout = acquire_timeout
        self._clock = clock

        self._slots = asyncio.Semaphore(max_sessions)
        self._idle: List[PooledSession] = []
        self._leased: Dict[str, PooledSession] = {}
        self._lock = asyncio.Lock()
        self._closed = False
        self.counters = {
            'sessions_created': 0,
            'sessions_reused': 0,
            'sessions_recycled': 0,
            'sessions_discarded': 0,
            'acquire_timeouts': 0,
        }

    @property
    def leased_count(self) -> int:
        return len(self._leased)

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    async def start(self):
        await self.factory.start()
        logger.info(f"[Pool] Ready (max_sessions={self.max_sessions})")

    async def acquire(self, timeout: Optional[float] = None) -> PooledSession:
        """
        Lease a session, waiting at most ``timeout`` seconds for a free slot.

        Raises:
            PoolExhausted: no slot freed up in time (or the pool is closed)
            AutomationFailure: a new session could not be created
        """
        if self._closed:
            raise PoolExhausted("Browser pool is closed")

        wait = self.acquire_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=wait)
        except asyncio.TimeoutError:
            self.counters['acquire_timeouts'] += 1
            raise PoolExhausted(
                f"No browser session available within {wait:g}s",
                {"max_sessions": self.max_sessions, "leased": self.leased_count},
            )

        try:
            pooled = await self._checkout()
        except BaseException:
            self._slots.release()
            raise

        self._leased[pooled.session_id] = pooled
        return pooled

    async def _checkout(self) -> PooledSession:
        while True:
            async with self._lock:
                pooled = self._idle.pop() if self._idle else None
            if pooled is None:
                break

            now = self._clock()
            if (
                pooled.is_expired(now, self.max_session_age)
                or pooled.is_overused(self.max_uses_per_session)
                or pooled.is_idle(now, self.max_idle)
            ):
                logger.debug(f"[Pool] Recycling {pooled.session_id} (age: {now - pooled.created_at:.0f}s, uses: {pooled.uses})")
                self.counters['sessions_recycled'] += 1
                await self._close(pooled)
                continue

            if not await self.factory.is_healthy(pooled.session):
                logger.debug(f"[Pool] Health check failed for {pooled.session_id}, discarding")
                self.counters['sessions_discarded'] += 1
                await self._close(pooled)
                continue

            pooled.uses += 1
            pooled.last_used = now
            self.counters['sessions_reused'] += 1
            return pooled

        try:
            session = await self.factory.create_session()
        except Exception as e:
            logger.error(f"[Pool] Failed to create session: {e}")
            raise AutomationFailure(f"Failed to create browser session: {e}") from e

        now = self._clock()
        self.counters['sessions_created'] += 1
        logger.info(f"[Pool] Created session {session.session_id} ({self.leased_count + 1}/{self.max_sessions} leased)")
        return PooledSession(session=session, created_at=now, last_used=now, uses=1)

    async def release(self, pooled: PooledSession, discard: bool = False):
        """
        Return a leased session. ``discard`` closes it instead of keeping it
        (crashed page, timed out job). Releasing twice is a no-op.
        """
        if self._leased.pop(pooled.session_id, None) is None:
            logger.warning(f"[Pool] Ignoring release of unknown session {pooled.session_id}")
            return

        try:
            if discard or self._closed:
                self.counters['sessions_discarded'] += 1
                await self._close(pooled)
                return

            now = self._clock()
            if pooled.is_expired(now, self.max_session_age) or pooled.is_overused(self.max_uses_per_session):
                self.counters['sessions_recycled'] += 1
                await self._close(pooled)
                return

            if not await self.factory.reset_session(pooled.session):
                self.counters['sessions_discarded'] += 1
                await self._close(pooled)
                return

            pooled.last_used = now
            async with self._lock:
                self._idle.append(pooled)
        finally:
            self._slots.release()

    @asynccontextmanager
    async def lease(self, timeout: Optional[float] = None):
        """Acquire a session for the duration of the block; discard it if the block raised."""
        pooled = await self.acquire(timeout)
        discard = False
        try:
            yield pooled
        except BaseException:
            discard = True
            raise
        finally:
            await self.release(pooled, discard=discard)

    async def _close(self, pooled: PooledSession):
        try:
            await self.factory.close_session(pooled.session)
        except Exception as e:
            logger.debug(f"[Pool] Error closing session {pooled.session_id}: {e}")

    async def close(self):
        """Close idle sessions and refuse new leases. Leased sessions close on release."""
        self._closed = True
        async with self._lock:
            idle, self._idle = self._idle, []
        for pooled in idle:
            await self._close(pooled)
        await self.factory.stop()
        logger.info("[Pool] All sessions cleaned up")

    def stats(self) -> Dict[str, Any]:
        """Get pool statistics."""
        now = self._clock()
        return {
            **self.counters,
            'max_sessions': self.max_sessions,
            'leased': self.leased_count,
            'idle': self.idle_count,
            'sessions': {
                ps.session_id: {'uses': ps.uses, 'age_seconds': round(now - ps.created_at, 1), 'leased': True}
                for ps in self._leased.values()
            },
        }

    def get_reuse_rate(self) -> float:
        """Calculate session reuse rate."""
        total = self.counters['sessions_created'] + self.counters['sessions_reused']
        if total == 0:
            return 0.0
        return self.counters['sessions_reused'] / total
