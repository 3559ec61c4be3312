from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import HostConnectionError, PoolExhausted
from .logger import ExecutionLogger
from .models import HostTarget
from .session import RemoteSession


@dataclass
class PooledConnection:
    host_key: str
    session: RemoteSession
    last_used_at: float
    in_use: bool = False


class ConnectionPool:
    """
    Keyed cache of open sessions shared by every host executor.

    The pool holds at most ``max_connections`` sessions, counting the ones
    still handshaking. A session is lent to one caller at a time and goes
    back to the idle set on ``release``. At capacity, the least recently
    used idle session is closed to make room. Otherwise the caller waits
    (or gets PoolExhausted when ``wait`` is false or ``acquire_timeout``
    runs out).
    """

    def __init__(
        self,
        max_connections: int = 10,
        idle_timeout: float = 300.0,
        sweep_interval: float = 60.0,
        acquire_timeout: Optional[float] = None,
        session_factory: Optional[Callable[[HostTarget], RemoteSession]] = None,
        logger: Optional[ExecutionLogger] = None,
    ):
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.max_connections = max_connections
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self.acquire_timeout = acquire_timeout
        self._session_factory = session_factory or RemoteSession
        self._logger = logger

        self._connections: dict[str, PooledConnection] = {}
        self._opening: set[str] = set()
        self._available = asyncio.Condition(asyncio.Lock())
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def size(self) -> int:
        return len(self._connections) + len(self._opening)

    def stats(self) -> dict[str, int]:
        in_use = sum(1 for p in self._connections.values() if p.in_use)
        return {
            "size": self.size,
            "in_use": in_use,
            "idle": len(self._connections) - in_use,
            "max_connections": self.max_connections,
        }

    # ── Acquire / release ────────────────────────────────────

    async def acquire(
        self,
        host_key: str,
        target: HostTarget,
        wait: bool = True,
    ) -> RemoteSession:
        deadline = None
        if wait and self.acquire_timeout is not None:
            deadline = time.monotonic() + self.acquire_timeout

        evicted: list[PooledConnection] = []
        reused: Optional[RemoteSession] = None
        try:
            async with self._available:
                while True:
                    pooled = self._connections.get(host_key)
                    if pooled is not None and not pooled.in_use:
                        if pooled.session.connected:
                            pooled.in_use = True
                            pooled.last_used_at = time.monotonic()
                            reused = pooled.session
                            break
                        # Dead session, replace it
                        del self._connections[host_key]
                        evicted.append(pooled)
                        continue

                    if pooled is None and host_key not in self._opening:
                        if self.size < self.max_connections:
                            self._opening.add(host_key)
                            break
                        victim = self._oldest_idle()
                        if victim is not None:
                            del self._connections[victim.host_key]
                            evicted.append(victim)
                            continue

                    if not wait:
                        raise PoolExhausted(host_key, self.max_connections)
                    await self._wait_for_slot(host_key, deadline)
        except BaseException:
            await self._close_sessions(evicted, "EVICTED")
            raise

        # The session or reserved slot is ours now and must be handed back on any exit
        try:
            await self._close_sessions(evicted, "EVICTED")
        except BaseException:
            if reused is not None:
                await self.release(host_key)
            else:
                await self._unreserve(host_key)
            raise

        if reused is not None:
            return reused
        return await self._open(host_key, target)

    async def release(self, host_key: str) -> None:
        """Hand a session back to the idle set without closing it."""
        async with self._available:
            pooled = self._connections.get(host_key)
            if pooled is not None:
                pooled.in_use = False
                pooled.last_used_at = time.monotonic()
            self._available.notify_all()

    async def discard(self, host_key: str) -> None:
        """Close and forget a session that failed at transport level."""
        async with self._available:
            pooled = self._connections.pop(host_key, None)
            self._available.notify_all()
        if pooled is not None:
            await self._close_sessions([pooled], "DISCARDED")

    async def _unreserve(self, host_key: str) -> None:
        async with self._available:
            self._opening.discard(host_key)
            self._available.notify_all()

    def _oldest_idle(self) -> Optional[PooledConnection]:
        idle = [p for p in self._connections.values() if not p.in_use]
        if not idle:
            return None
        return min(idle, key=lambda p: p.last_used_at)

    async def _wait_for_slot(self, host_key: str, deadline: Optional[float]) -> None:
        if deadline is None:
            await self._available.wait()
            return

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PoolExhausted(host_key, self.max_connections)
        try:
            await asyncio.wait_for(self._available.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            raise PoolExhausted(host_key, self.max_connections) from None

    async def _open(self, host_key: str, target: HostTarget) -> RemoteSession:
        session = self._session_factory(target)
        try:
            await session.connect()
            async with self._available:
                self._opening.discard(host_key)
                self._connections[host_key] = PooledConnection(
                    host_key=host_key,
                    session=session,
                    last_used_at=time.monotonic(),
                    in_use=True,
                )
        except BaseException as e:
            await self._unreserve(host_key)
            await session.close()
            if isinstance(e, HostConnectionError) and self._logger:
                await self._logger.log_connection_event(
                    host_key, "CONNECTION_FAILED", str(e)
                )
            raise

        if self._logger:
            await self._logger.log_connection_event(host_key, "CONNECTED")
        return session

    # ── Idle sweep ───────────────────────────────────────────

    async def sweep(self) -> int:
        """Close idle sessions unused for longer than idle_timeout."""
        now = time.monotonic()
        async with self._available:
            expired = [
                p for p in self._connections.values()
                if not p.in_use and now - p.last_used_at > self.idle_timeout
            ]
            for pooled in expired:
                del self._connections[pooled.host_key]
            if expired:
                self._available.notify_all()

        await self._close_sessions(expired, "IDLE_TIMEOUT")
        return len(expired)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.sweep()

    # ── Shutdown ─────────────────────────────────────────────

    async def close_all(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        async with self._available:
            pooled = list(self._connections.values())
            self._connections.clear()
            self._available.notify_all()

        await self._close_sessions(pooled, "CLOSED")

    async def _close_sessions(self, pooled: list[PooledConnection], event: str) -> None:
        if not pooled:
            return
        await asyncio.gather(
            *(p.session.close() for p in pooled), return_exceptions=True
        )
        if self._logger:
            for p in pooled:
                await self._logger.log_connection_event(p.host_key, event)

    async def __aenter__(self) -> ConnectionPool:
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close_all()
