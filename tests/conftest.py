"""Shared test fixtures for the batchssh test suite."""

import asyncio

import pytest

from batchssh.config import Inventory, InventoryResolver
from batchssh.coordinator import BatchCoordinator
from batchssh.errors import CommandTimeout, HostConnectionError
from batchssh.models import CommandOutput, Credentials, HostTarget
from batchssh.pool import ConnectionPool
from batchssh.store import MemoryStore


HANG = "hang"


def make_target(host_id: str) -> HostTarget:
    return HostTarget(
        host_id=host_id,
        address=f"{host_id}.example.internal",
        credentials=Credentials(username="deploy"),
    )


class FakeSession:
    """Stands in for RemoteSession; behaviour comes from its factory's script."""

    def __init__(self, target: HostTarget, factory: "FakeSessionFactory"):
        self.target = target
        self.connected = False
        self.closed = False
        self._factory = factory
        self._closed_event = asyncio.Event()

    async def connect(self) -> None:
        factory = self._factory
        factory.connects.append(self.target.host_id)
        await asyncio.sleep(factory.connect_delay)
        errors = factory.connect_errors.get(self.target.host_id)
        if errors:
            raise errors.pop(0)
        self.connected = True
        factory.open_sessions += 1
        factory.peak_open = max(factory.peak_open, factory.open_sessions)

    async def exec(self, command: str, timeout: float, max_buffer: int = 0) -> CommandOutput:
        factory = self._factory
        factory.execs.append((self.target.host_id, command))
        outcome = factory.next_outcome(self.target.host_id)
        await asyncio.sleep(factory.exec_delay)

        if outcome == HANG:
            try:
                await asyncio.wait_for(self._closed_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                raise CommandTimeout(timeout, host=self.target.display_name) from None
            raise HostConnectionError(
                "Connection lost", code="CONNECTION_LOST", host=self.target.address
            )
        if isinstance(outcome, BaseException):
            if isinstance(outcome, HostConnectionError):
                self.connected = False
            raise outcome
        return CommandOutput(exit_code=0, stdout=outcome, duration=factory.exec_delay)

    async def close(self) -> None:
        await asyncio.sleep(self._factory.close_delay)
        if self.connected:
            self._factory.open_sessions -= 1
        self.connected = False
        self.closed = True
        self._closed_event.set()


class FakeSessionFactory:
    """
    Session factory handed to ConnectionPool.

    ``script(host_id, *outcomes, then=...)`` queues exec outcomes for a host.
    An outcome is stdout text, an exception, HANG, or a zero-argument
    callable returning one of those (for a fresh exception per attempt).
    """

    def __init__(self):
        self.sessions: list[FakeSession] = []
        self.connects: list[str] = []
        self.execs: list[tuple[str, str]] = []
        self.connect_errors: dict[str, list[BaseException]] = {}
        self.connect_delay = 0.0
        self.exec_delay = 0.0
        self.close_delay = 0.0
        self.open_sessions = 0
        self.peak_open = 0
        self._scripts: dict[str, list] = {}
        self._fallback: dict[str, object] = {}

    def __call__(self, target: HostTarget) -> FakeSession:
        session = FakeSession(target, self)
        self.sessions.append(session)
        return session

    def script(self, host_id: str, *outcomes, then=None) -> None:
        self._scripts[host_id] = list(outcomes)
        if then is not None:
            self._fallback[host_id] = then

    def fail_connect(self, host_id: str, *errors: BaseException) -> None:
        self.connect_errors[host_id] = list(errors)

    def next_outcome(self, host_id: str):
        queue = self._scripts.get(host_id)
        outcome = queue.pop(0) if queue else self._fallback.get(host_id, f"ok from {host_id}\n")
        if callable(outcome):
            outcome = outcome()
        return outcome

    def exec_count(self, host_id: str) -> int:
        return sum(1 for h, _ in self.execs if h == host_id)


@pytest.fixture
def sessions():
    yield FakeSessionFactory()


@pytest.fixture
def targets():
    return {h: make_target(h) for h in ("web-1", "web-2", "web-3")}


@pytest.fixture
def inventory(targets):
    inv = Inventory()
    for host_id, target in targets.items():
        inv.hosts[host_id] = target
        inv.owners[host_id] = None
    inv.hosts["vault"] = make_target("vault")
    inv.owners["vault"] = "bob"
    return inv


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_coordinator(sessions, store, inventory):
    """Build a coordinator over fake sessions with the given pool size."""

    def _make(max_connections: int = 10, **pool_kwargs) -> BatchCoordinator:
        pool = ConnectionPool(
            max_connections=max_connections,
            session_factory=sessions,
            **pool_kwargs,
        )
        return BatchCoordinator(pool, store, InventoryResolver(inventory))

    return _make
