from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


DEFAULT_MAX_BUFFER = 1024 * 1024


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthMethod(Enum):
    KEY = "key"
    PASSWORD = "password"
    AGENT = "agent"


class Topology(Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class BatchStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED)


class HostStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (HostStatus.COMPLETED, HostStatus.FAILED, HostStatus.CANCELLED)


@dataclass(frozen=True)
class Credentials:
    """Authentication material for a single SSH host."""
    username: str = "root"
    auth_method: AuthMethod = AuthMethod.AGENT
    password: Optional[str] = None
    key_path: Optional[str] = None
    passphrase: Optional[str] = None


@dataclass(frozen=True)
class HostTarget:
    """A resolved host, immutable for the lifetime of a batch."""
    host_id: str
    address: str
    port: int = 22
    credentials: Credentials = field(default_factory=Credentials)
    connect_timeout: float = 10.0
    label: Optional[str] = None
    tags: tuple[str, ...] = ()

    @property
    def host_key(self) -> str:
        return f"{self.credentials.username}@{self.address}:{self.port}"

    @property
    def display_name(self) -> str:
        return self.label or self.host_key


@dataclass(frozen=True)
class ExecutionPolicy:
    """How a batch command is dispatched across its targets."""
    topology: Topology = Topology.PARALLEL
    timeout_seconds: float = 300.0
    retry_count: int = 0
    retry_delay_seconds: float = 5.0
    stop_on_first_error: bool = False

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.retry_count < 0:
            raise ValueError("retry_count must not be negative")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must not be negative")

    @property
    def max_attempts(self) -> int:
        return self.retry_count + 1


@dataclass(frozen=True)
class TargetSelector:
    """Either a server group or an explicit list of host ids."""
    group_id: Optional[str] = None
    host_ids: tuple[str, ...] = ()

    def __post_init__(self):
        if bool(self.group_id) == bool(self.host_ids):
            raise ValueError("exactly one of group_id or host_ids is required")

    @classmethod
    def group(cls, group_id: str) -> TargetSelector:
        return cls(group_id=group_id)

    @classmethod
    def hosts(cls, *host_ids: str) -> TargetSelector:
        return cls(host_ids=tuple(host_ids))


@dataclass(frozen=True)
class BatchTemplate:
    """A named command with a default execution policy."""
    name: str
    command: str
    description: Optional[str] = None
    policy: ExecutionPolicy = field(default_factory=ExecutionPolicy)


@dataclass
class CommandOutput:
    """Output of a command that exited successfully."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0


@dataclass
class HostResult:
    """Execution record for one host within one batch."""
    batch_id: int
    host_id: str
    status: HostStatus = HostStatus.PENDING
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    retry_attempt: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    error: Optional[str] = None


@dataclass
class BatchExecution:
    """A single command dispatched to a set of hosts under one policy."""
    command: str
    policy: ExecutionPolicy
    target_host_ids: list[str] = field(default_factory=list)
    id: Optional[int] = None
    status: BatchStatus = BatchStatus.PENDING
    total_hosts: int = 0
    completed_hosts: int = 0
    failed_hosts: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    caller_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    @property
    def partial(self) -> bool:
        """Completed, but with at least one failed host."""
        return self.status is BatchStatus.COMPLETED and self.failed_hosts > 0

    def summary(self) -> dict:
        duration = self.duration
        return {
            "id": self.id,
            "command": self.command,
            "status": self.status.value,
            "total": self.total_hosts,
            "completed": self.completed_hosts,
            "failed": self.failed_hosts,
            "duration": f"{duration:.2f}s" if duration is not None else "-",
        }
