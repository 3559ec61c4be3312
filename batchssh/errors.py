from __future__ import annotations
from typing import Iterable, Optional, Union


class BatchSSHError(Exception):
    """Base class for every error raised by batchssh."""


class HostConnectionError(BatchSSHError, ConnectionError):
    """Transport or authentication failure against a single host."""

    def __init__(self, message: str, code: Optional[Union[int, str]] = None, host: str = ""):
        super().__init__(message)
        self.code = code
        self.host = host


class CommandTimeout(BatchSSHError):
    def __init__(self, timeout: float, host: str = "", stderr: str = ""):
        super().__init__(f"Command timed out after {timeout}s")
        self.timeout = timeout
        self.host = host
        self.stderr = stderr


class BufferExceeded(BatchSSHError):
    """Command output went over the per-stream cap. Never retried."""

    def __init__(self, stream: str, limit: int, host: str = ""):
        super().__init__(
            f"Command {stream} exceeded maximum buffer size ({limit} bytes)"
        )
        self.stream = stream
        self.limit = limit
        self.host = host


class CommandError(BatchSSHError):
    """The remote command ran but exited non-zero."""

    def __init__(
        self,
        exit_code: Optional[int],
        stderr: str = "",
        stdout: str = "",
        host: str = "",
    ):
        super().__init__(f"Command failed with exit code {exit_code}")
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        self.host = host


class PoolExhausted(BatchSSHError):
    def __init__(self, host_key: str, max_connections: int):
        super().__init__(
            f"Connection pool is full ({max_connections} sessions), "
            f"cannot open {host_key}"
        )
        self.host_key = host_key
        self.max_connections = max_connections


class Unauthorized(BatchSSHError):
    def __init__(self, caller_id: Optional[str], ids: Iterable[str]):
        self.caller_id = caller_id
        self.ids = sorted(ids)
        super().__init__(
            f"Caller {caller_id!r} does not own target(s): {', '.join(self.ids)}"
        )


class BatchNotFound(BatchSSHError):
    def __init__(self, batch_id: int):
        super().__init__(f"Batch execution {batch_id} not found")
        self.batch_id = batch_id


class AlreadyTerminal(BatchSSHError):
    """A status change was attempted on a record that already finished."""


class InvalidRequest(BatchSSHError, ValueError):
    pass
