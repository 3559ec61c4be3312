from __future__ import annotations
import asyncio
from typing import Any, Optional

from .errors import (
    AlreadyTerminal,
    BufferExceeded,
    CommandError,
    CommandTimeout,
    HostConnectionError,
    PoolExhausted,
)
from .logger import ExecutionLogger
from .models import (
    CommandOutput,
    DEFAULT_MAX_BUFFER,
    ExecutionPolicy,
    HostResult,
    HostStatus,
    HostTarget,
    utcnow,
)
from .pool import ConnectionPool
from .session import RemoteSession
from .store import PersistenceGateway


RETRYABLE_ERRORS = (HostConnectionError, CommandTimeout, CommandError, PoolExhausted)


class _Cancelled(Exception):
    """Raised internally once the batch cancellation flag is observed."""


def describe_error(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class HostExecutor:
    """
    Runs the batch command on one host, retrying transient failures.

    The executor is the only writer of its host's result row until the
    batch is cancelled. After that it never writes running, completed or
    failed again; it only marks the row cancelled if Cancel has not
    already done so.
    """

    def __init__(
        self,
        batch_id: int,
        command: str,
        target: HostTarget,
        policy: ExecutionPolicy,
        pool: ConnectionPool,
        store: PersistenceGateway,
        cancel_event: asyncio.Event,
        logger: Optional[ExecutionLogger] = None,
        max_buffer: int = DEFAULT_MAX_BUFFER,
    ):
        self.command = command
        self.target = target
        self.policy = policy
        self.result = HostResult(batch_id=batch_id, host_id=target.host_id)
        self._pool = pool
        self._store = store
        self._cancel_event = cancel_event
        self._logger = logger
        self._max_buffer = max_buffer

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def run(self) -> HostResult:
        try:
            return await self._run()
        except _Cancelled:
            return await self._finish_cancelled()

    async def _run(self) -> HostResult:
        attempt = 0
        while True:
            if self.cancelled:
                raise _Cancelled

            patch: dict[str, Any] = {"status": HostStatus.RUNNING, "retry_attempt": attempt}
            if self.result.start_time is None:
                patch["start_time"] = utcnow()
            else:
                # Previous attempt's outcome
                patch.update(
                    exit_code=None, stdout="", stderr="",
                    end_time=None, duration=None, error=None,
                )
            await self._persist(patch)

            try:
                output = await self._attempt()
            except BufferExceeded as e:
                return await self._finish_failed(e, attempt + 1)
            except RETRYABLE_ERRORS as e:
                attempt += 1
                if attempt > self.policy.retry_count:
                    return await self._finish_failed(e, attempt)
                await self._record_retry(e, attempt)
                await self._sleep_before_retry()
                continue
            except _Cancelled:
                raise
            except Exception as e:
                # Unexpected faults end this host only, never the batch
                return await self._finish_failed(e, attempt + 1)

            return await self._finish_completed(output)

    # ── Single attempt ───────────────────────────────────────

    async def _attempt(self) -> CommandOutput:
        session = await self._acquire()
        healthy = True
        try:
            return await session.exec(
                self.command,
                timeout=self.policy.timeout_seconds,
                max_buffer=self._max_buffer,
            )
        except HostConnectionError:
            healthy = False
            raise
        finally:
            if healthy:
                await self._pool.release(self.target.host_key)
            else:
                await self._pool.discard(self.target.host_key)

    async def _acquire(self) -> RemoteSession:
        """Acquire a pooled session, giving up if the batch is cancelled."""
        host_key = self.target.host_key
        acquire = asyncio.ensure_future(self._pool.acquire(host_key, self.target))
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            acquire.cancel()
            raise
        finally:
            cancelled.cancel()

        if not acquire.done():
            acquire.cancel()
            try:
                await acquire
            except asyncio.CancelledError:
                raise _Cancelled from None
            # The handshake finished before the cancel landed
            await self._pool.release(host_key)
            raise _Cancelled

        session = acquire.result()
        if self.cancelled:
            await self._pool.release(host_key)
            raise _Cancelled
        return session

    async def _sleep_before_retry(self) -> None:
        delay = self.policy.retry_delay_seconds
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return

    # ── Persistence ──────────────────────────────────────────

    async def _persist(self, patch: dict[str, Any]) -> None:
        if self.cancelled:
            raise _Cancelled
        try:
            await self._store.update_host_result(
                self.result.batch_id, self.result.host_id, patch
            )
        except AlreadyTerminal as e:
            raise _Cancelled from e
        for name, value in patch.items():
            setattr(self.result, name, value)

    def _elapsed(self, end) -> Optional[float]:
        if self.result.start_time is None:
            return None
        return (end - self.result.start_time).total_seconds()

    def _error_fields(self, error: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {"error": describe_error(error)}
        if isinstance(error, CommandError):
            fields.update(exit_code=error.exit_code, stdout=error.stdout, stderr=error.stderr)
        elif isinstance(error, CommandTimeout):
            fields.update(exit_code=None, stderr=error.stderr)
        else:
            fields["exit_code"] = None
        return fields

    async def _finish_completed(self, output: CommandOutput) -> HostResult:
        end = utcnow()
        await self._persist({
            "status": HostStatus.COMPLETED,
            "exit_code": output.exit_code,
            "stdout": output.stdout,
            "stderr": output.stderr,
            "end_time": end,
            "duration": self._elapsed(end),
            "error": None,
        })
        if self._logger:
            await self._logger.log_result(self.target.display_name, self.command, self.result)
        return self.result

    async def _finish_failed(self, error: BaseException, attempt: int) -> HostResult:
        end = utcnow()
        await self._persist({
            "status": HostStatus.FAILED,
            "retry_attempt": attempt,
            "end_time": end,
            "duration": self._elapsed(end),
            **self._error_fields(error),
        })
        if self._logger:
            await self._logger.log_result(self.target.display_name, self.command, self.result)
        return self.result

    async def _record_retry(self, error: BaseException, attempt: int) -> None:
        end = utcnow()
        await self._persist({
            "status": HostStatus.PENDING,
            "retry_attempt": attempt,
            "end_time": end,
            "duration": self._elapsed(end),
            **self._error_fields(error),
        })
        if self._logger:
            await self._logger.log_attempt(self.target.display_name, self.command, self.result)
            await self._logger.log_warning(
                f"{self.target.display_name} attempt {attempt} failed, retrying in "
                f"{self.policy.retry_delay_seconds}s: {self.result.error}"
            )

    async def _finish_cancelled(self) -> HostResult:
        end = utcnow()
        try:
            await self._store.update_host_result(
                self.result.batch_id,
                self.result.host_id,
                {"status": HostStatus.CANCELLED, "end_time": end},
            )
            self.result.end_time = end
        except AlreadyTerminal:
            pass  # Cancel marked the row first
        self.result.status = HostStatus.CANCELLED
        return self.result
