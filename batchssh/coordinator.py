from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .config import CredentialResolver
from .errors import AlreadyTerminal, BatchNotFound, InvalidRequest
from .executor import HostExecutor, describe_error
from .logger import ExecutionLogger
from .models import (
    BatchExecution,
    BatchStatus,
    BatchTemplate,
    DEFAULT_MAX_BUFFER,
    ExecutionPolicy,
    HostResult,
    HostStatus,
    HostTarget,
    TargetSelector,
    Topology,
    utcnow,
)
from .pool import ConnectionPool
from .store import PersistenceGateway


ResultCallback = Callable[[HostTarget, HostResult], Awaitable[None]]


def count_outcomes(results: list[HostResult]) -> tuple[int, int]:
    """Return (completed, failed) host counts."""
    completed = sum(1 for r in results if r.status is HostStatus.COMPLETED)
    failed = sum(
        1 for r in results if r.status in (HostStatus.FAILED, HostStatus.TIMEOUT)
    )
    return completed, failed


def aggregate_status(completed: int, failed: int) -> BatchStatus:
    # Partial success still reports completed; failed_hosts carries the rest
    if completed == 0 and failed > 0:
        return BatchStatus.FAILED
    return BatchStatus.COMPLETED


@dataclass
class _ActiveBatch:
    cancel_event: asyncio.Event
    task: Optional[asyncio.Task] = None
    first_failure_logged: bool = False


class BatchCoordinator:
    def __init__(
        self,
        pool: ConnectionPool,
        store: PersistenceGateway,
        resolver: CredentialResolver,
        logger: Optional[ExecutionLogger] = None,
        max_buffer: int = DEFAULT_MAX_BUFFER,
    ):
        self._pool = pool
        self._store = store
        self._resolver = resolver
        self._logger = logger
        self._max_buffer = max_buffer
        self._active: dict[int, _ActiveBatch] = {}
        self._on_result: Optional[ResultCallback] = None

    def on_result(self, callback: ResultCallback) -> None:
        self._on_result = callback

    # ── Submission ───────────────────────────────────────────

    async def submit(
        self,
        command: str,
        targets: TargetSelector,
        policy: Optional[ExecutionPolicy] = None,
        caller_id: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> int:
        command = (command or "").strip()
        if not command:
            raise InvalidRequest("Command is required")
        policy = policy or ExecutionPolicy()

        hosts = await self._resolver.resolve_targets(targets, caller_id)
        if not hosts:
            raise InvalidRequest("No valid target hosts found")

        record = BatchExecution(
            command=command,
            policy=policy,
            target_host_ids=[h.host_id for h in hosts],
            total_hosts=len(hosts),
            caller_id=caller_id,
            name=name,
            description=description,
        )
        batch_id = await self._store.create_batch(record)
        await self._store.create_host_results(batch_id, record.target_host_ids)
        await self._store.update_batch(
            batch_id, {"status": BatchStatus.RUNNING, "start_time": utcnow()}
        )

        active = _ActiveBatch(cancel_event=asyncio.Event())
        self._active[batch_id] = active
        active.task = asyncio.create_task(
            self._execute(batch_id, hosts, command, policy, active),
            name=f"batch-{batch_id}",
        )
        return batch_id

    async def submit_template(
        self,
        template: BatchTemplate,
        targets: TargetSelector,
        caller_id: Optional[str] = None,
        policy: Optional[ExecutionPolicy] = None,
    ) -> int:
        return await self.submit(
            template.command,
            targets,
            policy=policy or template.policy,
            caller_id=caller_id,
            name=template.name,
            description=template.description,
        )

    # ── Execution ────────────────────────────────────────────

    async def _execute(
        self,
        batch_id: int,
        hosts: list[HostTarget],
        command: str,
        policy: ExecutionPolicy,
        active: _ActiveBatch,
    ) -> None:
        try:
            match policy.topology:
                case Topology.PARALLEL:
                    await self._run_parallel(batch_id, hosts, command, policy, active)
                case Topology.SEQUENTIAL:
                    await self._run_sequential(batch_id, hosts, command, policy, active)

            if not active.cancel_event.is_set():
                await self._finalize(batch_id)
        except Exception as e:
            # Anything escaping the executors fails the whole batch
            await self._warn(f"Batch {batch_id} failed: {describe_error(e)}")
            try:
                await self._store.update_batch(
                    batch_id, {"status": BatchStatus.FAILED, "end_time": utcnow()}
                )
            except AlreadyTerminal:
                pass
        finally:
            self._active.pop(batch_id, None)

    async def _run_host(
        self,
        batch_id: int,
        target: HostTarget,
        command: str,
        policy: ExecutionPolicy,
        active: _ActiveBatch,
    ) -> HostResult:
        executor = HostExecutor(
            batch_id,
            command,
            target,
            policy,
            pool=self._pool,
            store=self._store,
            cancel_event=active.cancel_event,
            logger=self._logger,
            max_buffer=self._max_buffer,
        )
        result = await executor.run()
        if self._on_result and result.status is not HostStatus.CANCELLED:
            await self._on_result(target, result)
        return result

    async def _run_parallel(
        self,
        batch_id: int,
        hosts: list[HostTarget],
        command: str,
        policy: ExecutionPolicy,
        active: _ActiveBatch,
    ) -> None:
        async def _run_one(target: HostTarget) -> HostResult:
            result = await self._run_host(batch_id, target, command, policy, active)
            if (
                policy.stop_on_first_error
                and result.status is HostStatus.FAILED
                and not active.first_failure_logged
            ):
                # Siblings keep running; the first failure is only reported
                active.first_failure_logged = True
                await self._warn(
                    f"Batch {batch_id}: first failure on {target.display_name}: "
                    f"{result.error}"
                )
            return result

        results = await asyncio.gather(
            *(_run_one(t) for t in hosts), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _run_sequential(
        self,
        batch_id: int,
        hosts: list[HostTarget],
        command: str,
        policy: ExecutionPolicy,
        active: _ActiveBatch,
    ) -> None:
        for index, target in enumerate(hosts):
            if active.cancel_event.is_set():
                break
            result = await self._run_host(batch_id, target, command, policy, active)
            if policy.stop_on_first_error and result.status is HostStatus.FAILED:
                await self._warn(
                    f"Batch {batch_id}: stopping after failure on {target.display_name}, "
                    f"{len(hosts) - index - 1} host(s) left pending"
                )
                break

    async def _finalize(self, batch_id: int) -> None:
        results = await self._store.list_host_results(batch_id)
        completed, failed = count_outcomes(results)
        try:
            await self._store.update_batch(batch_id, {
                "status": aggregate_status(completed, failed),
                "completed_hosts": completed,
                "failed_hosts": failed,
                "end_time": utcnow(),
            })
        except AlreadyTerminal:
            return  # cancelled while aggregating

        if self._logger:
            batch = await self._store.get_batch(batch_id)
            await self._logger.log_batch(batch)

    # ── Cancellation ─────────────────────────────────────────

    async def cancel(self, batch_id: int, caller_id: Optional[str] = None) -> bool:
        """
        Cancel a pending or running batch.

        Returns False if the batch already reached a terminal status.
        Raises BatchNotFound for unknown ids or ids the caller does not own.
        """
        batch = await self.get_status(batch_id, caller_id)
        if batch.status.terminal:
            return False

        active = self._active.get(batch_id)
        if active is not None:
            active.cancel_event.set()

        try:
            await self._store.update_batch(
                batch_id, {"status": BatchStatus.CANCELLED, "end_time": utcnow()}
            )
        except AlreadyTerminal:
            return False

        now = utcnow()
        stopped = 0
        for row in await self._store.list_host_results(batch_id):
            if row.status.terminal:
                continue
            try:
                await self._store.update_host_result(
                    batch_id, row.host_id,
                    {"status": HostStatus.CANCELLED, "end_time": now},
                )
                stopped += 1
            except AlreadyTerminal:
                pass  # the executor recorded its own cancellation first
        await self._warn(f"Batch {batch_id} cancelled, {stopped} host(s) stopped")

        completed, failed = count_outcomes(await self._store.list_host_results(batch_id))
        await self._store.update_batch(
            batch_id, {"completed_hosts": completed, "failed_hosts": failed}
        )

        if self._logger:
            await self._logger.log_batch(await self._store.get_batch(batch_id))
        return True

    # ── Queries ──────────────────────────────────────────────

    async def get_status(
        self, batch_id: int, caller_id: Optional[str] = None
    ) -> BatchExecution:
        batch = await self._store.get_batch(batch_id)
        if batch is None or (caller_id is not None and batch.caller_id != caller_id):
            raise BatchNotFound(batch_id)
        return batch

    async def get_results(
        self, batch_id: int, caller_id: Optional[str] = None
    ) -> list[HostResult]:
        batch = await self.get_status(batch_id, caller_id)
        order = {host_id: i for i, host_id in enumerate(batch.target_host_ids)}
        results = await self._store.list_host_results(batch_id)
        return sorted(results, key=lambda r: order.get(r.host_id, len(order)))

    async def list_batches(self, caller_id: Optional[str] = None) -> list[BatchExecution]:
        return await self._store.list_batches(caller_id)

    async def wait(
        self, batch_id: int, timeout: Optional[float] = None
    ) -> BatchExecution:
        """Wait for a batch's background run to finish, then return its status."""
        active = self._active.get(batch_id)
        if active is not None and active.task is not None:
            await asyncio.wait_for(asyncio.shield(active.task), timeout=timeout)
        return await self.get_status(batch_id)

    def active_batches(self) -> list[int]:
        return list(self._active)

    async def _warn(self, message: str) -> None:
        if self._logger:
            await self._logger.log_warning(message)

    # ── Lifecycle ────────────────────────────────────────────

    async def close(self) -> None:
        """Cancel every active batch, wait for it to unwind, close the pool."""
        for batch_id in list(self._active):
            try:
                await self.cancel(batch_id)
            except BatchNotFound:
                pass
        tasks = [a.task for a in self._active.values() if a.task is not None]
        # Closing the sessions cuts commands still in flight
        await self._pool.close_all()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._pool.close_all()

    async def __aenter__(self) -> BatchCoordinator:
        self._pool.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
