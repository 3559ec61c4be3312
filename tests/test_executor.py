"""Tests for HostExecutor's retry loop and result recording."""

import asyncio

import pytest

from batchssh.errors import BufferExceeded, CommandError, HostConnectionError
from batchssh.executor import HostExecutor, describe_error
from batchssh.models import BatchExecution, ExecutionPolicy, HostStatus
from batchssh.pool import ConnectionPool

from conftest import HANG, make_target


WEB1 = make_target("web-1")


async def _executor(sessions, store, policy=None, cancel_event=None, **pool_kwargs):
    policy = policy or ExecutionPolicy(retry_delay_seconds=0)
    batch_id = await store.create_batch(
        BatchExecution(command="uptime", policy=policy, target_host_ids=["web-1"], total_hosts=1)
    )
    await store.create_host_results(batch_id, ["web-1"])
    pool = ConnectionPool(session_factory=sessions, **pool_kwargs)
    return HostExecutor(
        batch_id,
        "uptime",
        WEB1,
        policy,
        pool=pool,
        store=store,
        cancel_event=cancel_event or asyncio.Event(),
    )


async def _stored(store, executor):
    rows = await store.list_host_results(executor.result.batch_id)
    return rows[0]


@pytest.mark.asyncio
async def test_successful_run_records_output(sessions, store):
    executor = await _executor(sessions, store)

    result = await executor.run()

    assert result.status is HostStatus.COMPLETED
    assert result.exit_code == 0
    assert result.stdout == "ok from web-1\n"
    assert result.retry_attempt == 0
    assert result.error is None
    assert result.start_time <= result.end_time
    assert result.duration >= 0
    assert await _stored(store, executor) == result


@pytest.mark.asyncio
async def test_transient_failures_are_retried(sessions, store):
    sessions.script(
        "web-1",
        lambda: HostConnectionError("reset", code="ECONNRESET", host="web-1"),
        lambda: CommandError(1, stderr="busy"),
    )
    executor = await _executor(sessions, store, ExecutionPolicy(retry_count=2, retry_delay_seconds=0))

    result = await executor.run()

    assert result.status is HostStatus.COMPLETED
    assert result.retry_attempt == 2
    assert sessions.exec_count("web-1") == 3
    # The broken session was discarded and a fresh one opened
    assert sessions.connects == ["web-1", "web-1"]
    assert sessions.sessions[0].closed


@pytest.mark.asyncio
async def test_exhausted_retries_fail_with_last_error(sessions, store):
    sessions.script("web-1", then=lambda: CommandError(3, stderr="boom\n", stdout="half\n"))
    executor = await _executor(sessions, store, ExecutionPolicy(retry_count=2, retry_delay_seconds=0))

    result = await executor.run()

    assert result.status is HostStatus.FAILED
    assert result.retry_attempt == 3
    assert result.exit_code == 3
    assert result.stderr == "boom\n"
    assert result.stdout == "half\n"
    assert result.error == "CommandError: Command failed with exit code 3"
    assert sessions.exec_count("web-1") == 3
    assert await _stored(store, executor) == result


@pytest.mark.asyncio
async def test_buffer_overflow_is_not_retried(sessions, store):
    sessions.script("web-1", BufferExceeded("stdout", 1024))
    executor = await _executor(sessions, store, ExecutionPolicy(retry_count=3, retry_delay_seconds=0))

    result = await executor.run()

    assert result.status is HostStatus.FAILED
    assert result.retry_attempt == 1
    assert result.error.startswith("BufferExceeded:")
    assert sessions.exec_count("web-1") == 1


@pytest.mark.asyncio
async def test_connect_failure_is_retried(sessions, store):
    sessions.fail_connect("web-1", HostConnectionError("refused", code=111, host="web-1"))
    executor = await _executor(sessions, store, ExecutionPolicy(retry_count=1, retry_delay_seconds=0))

    result = await executor.run()

    assert result.status is HostStatus.COMPLETED
    assert result.retry_attempt == 1
    assert sessions.connects == ["web-1", "web-1"]


@pytest.mark.asyncio
async def test_hanging_command_fails_with_timeout(sessions, store):
    sessions.script("web-1", then=HANG)
    policy = ExecutionPolicy(timeout_seconds=0.05, retry_count=1, retry_delay_seconds=0.05)
    executor = await _executor(sessions, store, policy)

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await executor.run()

    assert result.status is HostStatus.FAILED
    assert result.error.startswith("CommandTimeout:")
    assert result.exit_code is None
    assert result.retry_attempt == 2
    assert sessions.exec_count("web-1") == 2
    # Two timeouts plus one retry delay
    assert loop.time() - started >= 0.14


@pytest.mark.asyncio
async def test_cancel_before_start_never_runs(sessions, store):
    cancel_event = asyncio.Event()
    cancel_event.set()
    executor = await _executor(sessions, store, cancel_event=cancel_event)

    result = await executor.run()

    assert result.status is HostStatus.CANCELLED
    assert result.start_time is None
    assert sessions.execs == []
    assert sessions.connects == []
    assert (await _stored(store, executor)).status is HostStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_interrupts_retry_delay(sessions, store):
    cancel_event = asyncio.Event()
    sessions.script("web-1", lambda: CommandError(1))
    policy = ExecutionPolicy(retry_count=1, retry_delay_seconds=30)
    executor = await _executor(sessions, store, policy, cancel_event=cancel_event)

    task = asyncio.create_task(executor.run())
    await asyncio.sleep(0.02)
    cancel_event.set()
    result = await asyncio.wait_for(task, timeout=1)

    assert result.status is HostStatus.CANCELLED
    assert sessions.exec_count("web-1") == 1


@pytest.mark.asyncio
async def test_cancel_abandons_pool_wait(sessions, store):
    cancel_event = asyncio.Event()
    executor = await _executor(sessions, store, cancel_event=cancel_event, max_connections=1)
    # Another caller holds the only slot
    await executor._pool.acquire("other", make_target("other"))

    task = asyncio.create_task(executor.run())
    await asyncio.sleep(0.02)
    assert not task.done()
    cancel_event.set()
    result = await asyncio.wait_for(task, timeout=1)

    assert result.status is HostStatus.CANCELLED
    assert "web-1" not in sessions.connects


@pytest.mark.asyncio
async def test_executor_leaves_row_alone_once_cancelled(sessions, store):
    cancel_event = asyncio.Event()
    sessions.script("web-1", HANG)
    executor = await _executor(
        sessions, store, ExecutionPolicy(timeout_seconds=0.1), cancel_event=cancel_event
    )

    task = asyncio.create_task(executor.run())
    await asyncio.sleep(0.02)
    cancel_event.set()
    await store.update_host_result(
        executor.result.batch_id, "web-1", {"status": HostStatus.CANCELLED}
    )
    result = await asyncio.wait_for(task, timeout=1)

    stored = await _stored(store, executor)
    assert result.status is HostStatus.CANCELLED
    assert stored.status is HostStatus.CANCELLED
    assert stored.error is None


@pytest.mark.asyncio
async def test_unexpected_connect_error_fails_host(sessions, store):
    sessions.fail_connect("web-1", ValueError("Passphrase must be specified"))
    executor = await _executor(sessions, store, ExecutionPolicy(retry_count=2, retry_delay_seconds=0))

    result = await executor.run()

    assert result.status is HostStatus.FAILED
    assert result.retry_attempt == 1
    assert result.error == "ValueError: Passphrase must be specified"
    assert result.end_time is not None
    assert sessions.connects == ["web-1"]
    assert (await _stored(store, executor)).status is HostStatus.FAILED


@pytest.mark.asyncio
async def test_retry_clears_previous_attempt_outcome(sessions, store):
    sessions.exec_delay = 0.05
    sessions.script("web-1", lambda: CommandError(1, stderr="busy\n"))
    executor = await _executor(sessions, store, ExecutionPolicy(retry_count=1, retry_delay_seconds=0))

    task = asyncio.create_task(executor.run())
    while sessions.exec_count("web-1") < 2:
        await asyncio.sleep(0.005)
    in_flight = await _stored(store, executor)
    result = await asyncio.wait_for(task, timeout=1)

    assert in_flight.status is HostStatus.RUNNING
    assert in_flight.retry_attempt == 1
    assert in_flight.start_time is not None
    assert in_flight.end_time is None
    assert in_flight.duration is None
    assert in_flight.error is None
    assert in_flight.exit_code is None
    assert in_flight.stderr == ""
    assert result.status is HostStatus.COMPLETED
    assert result.error is None


def test_describe_error_prefixes_type_name():
    assert describe_error(CommandError(2)) == "CommandError: Command failed with exit code 2"
