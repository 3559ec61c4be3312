from __future__ import annotations
import asyncio
import dataclasses
import itertools
from typing import Any, Optional, Protocol

from .errors import AlreadyTerminal, BatchNotFound
from .models import BatchExecution, HostResult


class PersistenceGateway(Protocol):
    """
    Durable store for batch and per-host records.

    Patches are plain dicts of field name to new value. Reads return
    copies, so callers never share state with the store. A patch that
    would change the status of a terminal record raises AlreadyTerminal.
    """

    async def create_batch(self, record: BatchExecution) -> int: ...

    async def update_batch(self, batch_id: int, patch: dict[str, Any]) -> None: ...

    async def get_batch(self, batch_id: int) -> Optional[BatchExecution]: ...

    async def list_batches(self, caller_id: Optional[str] = None) -> list[BatchExecution]: ...

    async def create_host_results(self, batch_id: int, host_ids: list[str]) -> None: ...

    async def update_host_result(
        self, batch_id: int, host_id: str, patch: dict[str, Any]
    ) -> None: ...

    async def list_host_results(self, batch_id: int) -> list[HostResult]: ...


def _copy_batch(batch: BatchExecution, **changes) -> BatchExecution:
    return dataclasses.replace(
        batch, target_host_ids=list(batch.target_host_ids), **changes
    )


def _apply(record, patch: dict[str, Any]) -> None:
    for name, value in patch.items():
        if not hasattr(record, name):
            raise AttributeError(f"{type(record).__name__} has no field {name!r}")
        setattr(record, name, value)


class MemoryStore:
    """PersistenceGateway kept in process memory."""

    def __init__(self):
        self._batches: dict[int, BatchExecution] = {}
        self._results: dict[int, dict[str, HostResult]] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create_batch(self, record: BatchExecution) -> int:
        async with self._lock:
            batch_id = next(self._ids)
            self._batches[batch_id] = _copy_batch(record, id=batch_id)
            self._results[batch_id] = {}
            return batch_id

    async def update_batch(self, batch_id: int, patch: dict[str, Any]) -> None:
        async with self._lock:
            batch = self._get(batch_id)
            status = patch.get("status")
            if batch.status.terminal and status is not None and status is not batch.status:
                raise AlreadyTerminal(
                    f"Batch {batch_id} is already {batch.status.value}"
                )
            _apply(batch, patch)

    async def get_batch(self, batch_id: int) -> Optional[BatchExecution]:
        batch = self._batches.get(batch_id)
        return _copy_batch(batch) if batch is not None else None

    async def list_batches(self, caller_id: Optional[str] = None) -> list[BatchExecution]:
        batches = [
            b for b in self._batches.values()
            if caller_id is None or b.caller_id == caller_id
        ]
        batches.sort(key=lambda b: (b.created_at, b.id), reverse=True)
        return [_copy_batch(b) for b in batches]

    async def create_host_results(self, batch_id: int, host_ids: list[str]) -> None:
        async with self._lock:
            self._get(batch_id)
            rows = self._results[batch_id]
            for host_id in host_ids:
                rows[host_id] = HostResult(batch_id=batch_id, host_id=host_id)

    async def update_host_result(
        self, batch_id: int, host_id: str, patch: dict[str, Any]
    ) -> None:
        async with self._lock:
            self._get(batch_id)
            row = self._results[batch_id].get(host_id)
            if row is None:
                raise KeyError(f"No result for host {host_id!r} in batch {batch_id}")
            status = patch.get("status")
            if row.status.terminal and status is not None:
                raise AlreadyTerminal(
                    f"Host {host_id} in batch {batch_id} is already {row.status.value}"
                )
            _apply(row, patch)

    async def list_host_results(self, batch_id: int) -> list[HostResult]:
        self._get(batch_id)
        return [dataclasses.replace(r) for r in self._results[batch_id].values()]

    def _get(self, batch_id: int) -> BatchExecution:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise BatchNotFound(batch_id)
        return batch

