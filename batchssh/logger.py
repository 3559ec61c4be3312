from __future__ import annotations
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import asyncio
import aiofiles

from .models import BatchExecution, HostResult


class ExecutionLogger:
    """
    Logs host results to per-host log files and an aggregate JSON log.

    Directory layout:
        log_dir/
        ├── hosts/
        │   ├── web-1.log
        │   └── db-primary.log
        ├── aggregate.jsonl          # One JSON object per finished HostResult
        └── sessions.log             # Batches, connection events, warnings
    """

    def __init__(self, log_dir: str | Path = "./batchssh_logs"):
        self.log_dir = Path(log_dir)
        self.hosts_dir = self.log_dir / "hosts"
        self.aggregate_path = self.log_dir / "aggregate.jsonl"
        self.session_log_path = self.log_dir / "sessions.log"
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        self.hosts_dir.mkdir(parents=True, exist_ok=True)
        self._initialized = True

    def _sanitize_filename(self, name: str) -> str:
        return "".join(c if c.isalnum() or c in "-_." else "_" for c in name)

    def _timestamp(self) -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")

    async def _append(self, path: Path, text: str) -> None:
        async with self._lock:
            async with aiofiles.open(path, mode="a") as f:
                await f.write(text)

    # ── Per-host log ─────────────────────────────────────────────

    async def log_attempt(self, host_name: str, command: str, result: HostResult) -> None:
        """Write the current state of a host result to its per-host log."""
        await self.initialize()

        host_file = self.hosts_dir / f"{self._sanitize_filename(host_name)}.log"
        ts = self._timestamp()
        duration = f"{result.duration:.2f}s" if result.duration is not None else "-"

        lines = [
            f"\n{'='*72}",
            f"[{ts}] Batch {result.batch_id} | Command: {command}",
            f"Status: {result.status.value} | Attempt: {result.retry_attempt} | "
            f"Exit Code: {result.exit_code} | Duration: {duration}",
        ]
        if result.error:
            lines.append(f"Error: {result.error}")
        if result.stdout.strip():
            lines.append("--- STDOUT ---")
            lines.append(result.stdout.rstrip())
        if result.stderr.strip():
            lines.append("--- STDERR ---")
            lines.append(result.stderr.rstrip())
        lines.append(f"{'='*72}")

        await self._append(host_file, "\n".join(lines) + "\n")

    async def log_result(self, host_name: str, command: str, result: HostResult) -> None:
        """Log a finished host result to the per-host and aggregate logs."""
        await self.log_attempt(host_name, command, result)

        json_record = {
            "timestamp": self._timestamp(),
            "batch_id": result.batch_id,
            "host_id": result.host_id,
            "host": host_name,
            "command": command,
            "status": result.status.value,
            "exit_code": result.exit_code,
            "retry_attempt": result.retry_attempt,
            "duration": result.duration,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "error": result.error,
        }
        await self._append(self.aggregate_path, json.dumps(json_record) + "\n")

    # ── Batch log ────────────────────────────────────────────────

    async def log_batch(self, batch: BatchExecution) -> None:
        """Append a summary line for a finished batch."""
        await self.initialize()
        summary = batch.summary()
        line = (
            f"[{self._timestamp()}] BATCH {summary['id']} {summary['status'].upper()} | "
            f"CMD: {batch.command!r} | "
            f"Hosts: {summary['total']} | "
            f"OK: {summary['completed']} | "
            f"FAIL: {summary['failed']} | "
            f"Duration: {summary['duration']}\n"
        )
        await self._append(self.session_log_path, line)

    # ── Connection events ────────────────────────────────────────

    async def log_connection_event(
        self,
        host_name: str,
        event: str,
        detail: Optional[str] = None,
    ) -> None:
        """Log connect/evict/close/error events."""
        await self.initialize()
        msg = f"[{self._timestamp()}] [{host_name}] {event}"
        if detail:
            msg += f": {detail}"
        await self._append(self.session_log_path, msg + "\n")

    async def log_warning(self, message: str) -> None:
        await self.initialize()
        await self._append(
            self.session_log_path, f"[{self._timestamp()}] WARNING {message}\n"
        )
