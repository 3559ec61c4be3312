from __future__ import annotations
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.text import Text
from rich import box

from .models import BatchExecution, BatchStatus, HostResult, HostStatus, HostTarget


console = Console()

_STATUS_STYLES = {
    HostStatus.PENDING: "dim",
    HostStatus.RUNNING: "cyan",
    HostStatus.COMPLETED: "green",
    HostStatus.FAILED: "red",
    HostStatus.TIMEOUT: "red",
    HostStatus.CANCELLED: "yellow",
}


def _duration(value: Optional[float]) -> str:
    return f"{value:.2f}s" if value is not None else "-"


def print_result_streaming(target: HostTarget, result: HostResult) -> None:
    """Print a single host result as it arrives."""
    ok = result.status is HostStatus.COMPLETED
    status = "✅" if ok else "❌"
    retries = f", {result.retry_attempt} retries" if result.retry_attempt else ""

    if result.error:
        console.print(
            f"  {status} [{target.display_name}] ERROR{retries}: {result.error}",
            style="red",
            markup=False,
        )
    else:
        console.print(
            f"  {status} [{target.display_name}] "
            f"(exit={result.exit_code}, {_duration(result.duration)}{retries})",
            style="green" if ok else "red",
            markup=False,
        )
    if result.stdout.strip():
        for line in result.stdout.strip().splitlines():
            console.print(f"     │ {line}", markup=False)
    if result.stderr.strip():
        for line in result.stderr.strip().splitlines():
            console.print(f"     │ {line}", style="yellow", markup=False)


def print_batch_result(
    batch: BatchExecution,
    results: list[HostResult],
    targets: dict[str, HostTarget],
) -> None:
    """Print a full batch result as a formatted table."""
    table = Table(
        title=f"Batch {batch.id}: {batch.command}",
        box=box.ROUNDED,
        show_lines=True,
    )
    table.add_column("Host", style="cyan", min_width=20)
    table.add_column("Status", justify="center", min_width=10)
    table.add_column("Exit", justify="center", min_width=6)
    table.add_column("Retries", justify="center", min_width=7)
    table.add_column("Duration", justify="right", min_width=10)
    table.add_column("Output", min_width=40)

    for r in results:
        target = targets.get(r.host_id)
        name = target.display_name if target else r.host_id
        status = Text(r.status.value.upper(), style=_STATUS_STYLES[r.status])
        output = r.stdout.strip()[:200] if r.stdout.strip() else (r.error or "")
        if r.stderr.strip():
            output += f"\n[stderr] {r.stderr.strip()[:100]}"

        table.add_row(
            name,
            status,
            str(r.exit_code) if r.exit_code is not None else "-",
            str(r.retry_attempt),
            _duration(r.duration),
            Text(output),
        )

    console.print(table)
    print_batch_summary(batch)


def print_batch_summary(batch: BatchExecution) -> None:
    style = {
        BatchStatus.COMPLETED: "yellow" if batch.partial else "green",
        BatchStatus.FAILED: "red",
        BatchStatus.CANCELLED: "yellow",
    }.get(batch.status, "cyan")
    label = "partial" if batch.partial else batch.status.value
    console.print(
        Panel(
            f"Status: [{style}]{label}[/{style}] | "
            f"Total: {batch.total_hosts} | "
            f"[green]Completed: {batch.completed_hosts}[/green] | "
            f"[red]Failed: {batch.failed_hosts}[/red] | "
            f"Duration: {_duration(batch.duration)}",
            title="Summary",
            box=box.ROUNDED,
        )
    )


def print_inventory(hosts: list[HostTarget], groups: dict[str, list[str]]) -> None:
    table = Table(title="Inventory", box=box.ROUNDED)
    table.add_column("Id", style="cyan")
    table.add_column("Address")
    table.add_column("User")
    table.add_column("Auth", style="dim")
    table.add_column("Groups")
    table.add_column("Tags", style="dim")

    for host in hosts:
        member_of = [name for name, ids in groups.items() if host.host_id in ids]
        table.add_row(
            host.host_id,
            f"{host.address}:{host.port}",
            host.credentials.username,
            host.credentials.auth_method.value,
            ", ".join(member_of),
            ", ".join(host.tags),
        )

    console.print(table)
