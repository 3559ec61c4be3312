from __future__ import annotations
import asyncio
import dataclasses
import sys
from typing import Optional

import click

from .config import Inventory, InventoryResolver, load_inventory, load_inventory_from_file
from .coordinator import BatchCoordinator
from .errors import BatchSSHError, HostConnectionError, PoolExhausted
from .logger import ExecutionLogger
from .models import (
    BatchExecution,
    BatchStatus,
    ExecutionPolicy,
    HostResult,
    HostTarget,
    TargetSelector,
    Topology,
)
from .output import console, print_batch_result, print_batch_summary, print_inventory, print_result_streaming
from .pool import ConnectionPool
from .store import MemoryStore


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="YAML inventory file")
@click.option("--hosts-file", "-H", type=click.Path(exists=True), help="Simple hosts file")
@click.option("--caller", default=None, help="Caller id used for host ownership checks")
@click.option("--max-connections", "-n", type=int, default=None, help="Max pooled SSH sessions")
@click.option("--log-dir", "-l", default="./batchssh_logs", help="Log output directory")
@click.option("--no-log", is_flag=True, default=False, help="Disable file logging")
@click.pass_context
def cli(ctx, config, hosts_file, caller, max_connections, log_dir, no_log):
    """batchssh - Dispatch one command to many SSH hosts and track every outcome."""
    ctx.ensure_object(dict)

    try:
        if config:
            inventory = load_inventory(config)
        elif hosts_file:
            inventory = load_inventory_from_file(hosts_file)
        else:
            inventory = Inventory()
    except (ValueError, KeyError) as e:
        raise click.BadParameter(str(e), param_hint="--config") from e

    ctx.obj["inventory"] = inventory
    ctx.obj["caller"] = caller
    ctx.obj["max_connections"] = max_connections
    ctx.obj["log_dir"] = log_dir
    ctx.obj["enable_logging"] = not no_log


def _build_pool(obj: dict, logger: Optional[ExecutionLogger]) -> ConnectionPool:
    settings = obj["inventory"].pool
    return ConnectionPool(
        max_connections=obj["max_connections"] or settings.max_connections,
        idle_timeout=settings.idle_timeout,
        sweep_interval=settings.sweep_interval,
        acquire_timeout=settings.acquire_timeout,
        logger=logger,
    )


def _build_logger(obj: dict) -> Optional[ExecutionLogger]:
    return ExecutionLogger(obj["log_dir"]) if obj["enable_logging"] else None


# ── run ──────────────────────────────────────────────────────────

@cli.command()
@click.argument("command", required=False)
@click.option("--group", "-g", default=None, help="Target a server group")
@click.option("--target", "-t", "host_ids", multiple=True, help="Target a host id (repeatable)")
@click.option("--template", "template_name", default=None, help="Run a command template")
@click.option(
    "--mode", "-m",
    type=click.Choice([t.value for t in Topology]),
    default=None,
)
@click.option("--timeout", type=float, default=None, help="Per-host command timeout in seconds")
@click.option("--retries", type=int, default=None, help="Retries per host after the first attempt")
@click.option("--retry-delay", type=float, default=None, help="Seconds between retries")
@click.option("--stop-on-first-error/--keep-going", default=None, help="Stop on first failed host")
@click.option("--stream/--no-stream", default=True, help="Stream results as they arrive")
@click.pass_context
def run(ctx, command, group, host_ids, template_name, mode, timeout, retries,
        retry_delay, stop_on_first_error, stream):
    """Execute a command on a set of hosts."""
    inventory: Inventory = ctx.obj["inventory"]
    caller = ctx.obj["caller"]

    template = None
    if template_name:
        template = inventory.templates.get(template_name)
        if template is None:
            raise click.BadParameter(f"Unknown template '{template_name}'", param_hint="--template")
    if not command and template is None:
        raise click.UsageError("Either COMMAND or --template is required")
    if group and host_ids:
        raise click.UsageError("Use either --group or --target, not both")

    policy = _build_policy(
        template.policy if template else inventory.policy,
        mode=mode,
        timeout=timeout,
        retries=retries,
        retry_delay=retry_delay,
        stop_on_first_error=stop_on_first_error,
    )

    if group:
        selector = TargetSelector.group(group)
    elif host_ids:
        selector = TargetSelector.hosts(*host_ids)
    else:
        visible = inventory.visible_hosts(caller)
        if not visible:
            console.print("[red]No hosts configured. Aborting.[/red]")
            sys.exit(1)
        selector = TargetSelector.hosts(*(h.host_id for h in visible))

    try:
        batch = asyncio.run(
            _run_batch(
                ctx.obj,
                command=command or template.command,
                selector=selector,
                policy=policy,
                stream=stream,
                name=template.name if template else None,
                description=template.description if template else None,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Batch cancelled.[/yellow]")
        sys.exit(130)
    except BatchSSHError as e:
        console.print(f"[red]Error:[/red] {e}", highlight=False)
        sys.exit(1)

    if batch.status is not BatchStatus.COMPLETED or batch.failed_hosts:
        sys.exit(1)


def _build_policy(
    base: ExecutionPolicy,
    mode: Optional[str],
    timeout: Optional[float],
    retries: Optional[int],
    retry_delay: Optional[float],
    stop_on_first_error: Optional[bool],
) -> ExecutionPolicy:
    overrides = {}
    if mode is not None:
        overrides["topology"] = Topology(mode)
    if timeout is not None:
        overrides["timeout_seconds"] = timeout
    if retries is not None:
        overrides["retry_count"] = retries
    if retry_delay is not None:
        overrides["retry_delay_seconds"] = retry_delay
    if stop_on_first_error is not None:
        overrides["stop_on_first_error"] = stop_on_first_error
    try:
        return dataclasses.replace(base, **overrides)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


async def _run_batch(
    obj: dict,
    command: str,
    selector: TargetSelector,
    policy: ExecutionPolicy,
    stream: bool,
    name: Optional[str],
    description: Optional[str],
) -> BatchExecution:
    inventory: Inventory = obj["inventory"]
    logger = _build_logger(obj)
    coordinator = BatchCoordinator(
        _build_pool(obj, logger),
        MemoryStore(),
        InventoryResolver(inventory),
        logger=logger,
    )

    async with coordinator:
        if stream:
            async def _stream_cb(target: HostTarget, result: HostResult):
                print_result_streaming(target, result)
            coordinator.on_result(_stream_cb)

        batch_id = await coordinator.submit(
            command,
            selector,
            policy=policy,
            caller_id=obj["caller"],
            name=name,
            description=description,
        )
        batch = await coordinator.get_status(batch_id)
        console.print(
            f"\n[bold cyan]Running ({policy.topology.value}, "
            f"{batch.total_hosts} hosts):[/bold cyan] {command}\n",
            highlight=False,
        )

        try:
            batch = await coordinator.wait(batch_id)
        except asyncio.CancelledError:
            await coordinator.cancel(batch_id)
            raise

        if stream:
            console.print()
            print_batch_summary(batch)
        else:
            print_batch_result(
                batch, await coordinator.get_results(batch_id), inventory.hosts
            )

    if logger:
        console.print(f"[dim]Logs written to {obj['log_dir']}/[/dim]")
    return batch


# ── hosts ────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def hosts(ctx):
    """List the hosts and groups visible to the caller."""
    inventory: Inventory = ctx.obj["inventory"]
    caller = ctx.obj["caller"]
    groups = {
        name: list(group.host_ids)
        for name, group in inventory.groups.items()
        if group.owner is None or group.owner == caller
    }
    print_inventory(inventory.visible_hosts(caller), groups)


# ── check ────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def check(ctx):
    """Test connectivity to every visible host."""
    targets = ctx.obj["inventory"].visible_hosts(ctx.obj["caller"])
    results = asyncio.run(_check_hosts(ctx.obj, targets))
    for name, error in sorted(results.items()):
        if error is None:
            console.print(f"  [green]OK[/green]    {name}")
        else:
            console.print(f"  [red]FAIL[/red]  {name}: {error}", highlight=False)
    if any(error is not None for error in results.values()):
        sys.exit(1)


async def _check_hosts(obj: dict, targets: list[HostTarget]) -> dict[str, Optional[str]]:
    pool = _build_pool(obj, _build_logger(obj))

    async def _check_one(target: HostTarget) -> tuple[str, Optional[str]]:
        try:
            await pool.acquire(target.host_key, target)
        except (HostConnectionError, PoolExhausted) as e:
            return target.display_name, str(e)
        await pool.release(target.host_key)
        return target.display_name, None

    async with pool:
        return dict(await asyncio.gather(*(_check_one(t) for t in targets)))


# ── entry point ──────────────────────────────────────────────────

def main():
    cli()


if __name__ == "__main__":
    main()
