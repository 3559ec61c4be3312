from __future__ import annotations
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import yaml

from .errors import Unauthorized
from .models import (
    AuthMethod,
    BatchTemplate,
    Credentials,
    ExecutionPolicy,
    HostTarget,
    TargetSelector,
    Topology,
)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _resolve_env_vars(value: Any) -> Any:
    """Replace ${VAR_NAME} with environment variable values."""
    if not isinstance(value, str):
        return value
    def _replacer(match):
        var_name = match.group(1)
        env_val = os.environ.get(var_name)
        if env_val is None:
            raise ValueError(
                f"Environment variable '{var_name}' is not set "
                f"(referenced in config)"
            )
        return env_val
    return _ENV_VAR_PATTERN.sub(_replacer, value)


def _resolve_dict(d: dict) -> dict:
    """Resolve env vars in the string values of a dict."""
    return {k: _resolve_env_vars(v) if isinstance(v, str) else v for k, v in d.items()}


@dataclass(frozen=True)
class PoolSettings:
    max_connections: int = 10
    idle_timeout: float = 300.0
    sweep_interval: float = 60.0
    acquire_timeout: Optional[float] = None


@dataclass(frozen=True)
class HostGroup:
    name: str
    host_ids: tuple[str, ...] = ()
    owner: Optional[str] = None


@dataclass
class Inventory:
    """Hosts, groups, templates and defaults loaded from one file."""
    hosts: dict[str, HostTarget] = field(default_factory=dict)
    owners: dict[str, Optional[str]] = field(default_factory=dict)
    groups: dict[str, HostGroup] = field(default_factory=dict)
    templates: dict[str, BatchTemplate] = field(default_factory=dict)
    policy: ExecutionPolicy = field(default_factory=ExecutionPolicy)
    pool: PoolSettings = field(default_factory=PoolSettings)

    def visible_hosts(self, caller_id: Optional[str]) -> list[HostTarget]:
        return [
            host for host_id, host in self.hosts.items()
            if _owned(self.owners.get(host_id), caller_id)
        ]


def _owned(owner: Optional[str], caller_id: Optional[str]) -> bool:
    return owner is None or owner == caller_id


# ── Parsing ──────────────────────────────────────────────────────

def _parse_host(entry: dict) -> HostTarget:
    host_id = str(entry.get("id") or entry.get("label") or entry["hostname"])
    key_path = entry.get("key_path")
    return HostTarget(
        host_id=host_id,
        address=entry["hostname"],
        port=int(entry.get("port", 22)),
        credentials=Credentials(
            username=entry.get("username", "root"),
            auth_method=AuthMethod(entry.get("auth_method", "agent")),
            password=entry.get("password"),
            key_path=os.path.expanduser(key_path) if key_path else None,
            passphrase=entry.get("passphrase"),
        ),
        connect_timeout=float(entry.get("connect_timeout", 10.0)),
        label=entry.get("label"),
        tags=tuple(entry.get("tags", [])),
    )


def parse_policy(data: dict, base: Optional[ExecutionPolicy] = None) -> ExecutionPolicy:
    """Build an ExecutionPolicy from a config mapping, falling back to ``base``."""
    base = base or ExecutionPolicy()
    return ExecutionPolicy(
        topology=Topology(data.get("topology", base.topology.value)),
        timeout_seconds=float(data.get("timeout", base.timeout_seconds)),
        retry_count=int(data.get("retry_count", base.retry_count)),
        retry_delay_seconds=float(data.get("retry_delay", base.retry_delay_seconds)),
        stop_on_first_error=bool(data.get("stop_on_first_error", base.stop_on_first_error)),
    )


def _parse_group(name: str, entry: Any) -> HostGroup:
    if isinstance(entry, list):
        return HostGroup(name=name, host_ids=tuple(str(h) for h in entry))
    return HostGroup(
        name=name,
        host_ids=tuple(str(h) for h in entry.get("hosts", [])),
        owner=entry.get("owner"),
    )


def _parse_pool(data: dict) -> PoolSettings:
    acquire_timeout = data.get("acquire_timeout")
    return PoolSettings(
        max_connections=int(data.get("max_connections", 10)),
        idle_timeout=float(data.get("idle_timeout", 300.0)),
        sweep_interval=float(data.get("sweep_interval", 60.0)),
        acquire_timeout=float(acquire_timeout) if acquire_timeout is not None else None,
    )


def load_inventory(path: str | Path) -> Inventory:
    """Load hosts, groups, templates and defaults from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    inventory = Inventory()
    defaults: dict[str, Any] = data.get("defaults", {})

    for entry in data.get("hosts", []):
        merged = _resolve_dict({**defaults, **entry})
        host = _parse_host(merged)
        if host.host_id in inventory.hosts:
            raise ValueError(f"Duplicate host id '{host.host_id}' in {path}")
        inventory.hosts[host.host_id] = host
        inventory.owners[host.host_id] = merged.get("owner")

    for name, entry in (data.get("groups") or {}).items():
        group = _parse_group(str(name), entry)
        unknown = [h for h in group.host_ids if h not in inventory.hosts]
        if unknown:
            raise ValueError(
                f"Group '{name}' references unknown host(s): {', '.join(unknown)}"
            )
        inventory.groups[group.name] = group

    inventory.pool = _parse_pool(data.get("pool") or {})
    inventory.policy = parse_policy(data.get("policy") or {})

    for name, entry in (data.get("templates") or {}).items():
        inventory.templates[str(name)] = BatchTemplate(
            name=str(name),
            command=entry["command"],
            description=entry.get("description"),
            policy=parse_policy(entry, base=inventory.policy),
        )

    return inventory


def load_inventory_from_file(path: str | Path) -> Inventory:
    """
    Load a simple hosts file (one host per line).
    Format: hostname[:port] [user] [key_path]
    """
    inventory = Inventory()
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            host_part = parts[0]

            hostname, _, port_str = host_part.partition(":")
            port = int(port_str) if port_str else 22

            host = HostTarget(
                host_id=host_part,
                address=hostname,
                port=port,
                credentials=Credentials(
                    username=parts[1] if len(parts) > 1 else "root",
                    key_path=parts[2] if len(parts) > 2 else None,
                    auth_method=AuthMethod.KEY if len(parts) > 2 else AuthMethod.AGENT,
                ),
            )
            inventory.hosts[host.host_id] = host
            inventory.owners[host.host_id] = None

    return inventory


# ── Target resolution ────────────────────────────────────────────

class CredentialResolver(Protocol):
    async def resolve_targets(
        self, selector: TargetSelector, caller_id: Optional[str]
    ) -> list[HostTarget]: ...


class InventoryResolver:
    """Resolves target selectors against a loaded inventory."""

    def __init__(self, inventory: Inventory):
        self.inventory = inventory

    async def resolve_targets(
        self, selector: TargetSelector, caller_id: Optional[str]
    ) -> list[HostTarget]:
        if selector.group_id:
            group = self.inventory.groups.get(selector.group_id)
            if group is None or not _owned(group.owner, caller_id):
                raise Unauthorized(caller_id, [f"group:{selector.group_id}"])
            host_ids = group.host_ids
        else:
            host_ids = selector.host_ids

        denied = [
            h for h in host_ids
            if h not in self.inventory.hosts
            or not _owned(self.inventory.owners.get(h), caller_id)
        ]
        if denied:
            raise Unauthorized(caller_id, denied)

        seen: set[str] = set()
        targets = []
        for host_id in host_ids:
            if host_id not in seen:
                seen.add(host_id)
                targets.append(self.inventory.hosts[host_id])
        return targets
