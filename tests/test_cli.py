"""Tests for the click CLI, with SSH sessions replaced by fakes."""

import textwrap

import pytest
from click.testing import CliRunner

from batchssh.cli import cli
from batchssh.errors import CommandError, HostConnectionError


INVENTORY = """\
defaults:
  username: deploy

hosts:
  - id: web-1
    hostname: 10.0.0.11
  - id: web-2
    hostname: 10.0.0.12
  - id: vault
    hostname: 10.0.9.1
    owner: bob

groups:
  web: [web-1, web-2]

templates:
  disk-usage:
    command: df -h /
    topology: sequential
"""


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "inventory.yaml"
    path.write_text(INVENTORY)
    return str(path)


@pytest.fixture
def fake_ssh(sessions, monkeypatch):
    monkeypatch.setattr("batchssh.pool.RemoteSession", sessions)
    return sessions


def _invoke(*args):
    return CliRunner().invoke(cli, list(args))


def test_hosts_lists_visible_inventory(config):
    result = _invoke("-c", config, "hosts")

    assert result.exit_code == 0
    assert "web-1" in result.output
    assert "vault" not in result.output

    result = _invoke("-c", config, "--caller", "bob", "hosts")
    assert "vault" in result.output


def test_run_on_group_succeeds(config, fake_ssh):
    result = _invoke("-c", config, "--no-log", "run", "uptime", "-g", "web")

    assert result.exit_code == 0, result.output
    assert "ok from web-1" in result.output
    assert "ok from web-2" in result.output
    assert "Summary" in result.output
    assert sorted(h for h, _ in fake_ssh.execs) == ["web-1", "web-2"]


def test_run_defaults_to_every_visible_host(config, fake_ssh):
    result = _invoke("-c", config, "--no-log", "run", "hostname", "--no-stream")

    assert result.exit_code == 0, result.output
    assert sorted(h for h, _ in fake_ssh.execs) == ["web-1", "web-2"]


def test_failed_host_sets_exit_code(config, fake_ssh):
    fake_ssh.script("web-2", CommandError(1, stderr="boom"))

    result = _invoke("-c", config, "--no-log", "run", "false", "-t", "web-1", "-t", "web-2")

    assert result.exit_code == 1
    assert "partial" in result.output


def test_retries_flag_is_applied(config, fake_ssh):
    fake_ssh.script("web-1", CommandError(1))

    result = _invoke(
        "-c", config, "--no-log", "run", "uptime", "-t", "web-1",
        "--retries", "1", "--retry-delay", "0",
    )

    assert result.exit_code == 0, result.output
    assert fake_ssh.exec_count("web-1") == 2


def test_template_supplies_command(config, fake_ssh):
    result = _invoke("-c", config, "--no-log", "run", "--template", "disk-usage", "-g", "web")

    assert result.exit_code == 0, result.output
    assert {cmd for _, cmd in fake_ssh.execs} == {"df -h /"}


def test_unowned_target_is_reported(config, fake_ssh):
    result = _invoke("-c", config, "--no-log", "run", "uptime", "-t", "vault")

    assert result.exit_code == 1
    assert "does not own" in result.output
    assert fake_ssh.execs == []


def test_run_needs_a_command(config):
    result = _invoke("-c", config, "run", "-g", "web")

    assert result.exit_code == 2
    assert "COMMAND or --template" in result.output


def test_invalid_policy_override_is_rejected(config):
    result = _invoke("-c", config, "run", "uptime", "--timeout", "0")

    assert result.exit_code == 2


def test_broken_inventory_is_rejected(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(textwrap.dedent("""
        hosts:
          - id: web-1
            hostname: 10.0.0.11
        groups:
          web: [web-1, web-9]
    """))

    result = _invoke("-c", str(path), "hosts")

    assert result.exit_code == 2
    assert "web-9" in result.output


def test_check_reports_unreachable_hosts(config, fake_ssh):
    fake_ssh.fail_connect(
        "web-2", HostConnectionError("Connection refused", code=111, host="10.0.0.12")
    )

    result = _invoke("-c", config, "--no-log", "check")

    assert result.exit_code == 1
    assert "OK" in result.output
    assert "FAIL" in result.output
    assert "Connection refused" in result.output


def test_run_writes_logs(config, fake_ssh, tmp_path):
    log_dir = tmp_path / "logs"

    result = _invoke("-c", config, "-l", str(log_dir), "run", "uptime", "-t", "web-1")

    assert result.exit_code == 0, result.output
    assert (log_dir / "aggregate.jsonl").exists()
    assert (log_dir / "sessions.log").exists()
