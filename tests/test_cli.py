"""
End-to-end smoke test of the outboxctl CLI: tenants, enqueue, delivery,
status, failed list, campaign stop, sweep and configuration.
"""

import json
import logging

import pytest
from click.testing import CliRunner

from outboxctl import cli as cli_mod
from outboxctl.cli import cli
from outboxctl.db import Store
from outboxctl.transport import DryRunTransport
from outboxctl.worker import Worker


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def run(tmp_path):
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    def _run(*args, ok=True):
        result = runner.invoke(cli, ["--db", db, "--log-level", "WARNING", *args])
        if ok:
            assert result.exit_code == 0, result.output
        return result

    _run.db = db
    return _run


def test_basic_flow(run):
    run("tenant", "add", "acme", "--name", "Acme", "--sender", "sales@acme.test")
    dup = run("tenant", "add", "acme", ok=False)
    assert dup.exit_code == 1
    assert "already exists" in dup.output
    assert "acme" in run("tenant", "list").output

    lead_id = run("lead", "add", "--tenant", "acme", "--email", "lead@example.com").output.strip()
    campaign_id = run("campaign", "start", "--tenant", "acme", "--daily-limit", "10").output.strip()

    now_job = run(
        "enqueue", "--tenant", "acme", "--to", "lead@example.com", "--subject", "Hi",
        "--body", "**Hello** there", "--lead", lead_id,
    ).output.strip()
    later_job = run(
        "enqueue", "--tenant", "acme", "--to", "lead@example.com", "--subject", "Follow up",
        "--body", "Just checking in", "--campaign", campaign_id, "--delay", "5m",
    ).output.strip()

    listing = run("list", "--tenant", "acme").output
    assert now_job in listing and later_job in listing
    assert "queued" in listing

    stats = json.loads(run("status", "--tenant", "acme").output)
    assert stats["queued"] == 2
    assert stats["active"] is True
    assert stats["dailyLimit"] == 10

    with Store(run.db) as store:
        assert Worker(store, DryRunTransport()).poll_and_dispatch() == 1

    stats = json.loads(run("status", "--tenant", "acme").output)
    assert (stats["sent"], stats["sentToday"], stats["queued"]) == (1, 1, 1)
    assert run("failed", "--tenant", "acme").output.strip() == "No failed jobs."

    stopped = run("campaign", "stop", "--tenant", "acme", campaign_id).output
    assert "cancelled 1" in stopped
    assert later_job in run("list", "--tenant", "acme", "--state", "cancelled").output

    run("tenant", "remove", "acme")
    report = json.loads(run("sweep").output)
    assert report["errors"] == 0


def test_enqueue_errors(run):
    unknown = run("enqueue", "--tenant", "ghost", "--to", "a@example.com", "--subject", "s", "--body", "b", ok=False)
    assert unknown.exit_code == 1
    assert "Unknown tenant" in unknown.output

    run("tenant", "add", "acme")
    bad = run("enqueue", "--tenant", "acme", "--to", "a@example.com", "--subject", "s", "--body", "b",
              "--delay", "soon", ok=False)
    assert bad.exit_code == 1
    assert "Invalid delay format" in bad.output


def test_config_get_and_set(run):
    cfg = json.loads(run("config", "get").output)
    assert cfg["max_attempts"] == "5"
    assert cfg["backoff_strategy"] == "fixed"

    run("config", "set", "backoff_strategy", "exponential")
    assert json.loads(run("config", "get").output)["backoff_strategy"] == "exponential"

    bad = run("config", "set", "backoff_base", "3", ok=False)
    assert bad.exit_code == 1
    assert "Allowed keys" in bad.output


def test_worker_start_wires_options(run, monkeypatch):
    calls = []
    monkeypatch.setattr(cli_mod, "start_workers", lambda count, **kw: calls.append((count, kw)))

    run("worker", "start", "--count", "2", "--no-watchdog")

    (count, kw), = calls
    assert count == 2
    assert kw["db_path"] == run.db
    assert kw["with_watchdog"] is False
    assert isinstance(kw["transport"], DryRunTransport)

    bad = run("worker", "start", "--transport", "pigeon", ok=False)
    assert bad.exit_code == 1
