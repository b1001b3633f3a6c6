import json
from datetime import timedelta

import click

from . import repository
from .config import DEFAULT_DB_FILE
from .db import Store, init_db
from .logging_utils import setup_logging
from .models import Decision, JobState
from .producer import Producer, format_email_body
from .transport import get_transport
from .utils import parse_delay_to_seconds, utcnow
from .watchdog import Watchdog
from .worker import start_workers


def _store(ctx) -> Store:
    return Store(ctx.obj["db"]).open()


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


@click.group(help="outboxctl: durable outbound email queue")
@click.option("--db", "db_path", envvar="OUTBOXCTL_DB", default=DEFAULT_DB_FILE, show_default=True,
              help="SQLite database file")
@click.option("--log-level", envvar="OUTBOXCTL_LOG_LEVEL", default="INFO", show_default=True)
@click.option("--json-logs", is_flag=True, default=False, help="One JSON object per log line")
@click.pass_context
def cli(ctx, db_path, log_level, json_logs):
    setup_logging(log_level, json_output=json_logs)
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = {"db": db_path}


# ---------- Tenants ----------
@cli.group("tenant", help="Manage workspaces")
def tenant_group():
    pass


@tenant_group.command("add")
@click.argument("tenant_id")
@click.option("--name", default=None, help="Display name (defaults to the id)")
@click.option("--sender", "sender_email", default=None, help="From address for this workspace")
@click.pass_context
def tenant_add(ctx, tenant_id, name, sender_email):
    store = _store(ctx)
    try:
        repository.add_tenant(store.conn, tenant_id=tenant_id, name=name, now=utcnow(), sender_email=sender_email)
        click.secho(f"Added tenant {tenant_id}.", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        store.close()


@tenant_group.command("remove")
@click.argument("tenant_id")
@click.pass_context
def tenant_remove(ctx, tenant_id):
    store = _store(ctx)
    try:
        if not repository.remove_tenant(store.conn, tenant_id):
            _fail(f"Tenant {tenant_id} not found.")
        click.secho(f"Removed tenant {tenant_id}; its queued jobs are cancelled on the next sweep.", fg="yellow")
    finally:
        store.close()


@tenant_group.command("list")
@click.pass_context
def tenant_list(ctx):
    store = _store(ctx)
    try:
        rows = repository.list_tenants(store.conn)
    finally:
        store.close()

    if not rows:
        click.echo("No tenants.")
        return
    for r in rows:
        click.echo(f"{r['id']:>20} | {r['name']} | sender={r['sender_email']} | created={r['created_at']}")


# ---------- Leads / campaigns ----------
@cli.group("lead", help="Manage leads")
def lead_group():
    pass


@lead_group.command("add")
@click.option("--tenant", "tenant_id", required=True)
@click.option("--email", required=True)
@click.option("--name", default=None)
@click.option("--id", "lead_id", default=None, help="Lead ID (generated when omitted)")
@click.pass_context
def lead_add(ctx, tenant_id, email, name, lead_id):
    store = _store(ctx)
    try:
        if not repository.tenant_exists(store.conn, tenant_id):
            raise LookupError(f"Unknown tenant {tenant_id!r}")
        lead_id = repository.add_lead(
            store.conn, tenant_id=tenant_id, email=email, now=utcnow(), name=name, lead_id=lead_id
        )
        click.echo(lead_id)
    except (ValueError, LookupError) as e:
        _fail(e)
    finally:
        store.close()


@cli.group("campaign", help="Start and stop campaigns")
def campaign_group():
    pass


@campaign_group.command("start")
@click.option("--tenant", "tenant_id", required=True)
@click.option("--niche", default="", help="Target niche")
@click.option("--daily-limit", type=int, default=50, show_default=True)
@click.option("--id", "campaign_id", default=None, help="Existing campaign to resume")
@click.pass_context
def campaign_start(ctx, tenant_id, niche, daily_limit, campaign_id):
    store = _store(ctx)
    try:
        campaign_id = Producer(store).start_campaign(
            tenant_id, niche=niche, daily_limit=daily_limit, campaign_id=campaign_id
        )
        click.echo(campaign_id)
    except (ValueError, LookupError) as e:
        _fail(e)
    finally:
        store.close()


@campaign_group.command("stop")
@click.option("--tenant", "tenant_id", required=True)
@click.argument("campaign_id")
@click.pass_context
def campaign_stop(ctx, tenant_id, campaign_id):
    store = _store(ctx)
    try:
        cancelled = Producer(store).stop_campaign(tenant_id, campaign_id)
        click.secho(f"Stopped {campaign_id}; cancelled {cancelled} queued job(s).", fg="yellow")
    except (ValueError, LookupError) as e:
        _fail(e)
    finally:
        store.close()


# ---------- Enqueue ----------
@cli.command("enqueue", help="Queue an email for delivery")
@click.option("--tenant", "tenant_id", required=True)
@click.option("--to", "recipient", required=True)
@click.option("--subject", required=True)
@click.option("--body", required=True, help="Body text; **bold**, *italic* and newlines become HTML")
@click.option("--lead", "lead_id", default=None)
@click.option("--campaign", "campaign_id", default=None)
@click.option("--in-reply-to", default=None, help="Message-ID being answered")
@click.option("--delay", "delay_str", default=None, help="Send after a delay, e.g. 20s, 5m, 1h30m")
@click.pass_context
def enqueue_cmd(ctx, tenant_id, recipient, subject, body, lead_id, campaign_id, in_reply_to, delay_str):
    store = _store(ctx)
    try:
        producer = Producer(store)
        decision = Decision(
            tenant_id=tenant_id, recipient=recipient, subject=subject, body=format_email_body(body),
            lead_id=lead_id, campaign_id=campaign_id, in_reply_to=in_reply_to,
        )
        scheduled_at = None
        if delay_str:
            scheduled_at = utcnow() + timedelta(seconds=parse_delay_to_seconds(delay_str))
        job_id = producer.enqueue(decision, scheduled_at=scheduled_at)
        click.echo(job_id)
    except (ValueError, LookupError) as e:
        _fail(e)
    finally:
        store.close()


# ---------- Jobs ----------
@cli.command("list")
@click.option("--tenant", "tenant_id", required=True)
@click.option("--state", type=click.Choice([s.value for s in JobState]), default=None)
@click.pass_context
def list_cmd(ctx, tenant_id, state):
    store = _store(ctx)
    try:
        jobs = repository.list_jobs(store.conn, tenant_id, state=state)
    finally:
        store.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id:>36} | {j.state.value:<9} | attempts={j.attempt_count} "
            f"| scheduled={j.scheduled_at} | error={j.error_detail}"
        )


@cli.command("status")
@click.option("--tenant", "tenant_id", required=True)
@click.pass_context
def status_cmd(ctx, tenant_id):
    store = _store(ctx)
    try:
        stats = repository.get_stats(store.conn, tenant_id, now=utcnow())
        click.echo(json.dumps(stats.as_dict(), indent=2))
    finally:
        store.close()


@cli.command("failed", help="Permanently failed (skipped) jobs")
@click.option("--tenant", "tenant_id", required=True)
@click.pass_context
def failed_cmd(ctx, tenant_id):
    store = _store(ctx)
    try:
        jobs = repository.list_jobs(store.conn, tenant_id, state=JobState.SKIPPED.value)
    finally:
        store.close()

    if not jobs:
        click.echo("No failed jobs.")
        return

    for j in jobs:
        click.echo(f"{j.id} | attempts={j.attempt_count} | error={j.error_detail}")


# ---------- Workers / watchdog ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--transport", "transport_name", envvar="OUTBOXCTL_TRANSPORT", default="dry-run",
              show_default=True, help="smtp or dry-run")
@click.option("--no-watchdog", is_flag=True, default=False, help="Do not run the reconciliation thread")
@click.pass_context
def worker_start(ctx, count, transport_name, no_watchdog):
    if count < 1:
        _fail("--count must be at least 1")
    try:
        transport = get_transport(transport_name)
    except ValueError as e:
        _fail(e)
    click.secho(f"Starting {count} worker(s) with the {transport.name} transport. Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, db_path=ctx.obj["db"], transport=transport, with_watchdog=not no_watchdog)
    click.secho("Workers stopped.", fg="yellow")


@cli.command("sweep", help="Run one reconciliation sweep now")
@click.pass_context
def sweep_cmd(ctx):
    store = _store(ctx)
    try:
        report = Watchdog(store).sweep()
        click.echo(json.dumps(report.as_dict(), indent=2))
    finally:
        store.close()


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    store = _store(ctx)
    try:
        click.echo(json.dumps(repository.get_config(store.conn), indent=2))
    finally:
        store.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    store = _store(ctx)
    try:
        repository.set_config(store.conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        store.close()


def main():
    cli()
