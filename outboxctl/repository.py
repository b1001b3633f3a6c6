import json
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .config import DEFAULT_CONFIG, Settings, parse_config_value
from .exceptions import IllegalTransition
from .models import (
    CAMPAIGN_IDLE, CAMPAIGN_RUNNING, LEAD_CLOSED, LEAD_CONTACTED, LEAD_STATUSES, STALE_LEAD_STATUSES,
    LIVE_STATES, JobState, OutboundMessage, SendJob, TenantCredential, TenantStats, can_transition,
)
from .utils import iso_from_now, start_of_day, to_iso


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    out = dict(DEFAULT_CONFIG)
    out.update({r["key"]: r["value"] for r in cur.fetchall()})
    return out


def load_settings(conn) -> Settings:
    return Settings.from_mapping(get_config(conn))


def set_config(conn, key: str, value: str):
    # must parse exactly as Settings.from_mapping does
    parse_config_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Tenants / leads / campaigns ----------
def add_tenant(conn, *, tenant_id: str, name: str, now: datetime, sender_email: Optional[str] = None):
    if not tenant_id or not tenant_id.strip():
        raise ValueError("Tenant id cannot be empty.")
    try:
        with conn:
            conn.execute(
                "INSERT INTO workspaces(id, name, sender_email, created_at) VALUES (?,?,?,?)",
                (tenant_id, name or tenant_id, sender_email, to_iso(now)),
            )
    except sqlite3.IntegrityError:
        raise ValueError(f"Tenant '{tenant_id}' already exists.")


def remove_tenant(conn, tenant_id: str) -> bool:
    # Jobs, leads and campaigns stay behind; the watchdog closes them out.
    with conn:
        res = conn.execute("DELETE FROM workspaces WHERE id=?", (tenant_id,))
    return res.rowcount == 1


def list_tenants(conn) -> Iterable[sqlite3.Row]:
    return conn.execute("SELECT * FROM workspaces ORDER BY created_at ASC").fetchall()


def tenant_exists(conn, tenant_id: str) -> bool:
    return conn.execute("SELECT 1 FROM workspaces WHERE id=?", (tenant_id,)).fetchone() is not None


def get_credential(conn, tenant_id: str) -> Optional[TenantCredential]:
    row = conn.execute(
        "SELECT id, name, sender_email FROM workspaces WHERE id=?", (tenant_id,)
    ).fetchone()
    if not row:
        return None
    return TenantCredential(tenant_id=row["id"], sender_email=row["sender_email"], sender_name=row["name"])


def add_lead(conn, *, tenant_id: str, email: str, now: datetime,
             name: Optional[str] = None, status: str = "new", lead_id: Optional[str] = None) -> str:
    if status not in LEAD_STATUSES:
        raise ValueError(f"Unknown lead status {status!r}")
    lead_id = lead_id or str(uuid.uuid4())
    ts = to_iso(now)
    with conn:
        conn.execute(
            """INSERT INTO leads (id, tenant_id, email, name, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (lead_id, tenant_id, email, name, status, ts, ts),
        )
    return lead_id


def get_lead(conn, tenant_id: str, lead_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM leads WHERE id=? AND tenant_id=?", (lead_id, tenant_id)
    ).fetchone()


def get_campaign(conn, tenant_id: str, campaign_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM campaigns WHERE id=? AND tenant_id=?", (campaign_id, tenant_id)
    ).fetchone()


def campaign_owner(conn, campaign_id: str) -> Optional[str]:
    row = conn.execute("SELECT tenant_id FROM campaigns WHERE id=?", (campaign_id,)).fetchone()
    return row["tenant_id"] if row else None


def upsert_campaign(conn, *, tenant_id: str, campaign_id: str, status: str,
                    now: datetime, niche: Optional[str] = None, daily_limit: Optional[int] = None):
    """Caller owns the transaction."""
    ts = to_iso(now)
    conn.execute(
        """INSERT INTO campaigns (id, tenant_id, status, niche, daily_limit, created_at, updated_at)
           VALUES (?, ?, ?, COALESCE(?, ''), COALESCE(?, 50), ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               status=excluded.status,
               niche=COALESCE(?, campaigns.niche),
               daily_limit=COALESCE(?, campaigns.daily_limit),
               updated_at=excluded.updated_at
           WHERE campaigns.tenant_id=excluded.tenant_id""",
        (campaign_id, tenant_id, status, niche, daily_limit, ts, ts, niche, daily_limit),
    )


def cancel_campaign_jobs(conn, *, tenant_id: str, campaign_id: str, now: datetime) -> int:
    """Queued -> cancelled for one campaign. Caller owns the transaction."""
    _check(JobState.QUEUED, JobState.CANCELLED)
    res = conn.execute(
        """UPDATE send_jobs
           SET state=?, error_detail='Campaign stopped', updated_at=?
           WHERE tenant_id=? AND campaign_id=? AND state=?""",
        (JobState.CANCELLED.value, to_iso(now), tenant_id, campaign_id, JobState.QUEUED.value),
    )
    return res.rowcount


# ---------- Jobs: enqueue ----------
def insert_job(conn, *, job_id: str, tenant_id: str, message_id: str, dedupe_key: str,
               scheduled_at: datetime, now: datetime,
               lead_id: Optional[str] = None, campaign_id: Optional[str] = None) -> bool:
    """False when a live job with (tenant_id, dedupe_key) already exists. Caller owns the transaction."""
    ts = to_iso(now)
    res = conn.execute(
        """INSERT INTO send_jobs
           (id, tenant_id, message_id, lead_id, campaign_id, state, attempt_count,
            scheduled_at, dedupe_key, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
           ON CONFLICT DO NOTHING""",
        (job_id, tenant_id, message_id, lead_id, campaign_id, JobState.QUEUED.value,
         to_iso(scheduled_at), dedupe_key, ts, ts),
    )
    return res.rowcount == 1


def find_job_by_dedupe_key(conn, tenant_id: str, dedupe_key: str) -> Optional[str]:
    row = conn.execute(
        f"""SELECT id FROM send_jobs
            WHERE tenant_id=? AND dedupe_key=? AND state IN ({','.join('?' * len(LIVE_STATES))})""",
        (tenant_id, dedupe_key, *(s.value for s in LIVE_STATES)),
    ).fetchone()
    return row["id"] if row else None


def insert_message(conn, *, message_id: str, tenant_id: str, message: OutboundMessage, now: datetime):
    """Caller owns the transaction."""
    attachments = json.dumps([a.to_dict() for a in message.attachments]) if message.attachments else None
    conn.execute(
        """INSERT INTO messages
           (id, tenant_id, lead_id, recipient, subject, body, in_reply_to, attachments, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (message_id, tenant_id, message.lead_id, message.recipient, message.subject,
         message.body, message.in_reply_to, attachments, to_iso(now)),
    )


def log_action(conn, *, tenant_id: str, lead_id: Optional[str], action_type: str,
               details: Optional[dict], now: datetime):
    """Caller owns the transaction."""
    conn.execute(
        """INSERT INTO action_log (id, tenant_id, lead_id, action_type, details, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (str(uuid.uuid4()), tenant_id, lead_id, action_type,
         json.dumps(details) if details is not None else None, to_iso(now)),
    )


# ---------- Jobs: state transitions ----------
_UNSET = object()
_WRITABLE_COLUMNS = frozenset({
    "scheduled_at", "last_attempt_at", "error_detail", "provider_message_id", "picked_by", "sent_at",
})


def _check(current: JobState, new: JobState):
    if not can_transition(current, new):
        raise IllegalTransition(current, new)


def _transition(conn, tenant_id: str, job_id: str, expected, new, *, now: datetime,
                expected_last_attempt_at=_UNSET, attempts_below: Optional[int] = None,
                increment_attempts: bool = False, **fields) -> bool:
    expected, new = JobState(expected), JobState(new)
    _check(expected, new)
    unknown = set(fields) - _WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"Not writable through a transition: {', '.join(sorted(unknown))}")

    sets = ["state=?", "updated_at=?"]
    params: list = [new.value, to_iso(now)]
    if increment_attempts:
        sets.append("attempt_count=attempt_count + 1")
    for col, val in fields.items():
        sets.append(f"{col}=?")
        params.append(val)

    where = ["id=?", "tenant_id=?", "state=?"]
    params += [job_id, tenant_id, expected.value]
    if expected_last_attempt_at is not _UNSET:
        where.append("last_attempt_at IS ?")
        params.append(expected_last_attempt_at)
    if attempts_below is not None:
        where.append("attempt_count < ?")
        params.append(attempts_below)

    res = conn.execute(
        f"UPDATE send_jobs SET {', '.join(sets)} WHERE {' AND '.join(where)}", params
    )
    return res.rowcount == 1


def try_transition(conn, tenant_id: str, job_id: str, expected, new, *, now: datetime, **kwargs) -> bool:
    """
    Move one job from `expected` to `new` with a single conditional UPDATE.

    Returns True only if this call performed the change; False means the row
    was not in the expected state (another worker or the watchdog got there
    first) or belongs to another tenant. Raises IllegalTransition for a pair
    the state machine does not allow.

    Keyword options:
      expected_last_attempt_at  also require last_attempt_at IS this value
      attempts_below            also require attempt_count < this value
      increment_attempts        attempt_count + 1
      **fields                  scheduled_at, last_attempt_at, error_detail,
                                provider_message_id, picked_by, sent_at
    """
    with conn:
        return _transition(conn, tenant_id, job_id, expected, new, now=now, **kwargs)


def try_lease(conn, job: SendJob, *, worker_name: str, now: datetime, max_attempts: int) -> Optional[str]:
    """
    Lease acquisition: test-and-set on (state, last_attempt_at).
    Returns the lease timestamp on success, None if someone else holds it.
    """
    lease_ts = to_iso(now)
    ok = try_transition(
        conn, job.tenant_id, job.id, job.state, JobState.LEASED,
        now=now,
        expected_last_attempt_at=job.last_attempt_at,
        attempts_below=max_attempts,
        increment_attempts=True,
        last_attempt_at=lease_ts,
        picked_by=worker_name,
    )
    return lease_ts if ok else None


def record_delivery(conn, job: SendJob, *, lease_ts: str, provider_message_id: Optional[str],
                    now: datetime) -> bool:
    """Leased -> sent plus the message/lead side effects, in one transaction."""
    ts = to_iso(now)
    with conn:
        ok = _transition(
            conn, job.tenant_id, job.id, JobState.LEASED, JobState.SENT,
            now=now,
            expected_last_attempt_at=lease_ts,
            provider_message_id=provider_message_id,
            error_detail=None,
            sent_at=ts,
            picked_by=None,
        )
        if not ok:
            return False
        conn.execute(
            "UPDATE messages SET provider_message_id=?, sent_at=? WHERE id=? AND tenant_id=?",
            (provider_message_id, ts, job.message_id, job.tenant_id),
        )
        if job.lead_id:
            conn.execute(
                """UPDATE leads
                   SET status=CASE WHEN status IN (?, ?) THEN ? ELSE status END,
                       last_contact_at=?, updated_at=?
                   WHERE id=? AND tenant_id=?""",
                (*STALE_LEAD_STATUSES, LEAD_CONTACTED, ts, ts, job.lead_id, job.tenant_id),
            )
    return True


# ---------- Queries ----------
def get_job(conn, tenant_id: str, job_id: str) -> Optional[SendJob]:
    row = conn.execute(
        "SELECT * FROM send_jobs WHERE id=? AND tenant_id=?", (job_id, tenant_id)
    ).fetchone()
    return SendJob.from_row(row) if row else None


def load_message(conn, tenant_id: str, message_id: str) -> Optional[OutboundMessage]:
    row = conn.execute(
        "SELECT * FROM messages WHERE id=? AND tenant_id=?", (message_id, tenant_id)
    ).fetchone()
    return OutboundMessage.from_row(row) if row else None


def select_actionable(conn, *, now: datetime, lease_timeout_seconds: int, limit: int) -> List[SendJob]:
    """
    Due queued jobs plus leases the worker abandoned more than
    `lease_timeout_seconds` ago, oldest-due first. Spans all tenants; every
    mutation that follows is tenant-scoped.
    """
    rows = conn.execute(
        """SELECT * FROM send_jobs
           WHERE (state=? AND scheduled_at <= ?)
              OR (state=? AND last_attempt_at <= ?)
           ORDER BY scheduled_at ASC
           LIMIT ?""",
        (JobState.QUEUED.value, to_iso(now),
         JobState.LEASED.value, iso_from_now(now, -lease_timeout_seconds),
         int(limit)),
    ).fetchall()
    return [SendJob.from_row(r) for r in rows]


def list_jobs(conn, tenant_id: str, state: Optional[str] = None) -> List[SendJob]:
    if state:
        rows = conn.execute(
            "SELECT * FROM send_jobs WHERE tenant_id=? AND state=? ORDER BY scheduled_at ASC",
            (tenant_id, JobState(state).value),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM send_jobs WHERE tenant_id=? ORDER BY scheduled_at ASC", (tenant_id,)
        ).fetchall()
    return [SendJob.from_row(r) for r in rows]


def get_stats(conn, tenant_id: str, *, now: datetime) -> TenantStats:
    stats = TenantStats()
    for r in conn.execute(
        "SELECT state, COUNT(1) AS c FROM send_jobs WHERE tenant_id=? GROUP BY state", (tenant_id,)
    ):
        state = JobState(r["state"])
        if state is JobState.QUEUED:
            stats.queued = r["c"]
        elif state is JobState.LEASED:
            stats.leased = r["c"]
        elif state is JobState.SENT:
            stats.sent = r["c"]
        elif state is JobState.SKIPPED:
            stats.failed = r["c"]
        elif state is JobState.CANCELLED:
            stats.cancelled = r["c"]

    stats.sent_today = conn.execute(
        "SELECT COUNT(1) AS c FROM send_jobs WHERE tenant_id=? AND state=? AND sent_at >= ?",
        (tenant_id, JobState.SENT.value, to_iso(start_of_day(now))),
    ).fetchone()["c"]

    row = conn.execute(
        "SELECT COUNT(1) AS c, MAX(daily_limit) AS lim FROM campaigns WHERE tenant_id=? AND status=?",
        (tenant_id, CAMPAIGN_RUNNING),
    ).fetchone()
    stats.active = row["c"] > 0
    stats.daily_limit = row["lim"]
    return stats


# ---------- Reconciliation (bulk, idempotent) ----------
def recover_orphans(conn, *, now: datetime, orphan_timeout_seconds: int, requeue_delay_seconds: int) -> int:
    _check(JobState.LEASED, JobState.QUEUED)
    with conn:
        res = conn.execute(
            """UPDATE send_jobs
               SET state=?, scheduled_at=?, picked_by=NULL, updated_at=?
               WHERE state=? AND last_attempt_at < ?""",
            (JobState.QUEUED.value, iso_from_now(now, requeue_delay_seconds), to_iso(now),
             JobState.LEASED.value, iso_from_now(now, -orphan_timeout_seconds)),
        )
    return res.rowcount


def cull_exhausted(conn, *, now: datetime, max_attempts: int) -> int:
    _check(JobState.QUEUED, JobState.SKIPPED)
    with conn:
        res = conn.execute(
            """UPDATE send_jobs
               SET state=?, error_detail=?, updated_at=?
               WHERE state=? AND attempt_count >= ?""",
            (JobState.SKIPPED.value, f"Permanently failed after {max_attempts} attempts",
             to_iso(now), JobState.QUEUED.value, max_attempts),
        )
    return res.rowcount


def close_stale_leads(conn, *, now: datetime, stale_days: int) -> int:
    cutoff = to_iso(now - timedelta(days=stale_days))
    with conn:
        res = conn.execute(
            f"""UPDATE leads
                SET status=?, updated_at=?
                WHERE status IN ({','.join('?' * len(STALE_LEAD_STATUSES))})
                  AND created_at < ?
                  AND (last_contact_at IS NULL OR last_contact_at < ?)""",
            (LEAD_CLOSED, to_iso(now), *STALE_LEAD_STATUSES, cutoff, cutoff),
        )
    return res.rowcount


def idle_orphaned_campaigns(conn, *, now: datetime) -> int:
    with conn:
        res = conn.execute(
            """UPDATE campaigns
               SET status=?, updated_at=?
               WHERE status=? AND tenant_id NOT IN (SELECT id FROM workspaces)""",
            (CAMPAIGN_IDLE, to_iso(now), CAMPAIGN_RUNNING),
        )
    return res.rowcount


def cancel_orphaned_jobs(conn, *, now: datetime) -> int:
    _check(JobState.QUEUED, JobState.CANCELLED)
    with conn:
        res = conn.execute(
            """UPDATE send_jobs
               SET state=?, error_detail='Tenant no longer exists', updated_at=?
               WHERE state=? AND tenant_id NOT IN (SELECT id FROM workspaces)""",
            (JobState.CANCELLED.value, to_iso(now), JobState.QUEUED.value),
        )
    return res.rowcount
