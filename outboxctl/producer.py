"""
Enqueue path: turns a qualification decision into one message row and one
send job, written in the same transaction.
"""

import hashlib
import logging
import re
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from . import repository
from .db import Store
from .exceptions import UnknownTenant
from .models import CAMPAIGN_IDLE, CAMPAIGN_RUNNING, Decision, OutboundMessage
from .utils import utcnow

log = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def dedupe_key(tenant_id: str, recipient: str, subject: str, body: str, in_reply_to: Optional[str] = None) -> str:
    h = hashlib.sha256()
    for part in (tenant_id, recipient.strip().lower(), subject, body, in_reply_to or ""):
        h.update(part.encode("utf-8"))
        h.update(b"\x1f")
    return h.hexdigest()


def format_email_body(text: str) -> str:
    """**bold**, *italic* and newlines to a small HTML fragment."""
    if not text:
        return ""
    html = re.sub(r"\*\*(.*?)\*\*", r"<b>\1</b>", text)
    html = re.sub(r"\*(.*?)\*", r"<i>\1</i>", html)
    html = html.replace("\n", "<br>")
    return f'<div style="font-family: sans-serif; font-size: 14px; line-height: 1.5; color: #333;">{html}</div>'


class Producer:
    def __init__(self, store: Store, *, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def _validate(self, decision: Decision):
        conn = self.store.conn
        if not repository.tenant_exists(conn, decision.tenant_id):
            raise UnknownTenant(decision.tenant_id)
        if not decision.recipient or not EMAIL_RE.match(decision.recipient.strip()):
            raise ValueError(f"Invalid recipient address: {decision.recipient!r}")
        if not decision.subject or not decision.subject.strip():
            raise ValueError("Subject cannot be empty.")
        if not decision.body or not decision.body.strip():
            raise ValueError("Body cannot be empty.")
        if decision.lead_id and repository.get_lead(conn, decision.tenant_id, decision.lead_id) is None:
            raise ValueError(f"Lead '{decision.lead_id}' not found for tenant '{decision.tenant_id}'.")
        if decision.campaign_id:
            campaign = repository.get_campaign(conn, decision.tenant_id, decision.campaign_id)
            if campaign is None:
                raise ValueError(f"Campaign '{decision.campaign_id}' not found for tenant '{decision.tenant_id}'.")
            if campaign["status"] != CAMPAIGN_RUNNING:
                raise ValueError(f"Campaign '{decision.campaign_id}' is {campaign['status']}, not running.")

    def enqueue(self, decision: Decision, *, scheduled_at: Optional[datetime] = None) -> str:
        """
        Create the message and its send job atomically and return the job id.

        Enqueueing identical content for the same recipient twice returns the
        id of the first job and writes nothing.
        """
        self._validate(decision)
        conn = self.store.conn
        now = self.clock()
        recipient = decision.recipient.strip()
        key = dedupe_key(decision.tenant_id, recipient, decision.subject, decision.body, decision.in_reply_to)
        job_id = str(uuid.uuid4())
        message_id = str(uuid.uuid4())

        with conn:
            inserted = repository.insert_job(
                conn,
                job_id=job_id,
                tenant_id=decision.tenant_id,
                message_id=message_id,
                dedupe_key=key,
                scheduled_at=scheduled_at or now,
                now=now,
                lead_id=decision.lead_id,
                campaign_id=decision.campaign_id,
            )
            if inserted:
                repository.insert_message(
                    conn,
                    message_id=message_id,
                    tenant_id=decision.tenant_id,
                    message=OutboundMessage(
                        recipient=recipient,
                        subject=decision.subject,
                        body=decision.body,
                        in_reply_to=decision.in_reply_to,
                        attachments=list(decision.attachments),
                        lead_id=decision.lead_id,
                    ),
                    now=now,
                )
                repository.log_action(
                    conn,
                    tenant_id=decision.tenant_id,
                    lead_id=decision.lead_id,
                    action_type=f"email_queued_{decision.next_action}" if decision.next_action else "email_queued",
                    details={"subject": decision.subject, "job_id": job_id, "confidence": decision.confidence},
                    now=now,
                )

        if not inserted:
            existing = repository.find_job_by_dedupe_key(conn, decision.tenant_id, key)
            log.info(
                "duplicate enqueue ignored", extra={"job_id": existing, "tenant_id": decision.tenant_id, "event": "job_duplicate"}
            )
            return existing

        log.info("job queued", extra={"job_id": job_id, "tenant_id": decision.tenant_id, "event": "job_queued"})
        return job_id

    def enqueue_decision(self, decision: Decision) -> Optional[str]:
        """Enqueue a decision's draft as HTML; None when there is nothing to send."""
        if not decision.body or not decision.body.strip():
            log.debug("decision without a message draft", extra={"tenant_id": decision.tenant_id, "event": "no_draft"})
            return None
        return self.enqueue(replace(decision, body=format_email_body(decision.body)))

    def start_campaign(self, tenant_id: str, *, niche: str = "", daily_limit: int = 50,
                       campaign_id: Optional[str] = None) -> str:
        conn = self.store.conn
        if not repository.tenant_exists(conn, tenant_id):
            raise UnknownTenant(tenant_id)
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        if campaign_id:
            owner = repository.campaign_owner(conn, campaign_id)
            if owner is not None and owner != tenant_id:
                raise ValueError(f"Campaign '{campaign_id}' not found for tenant '{tenant_id}'.")
        campaign_id = campaign_id or str(uuid.uuid4())
        with conn:
            repository.upsert_campaign(
                conn, tenant_id=tenant_id, campaign_id=campaign_id, status=CAMPAIGN_RUNNING,
                now=self.clock(), niche=niche, daily_limit=daily_limit,
            )
        log.info("campaign running", extra={"tenant_id": tenant_id, "event": "campaign_start"})
        return campaign_id

    def stop_campaign(self, tenant_id: str, campaign_id: str) -> int:
        """Idle the campaign and cancel its queued jobs. Returns how many were cancelled."""
        conn = self.store.conn
        if repository.get_campaign(conn, tenant_id, campaign_id) is None:
            raise ValueError(f"Campaign '{campaign_id}' not found for tenant '{tenant_id}'.")
        now = self.clock()
        with conn:
            repository.upsert_campaign(
                conn, tenant_id=tenant_id, campaign_id=campaign_id, status=CAMPAIGN_IDLE, now=now,
            )
            cancelled = repository.cancel_campaign_jobs(conn, tenant_id=tenant_id, campaign_id=campaign_id, now=now)
        log.info(
            "campaign stopped, %d queued job(s) cancelled", cancelled,
            extra={"tenant_id": tenant_id, "event": "campaign_stop"},
        )
        return cancelled
