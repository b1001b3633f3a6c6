import json
import sqlite3
from datetime import timedelta

import pytest

from outboxctl import repository
from outboxctl.exceptions import UnknownTenant
from outboxctl.models import Attachment, Decision, JobState
from outboxctl.producer import Producer, dedupe_key, format_email_body
from outboxctl.transport import SendResult
from outboxctl.worker import Worker

from conftest import FakeTransport


def _count(store, table):
    return store.conn.execute(f"SELECT COUNT(1) AS c FROM {table}").fetchone()["c"]


def test_enqueue_writes_job_message_and_audit_line(store, producer, tenant):
    lead_id = repository.add_lead(store.conn, tenant_id=tenant, email="lead@example.com", now=producer.clock())
    job_id = producer.enqueue(Decision(
        tenant_id=tenant, recipient=" lead@example.com ", subject="Quick question", body="<p>Hi</p>",
        lead_id=lead_id, in_reply_to="<abc@mail>", next_action="follow_up", confidence=0.8,
        attachments=[Attachment("deck.txt", "slides", "text/plain")],
    ))

    job = repository.get_job(store.conn, tenant, job_id)
    assert job.state is JobState.QUEUED
    assert job.attempt_count == 0
    assert job.lead_id == lead_id

    message = repository.load_message(store.conn, tenant, job.message_id)
    assert message.recipient == "lead@example.com"
    assert message.in_reply_to == "<abc@mail>"
    assert message.attachments == [Attachment("deck.txt", "slides", "text/plain")]

    log_row = store.conn.execute("SELECT * FROM action_log").fetchone()
    assert log_row["action_type"] == "email_queued_follow_up"
    assert json.loads(log_row["details"])["job_id"] == job_id


def test_enqueue_is_all_or_nothing(store, producer, tenant, monkeypatch):
    def broken(conn, **kw):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(repository, "insert_message", broken)
    with pytest.raises(sqlite3.OperationalError):
        producer.enqueue(Decision(tenant_id=tenant, recipient="a@example.com", subject="s", body="b"))
    assert _count(store, "send_jobs") == 0


def test_duplicate_enqueue_returns_first_job(store, enqueue):
    first = enqueue(recipient="Lead@Example.com")
    again = enqueue(recipient="lead@example.com")
    other = enqueue(recipient="lead@example.com", subject="Different")

    assert again == first
    assert other != first
    assert _count(store, "send_jobs") == 2
    assert _count(store, "messages") == 2
    assert _count(store, "action_log") == 2


def test_dedupe_key_is_per_tenant():
    assert dedupe_key("a", "x@y.z", "s", "b") != dedupe_key("b", "x@y.z", "s", "b")
    assert dedupe_key("a", "X@Y.Z ", "s", "b") == dedupe_key("a", "x@y.z", "s", "b")
    assert dedupe_key("a", "x@y.z", "s", "b") != dedupe_key("a", "x@y.z", "s", "b", in_reply_to="<m>")


def test_enqueue_validation(store, producer, tenant, clock):
    with pytest.raises(UnknownTenant):
        producer.enqueue(Decision(tenant_id="ghost", recipient="a@example.com", subject="s", body="b"))
    with pytest.raises(ValueError):
        producer.enqueue(Decision(tenant_id=tenant, recipient="not-an-address", subject="s", body="b"))
    with pytest.raises(ValueError):
        producer.enqueue(Decision(tenant_id=tenant, recipient="a@example.com", subject=" ", body="b"))

    repository.add_tenant(store.conn, tenant_id="globex", name="Globex", now=clock())
    foreign_lead = repository.add_lead(store.conn, tenant_id="globex", email="x@example.com", now=clock())
    with pytest.raises(ValueError):
        producer.enqueue(Decision(
            tenant_id=tenant, recipient="a@example.com", subject="s", body="b", lead_id=foreign_lead,
        ))
    assert _count(store, "send_jobs") == 0


def test_enqueue_decision(store, producer, tenant):
    assert producer.enqueue_decision(Decision(tenant_id=tenant, recipient="a@example.com", subject="s", body="")) is None

    job_id = producer.enqueue_decision(Decision(
        tenant_id=tenant, recipient="a@example.com", subject="s", body="**Hi** Sam,\nwe *love* teeth",
    ))
    job = repository.get_job(store.conn, tenant, job_id)
    body = repository.load_message(store.conn, tenant, job.message_id).body
    assert "<b>Hi</b> Sam,<br>we <i>love</i> teeth" in body


def test_format_email_body():
    assert format_email_body("") == ""
    html = format_email_body("a\nb")
    assert html.startswith("<div") and "a<br>b" in html


def test_stop_campaign_cancels_only_queued_jobs(store, producer, enqueue, tenant, clock):
    campaign_id = producer.start_campaign(tenant, niche="dentists", daily_limit=20)
    queued = enqueue(recipient="a@example.com", campaign_id=campaign_id)
    leased = enqueue(recipient="b@example.com", campaign_id=campaign_id)
    unrelated = enqueue(recipient="c@example.com")
    repository.try_lease(
        store.conn, repository.get_job(store.conn, tenant, leased), worker_name="w1", now=clock(), max_attempts=5
    )

    assert producer.stop_campaign(tenant, campaign_id) == 1

    assert repository.get_campaign(store.conn, tenant, campaign_id)["status"] == "idle"
    assert repository.get_job(store.conn, tenant, queued).state is JobState.CANCELLED
    assert repository.get_job(store.conn, tenant, leased).state is JobState.LEASED
    assert repository.get_job(store.conn, tenant, unrelated).state is JobState.QUEUED


def test_enqueue_into_stopped_campaign_is_rejected(store, producer, enqueue, tenant):
    campaign_id = producer.start_campaign(tenant)
    producer.stop_campaign(tenant, campaign_id)

    with pytest.raises(ValueError, match="not running"):
        enqueue(campaign_id=campaign_id)
    assert _count(store, "send_jobs") == 0


def test_cancelled_email_can_be_queued_again(store, producer, enqueue, tenant):
    campaign_id = producer.start_campaign(tenant)
    first = enqueue(campaign_id=campaign_id)
    producer.stop_campaign(tenant, campaign_id)
    producer.start_campaign(tenant, campaign_id=campaign_id)

    second = enqueue(campaign_id=campaign_id)

    assert second != first
    assert repository.get_job(store.conn, tenant, first).state is JobState.CANCELLED
    assert repository.get_job(store.conn, tenant, second).state is JobState.QUEUED
    # the live job now guards against duplicates
    assert enqueue(campaign_id=campaign_id) == second


def test_skipped_email_can_be_queued_again(store, enqueue, tenant, clock, settings):
    first = enqueue()
    transport = FakeTransport(SendResult.failed("550 mailbox full", permanent=True))
    Worker(store, transport, settings=settings, clock=clock).poll_and_dispatch()
    assert repository.get_job(store.conn, tenant, first).state is JobState.SKIPPED

    second = enqueue()
    assert second != first
    assert repository.get_job(store.conn, tenant, second).state is JobState.QUEUED


def test_sent_email_is_not_queued_again(store, enqueue, tenant, clock, settings):
    first = enqueue()
    Worker(store, FakeTransport(), settings=settings, clock=clock).poll_and_dispatch()
    assert enqueue() == first
    assert _count(store, "send_jobs") == 1


def test_campaigns_are_tenant_owned(store, producer, tenant, clock):
    repository.add_tenant(store.conn, tenant_id="globex", name="Globex", now=clock())
    campaign_id = producer.start_campaign(tenant)

    with pytest.raises(ValueError):
        producer.stop_campaign("globex", campaign_id)
    with pytest.raises(ValueError):
        producer.start_campaign("globex", campaign_id=campaign_id)
    with pytest.raises(UnknownTenant):
        producer.start_campaign("ghost")


def test_stats_are_tenant_isolated(store, clock, settings):
    for tid in ("acme", "globex"):
        repository.add_tenant(store.conn, tenant_id=tid, name=tid, now=clock())
    producer = Producer(store, clock=clock)
    same = dict(recipient="shared@example.com", subject="Hi", body="Same words")
    acme_job = producer.enqueue(Decision(tenant_id="acme", **same))
    globex_job = producer.enqueue(Decision(tenant_id="globex", **same))
    assert acme_job != globex_job
    producer.enqueue(
        Decision(tenant_id="acme", recipient="later@example.com", subject="Hi", body="Tomorrow"),
        scheduled_at=clock() + timedelta(days=1),
    )

    transport = FakeTransport()
    assert Worker(store, transport, settings=settings, clock=clock).poll_and_dispatch() == 2

    assert sorted(cred.tenant_id for cred, _, _ in transport.sent) == ["acme", "globex"]
    acme = repository.get_stats(store.conn, "acme", now=clock())
    globex = repository.get_stats(store.conn, "globex", now=clock())
    assert (acme.queued, acme.sent, acme.sent_today) == (1, 1, 1)
    assert (globex.queued, globex.sent, globex.sent_today) == (0, 1, 1)


def test_stats_counts(store, producer, enqueue, tenant, clock, settings):
    assert repository.get_stats(store.conn, tenant, now=clock()).as_dict() == {
        "queued": 0, "leased": 0, "sent": 0, "failed": 0, "cancelled": 0,
        "sentToday": 0, "active": False, "dailyLimit": None,
    }

    producer.start_campaign(tenant, daily_limit=25)
    enqueue(recipient="a@example.com")
    enqueue(recipient="b@example.com")
    Worker(store, FakeTransport(SendResult.failed("550", permanent=True)), settings=settings, clock=clock).poll_and_dispatch()

    stats = repository.get_stats(store.conn, tenant, now=clock())
    assert stats.sent == 1
    assert stats.failed == 1
    assert stats.sent_today == 1
    assert stats.active is True
    assert stats.daily_limit == 25

    clock.advance(86400)
    assert repository.get_stats(store.conn, tenant, now=clock()).sent_today == 0
