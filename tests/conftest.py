# tests/conftest.py
from datetime import datetime, timedelta, timezone

import pytest

from outboxctl import repository
from outboxctl.config import Settings
from outboxctl.db import Store, init_db
from outboxctl.models import Decision
from outboxctl.producer import Producer
from outboxctl.transport import SendResult, Transport

T0 = datetime(2025, 11, 6, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeTransport(Transport):
    """
    Plays back a script of outcomes, one per send. Each entry is a SendResult
    or an exception instance to raise; once the script runs out every send
    succeeds.
    """

    name = "fake"

    def __init__(self, *script):
        self.script = list(script)
        self.sent = []

    def send(self, credential, message, *, timeout):
        self.sent.append((credential, message, timeout))
        outcome = self.script.pop(0) if self.script else SendResult.delivered(f"prov-{len(self.sent)}")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "outbox.db")
    init_db(path)
    return path


@pytest.fixture
def store(db_path):
    with Store(db_path) as s:
        yield s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(poll_interval_seconds=0.01)


@pytest.fixture
def tenant(store, clock):
    repository.add_tenant(store.conn, tenant_id="acme", name="Acme", now=clock(), sender_email="sales@acme.test")
    return "acme"


@pytest.fixture
def producer(store, clock):
    return Producer(store, clock=clock)


@pytest.fixture
def enqueue(producer, tenant):
    """Queue one email for the default tenant and return the job id."""

    def _enqueue(recipient="lead@example.com", subject="Hello", body="Hi there", **kw):
        kw.setdefault("tenant_id", tenant)
        return producer.enqueue(Decision(recipient=recipient, subject=subject, body=body, **kw))

    return _enqueue
