import logging
import signal
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from . import repository
from .config import Settings
from .db import Store
from .models import JobState, SendJob
from .transport import SendResult, Transport, call_transport
from .utils import compute_backoff, iso_from_now, utcnow
from .watchdog import watchdog_loop

log = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers(stop_event: threading.Event):
    def _handler(signum, frame):
        log.info("received signal %s, stopping", signum, extra={"event": "shutdown_requested"})
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not the main thread
            log.debug("cannot install handler for signal %s", sig)


class Worker:
    """
    Drains due send jobs. Safe to run many at once, in threads or processes:
    a job only moves when a conditional UPDATE on its previous state succeeds.
    """

    def __init__(self, store: Store, transport: Transport, *, settings: Optional[Settings] = None,
                 name: str = "worker-1", clock: Callable[[], datetime] = utcnow,
                 stop_event: Optional[threading.Event] = None):
        self.store = store
        self.transport = transport
        self.settings = settings or repository.load_settings(store.conn)
        self.name = name
        self.clock = clock
        self.stop_event = stop_event or threading.Event()

    def _extra(self, job: SendJob, event: str) -> dict:
        return {"job_id": job.id, "tenant_id": job.tenant_id, "worker": self.name, "event": event}

    def poll_and_dispatch(self) -> int:
        """One polling cycle. Returns how many selected jobs were handled."""
        s = self.settings
        jobs = repository.select_actionable(
            self.store.conn,
            now=self.clock(),
            lease_timeout_seconds=s.lease_timeout_seconds,
            limit=s.batch_size,
        )
        for job in jobs:
            try:
                self._process(job)
            except Exception:
                # Whatever happened, the lease expires and the job is picked up again.
                log.exception("unexpected error while processing job", extra=self._extra(job, "job_error"))
        return len(jobs)

    def _process(self, job: SendJob):
        conn = self.store.conn
        s = self.settings

        if job.attempt_count >= s.max_attempts:
            # abandoned on its last attempt, or requeued past the ceiling by a crash
            if repository.try_transition(
                conn, job.tenant_id, job.id, job.state, JobState.SKIPPED,
                now=self.clock(),
                expected_last_attempt_at=job.last_attempt_at,
                error_detail=job.error_detail or f"Permanently failed after {job.attempt_count} attempts",
                picked_by=None,
            ):
                log.error("attempts exhausted, job skipped", extra=self._extra(job, "job_exhausted"))
            return

        if job.state is JobState.LEASED:
            log.warning(
                "reclaiming lease abandoned since %s", job.last_attempt_at, extra=self._extra(job, "lease_stale")
            )

        lease_ts = repository.try_lease(conn, job, worker_name=self.name, now=self.clock(), max_attempts=s.max_attempts)
        if lease_ts is None:
            log.debug("lost lease race", extra=self._extra(job, "lease_lost"))
            return
        attempt = job.attempt_count + 1

        credential = repository.get_credential(conn, job.tenant_id)
        if credential is None:
            self._cancel(job, lease_ts, "Tenant no longer exists")
            return
        message = repository.load_message(conn, job.tenant_id, job.message_id)
        if message is None:
            self._skip(job, lease_ts, "Message not found")
            return

        try:
            result = call_transport(self.transport, credential, message, timeout=s.effective_transport_timeout)
        except Exception as e:
            log.exception("transport raised", extra=self._extra(job, "transport_error"))
            result = SendResult.failed(f"{type(e).__name__}: {e}")

        if result.ok:
            if repository.record_delivery(
                conn, job, lease_ts=lease_ts, provider_message_id=result.provider_message_id, now=self.clock()
            ):
                log.info("job sent (attempt %d)", attempt, extra=self._extra(job, "job_sent"))
            else:
                log.warning("delivered, but the lease was taken over meanwhile", extra=self._extra(job, "lease_overtaken"))
            return

        error = (result.error or "Unknown sending error")[:500]
        if result.permanent:
            self._skip(job, lease_ts, error)
        elif attempt >= s.max_attempts:
            self._skip(job, lease_ts, f"{error} (gave up after {attempt} attempts)")
        else:
            self._retry(job, lease_ts, error, attempt)

    def _skip(self, job: SendJob, lease_ts: str, reason: str):
        ok = repository.try_transition(
            self.store.conn, job.tenant_id, job.id, JobState.LEASED, JobState.SKIPPED,
            now=self.clock(),
            expected_last_attempt_at=lease_ts,
            error_detail=reason,
            picked_by=None,
        )
        if ok:
            log.error("job skipped: %s", reason, extra=self._extra(job, "job_skipped"))

    def _cancel(self, job: SendJob, lease_ts: str, reason: str):
        ok = repository.try_transition(
            self.store.conn, job.tenant_id, job.id, JobState.LEASED, JobState.CANCELLED,
            now=self.clock(),
            expected_last_attempt_at=lease_ts,
            error_detail=reason,
            picked_by=None,
        )
        if ok:
            log.warning("job cancelled: %s", reason, extra=self._extra(job, "job_cancelled"))

    def _retry(self, job: SendJob, lease_ts: str, error: str, attempt: int):
        s = self.settings
        delay = compute_backoff(attempt, strategy=s.backoff_strategy, base=s.backoff_seconds, cap=s.backoff_cap_seconds)
        now = self.clock()
        ok = repository.try_transition(
            self.store.conn, job.tenant_id, job.id, JobState.LEASED, JobState.QUEUED,
            now=now,
            expected_last_attempt_at=lease_ts,
            scheduled_at=iso_from_now(now, delay),
            error_detail=error,
            picked_by=None,
        )
        if ok:
            log.warning(
                "send failed (attempt %d/%d), retry in %ss: %s", attempt, s.max_attempts, delay, error,
                extra=self._extra(job, "job_retry_scheduled"),
            )

    def run(self):
        log.info("worker started", extra={"worker": self.name, "event": "worker_start"})
        while not self.stop_event.is_set():
            try:
                handled = self.poll_and_dispatch()
            except Exception:
                log.exception("worker loop error", extra={"worker": self.name, "event": "worker_loop_error"})
                handled = 0
            if not handled:
                self.stop_event.wait(self.settings.poll_interval_seconds)
        log.info("worker stopped", extra={"worker": self.name, "event": "worker_stop"})


def worker_loop(name: str, db_path: str, transport: Transport, stop_event: threading.Event):
    with Store(db_path) as store:
        Worker(store, transport, name=name, stop_event=stop_event).run()


def start_workers(count: int, *, db_path: str, transport: Transport, with_watchdog: bool = True,
                  stop_event: Optional[threading.Event] = None):
    """Run `count` worker threads (and the watchdog) until SIGINT/SIGTERM."""
    stop_event = stop_event or _stop
    setup_signal_handlers(stop_event)
    threads = []

    for i in range(count):
        t = threading.Thread(
            target=worker_loop, args=(f"worker-{i+1}", db_path, transport, stop_event),
            name=f"worker-{i+1}", daemon=True,
        )
        t.start()
        threads.append(t)
    if with_watchdog:
        t = threading.Thread(target=watchdog_loop, args=(db_path, stop_event), name="watchdog", daemon=True)
        t.start()
        threads.append(t)
    log.info("started %d thread(s)", len(threads), extra={"event": "service_start"})

    try:
        while any(t.is_alive() for t in threads) and not stop_event.is_set():
            time.sleep(0.5)
    finally:
        # In-flight sends finish; anything cut short is reclaimed via its expired lease.
        stop_event.set()
        for t in threads:
            t.join()
        log.info("all workers stopped", extra={"event": "service_stop"})
