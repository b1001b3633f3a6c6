"""
Reconciliation watchdog.

Repairs the state a crash or a misbehaving provider can leave behind. Every
operation is one predicate-scoped UPDATE, so a sweep can run at any time,
alongside workers, as often as needed; a sweep over a clean database changes
nothing.
"""

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from . import repository
from .config import Settings
from .db import Store
from .utils import utcnow

log = logging.getLogger(__name__)


@dataclass
class SweepReport:
    recovered_orphans: int = 0
    culled_exhausted: int = 0
    closed_stale_leads: int = 0
    idled_campaigns: int = 0
    cancelled_orphaned_jobs: int = 0
    errors: int = 0

    @property
    def changes(self) -> int:
        return (self.recovered_orphans + self.culled_exhausted + self.closed_stale_leads
                + self.idled_campaigns + self.cancelled_orphaned_jobs)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class Watchdog:
    def __init__(self, store: Store, *, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings or repository.load_settings(store.conn)
        self.clock = clock

    def recover_orphans(self) -> int:
        """Leases older than the orphan horizon go back to queued, a little in the future."""
        n = repository.recover_orphans(
            self.store.conn,
            now=self.clock(),
            orphan_timeout_seconds=self.settings.orphan_timeout_seconds,
            requeue_delay_seconds=self.settings.orphan_requeue_delay_seconds,
        )
        if n:
            log.warning("recovered %d orphaned job(s) stuck in leased", n, extra={"event": "orphans_recovered"})
        return n

    def cull_exhausted(self) -> int:
        n = repository.cull_exhausted(self.store.conn, now=self.clock(), max_attempts=self.settings.max_attempts)
        if n:
            log.error("permanently skipped %d job(s) at the attempt ceiling", n, extra={"event": "jobs_culled"})
        return n

    def close_stale_leads(self) -> int:
        n = repository.close_stale_leads(self.store.conn, now=self.clock(), stale_days=self.settings.stale_lead_days)
        if n:
            log.info("closed %d stale lead(s)", n, extra={"event": "leads_closed"})
        return n

    def idle_orphaned_campaigns(self) -> int:
        n = repository.idle_orphaned_campaigns(self.store.conn, now=self.clock())
        if n:
            log.warning("idled %d running campaign(s) of deleted tenants", n, extra={"event": "campaigns_idled"})
        return n

    def cancel_orphaned_jobs(self) -> int:
        n = repository.cancel_orphaned_jobs(self.store.conn, now=self.clock())
        if n:
            log.warning("cancelled %d queued job(s) of deleted tenants", n, extra={"event": "orphan_jobs_cancelled"})
        return n

    def sweep(self) -> SweepReport:
        """Run every repair once. A failing step is logged and the rest still run."""
        report = SweepReport()
        steps = (
            # orphans first, so a job abandoned on its final attempt is culled in the same sweep
            ("recovered_orphans", self.recover_orphans),
            ("culled_exhausted", self.cull_exhausted),
            ("closed_stale_leads", self.close_stale_leads),
            ("idled_campaigns", self.idle_orphaned_campaigns),
            ("cancelled_orphaned_jobs", self.cancel_orphaned_jobs),
        )
        log.info("reconciliation sweep started", extra={"event": "sweep_start"})
        for field_name, step in steps:
            try:
                setattr(report, field_name, step())
            except Exception:
                report.errors += 1
                log.exception("reconciliation step %s failed", field_name, extra={"event": "sweep_step_error"})
        log.info(
            "reconciliation sweep done: %d change(s), %d error(s)", report.changes, report.errors,
            extra={"event": "sweep_done"},
        )
        return report

    def run(self, stop_event: threading.Event):
        """Sweep once after the startup delay, then every sweep interval, until stopped."""
        wait = self.settings.sweep_startup_delay_seconds
        while not stop_event.wait(wait):
            self.sweep()
            wait = self.settings.sweep_interval_seconds


def watchdog_loop(db_path: str, stop_event: threading.Event):
    with Store(db_path) as store:
        Watchdog(store).run(stop_event)
