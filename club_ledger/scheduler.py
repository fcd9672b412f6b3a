import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from .discounts import DiscountEligibilityRegistry
from .issuance import FeeIssuanceEngine
from .models import DailyJobReport, as_utc
from .overdue import OverdueSweeper
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

DAILY_JOB = "daily_fee_jobs"


def next_run_at(now: datetime, hour: int) -> datetime:
    run_at = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if run_at <= now:
        run_at += timedelta(days=1)
    return run_at


class ScheduledJobs:
    """The once-a-day fee housekeeping: overdue sweep, social fee scan, expired discounts."""

    def __init__(self, storage: InMemoryStorage, sweeper: OverdueSweeper,
                 issuance: FeeIssuanceEngine, discounts: DiscountEligibilityRegistry):
        self.storage = storage
        self.sweeper = sweeper
        self.issuance = issuance
        self.discounts = discounts

    def last_run(self) -> Optional[datetime]:
        return self.storage.job_runs.get(DAILY_JOB)

    def run_daily(self, now: Optional[datetime] = None) -> DailyJobReport:
        now = as_utc(now) if now else self.storage.now()
        previous = self.last_run()
        logger.info("Running daily fee jobs at %s (previous run %s)", now.isoformat(),
                    previous.isoformat() if previous else "never")

        overdue = social = expired = 0
        try:
            overdue = self.sweeper.update_overdue_status(now)
        except Exception:
            logger.exception("Overdue sweep failed")
        try:
            social = self.issuance.process_social_event_window(now)
        except Exception:
            logger.exception("Social event fee scan failed")
        try:
            expired = self.discounts.deactivate_expired(now)
        except Exception:
            logger.exception("Discount expiry job failed")

        self.storage.job_runs[DAILY_JOB] = now
        return DailyJobReport(
            run_at=now,
            overdue_marked=overdue,
            social_events_processed=social,
            discounts_deactivated=expired,
            previous_run=previous,
        )


class DailyScheduler:
    """Background thread that fires ``ScheduledJobs.run_daily`` once a day at a fixed hour."""

    def __init__(self, jobs: ScheduledJobs, hour: Optional[int] = None):
        self.jobs = jobs
        self.hour = jobs.storage.settings.daily_job_hour if hour is None else hour
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="club-ledger-daily-jobs", daemon=True)
        self._thread.start()
        logger.info("Daily fee scheduler started, running at %02d:00", self.hour)

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("Daily fee scheduler stopped")

    def _loop(self):
        while not self._stop.is_set():
            now = self.jobs.storage.now()
            wait = (next_run_at(now, self.hour) - now).total_seconds()
            if self._stop.wait(wait):
                break
            try:
                self.jobs.run_daily()
            except Exception:
                logger.exception("Daily fee jobs failed")
