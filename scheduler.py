# scheduler.py
import logging
import threading
from datetime import timedelta

from config import SchedulerConfig
from cron import CronTrigger, default_definitions
from errors import InvalidStateError
from handlers import default_registry
from models import JobKind, JobState, utc_now
from rate_limiter import RateLimiter
from storage import Storage
from worker import WorkerPool

logger = logging.getLogger(__name__)


class Scheduler:
    """
    The one entry point for callers: on-demand enqueue, status, cancel and the
    process lifecycle. Construct it once at startup and pass it around.
    """

    def __init__(self, config=None, registry=None, clock=None, storage=None):
        self.config = config or SchedulerConfig()
        self.registry = registry or default_registry()
        self.clock = clock or utc_now
        self.storage = storage or Storage(self.config.database_url, clock=self.clock,
                                          default_max_attempts=self.config.max_attempts)
        self.limiter = RateLimiter(self.config.rate_limit_num,
                                   window_seconds=self.config.rate_limit_window_seconds,
                                   clock=self.clock)
        self.cron = CronTrigger(self.storage, poll_interval=self.config.cron_poll_interval, clock=self.clock)
        self.pool = WorkerPool(self.storage, self.limiter, self.registry,
                               concurrency=self.config.concurrency,
                               poll_interval=self.config.poll_interval,
                               handler_timeout=self.config.handler_timeout_seconds,
                               backoff_base=self.config.backoff_base,
                               lease_seconds=self.config.effective_lease_seconds,
                               clock=self.clock)
        self._lifecycle = threading.Lock()
        self.started = False

    @classmethod
    def from_database_url(cls, database_url, registry=None, clock=None, **overrides):
        """Open the store, then layer env and stored config under `overrides`."""
        storage = Storage(database_url, clock=clock or utc_now)
        try:
            config = SchedulerConfig.load(storage=storage, database_url=database_url, **overrides)
        except Exception:
            storage.close()
            raise
        storage.default_max_attempts = config.max_attempts
        return cls(config, registry=registry, clock=clock, storage=storage)

    # ---------------- Lifecycle ----------------
    def startup(self, run_workers=True, run_cron=True):
        with self._lifecycle:
            if self.started:
                return
            recovered = self.storage.recover_expired_leases()
            if recovered:
                logger.warning("Recovered %d job(s) with expired leases: %s", len(recovered), ", ".join(recovered))
            for definition in default_definitions(self.config):
                self.cron.register_recurring(definition)
            if run_workers:
                self.pool.start()
            if run_cron:
                self.cron.start()
            self.started = True
            logger.info("Scheduler started (concurrency=%d, rate_limit=%d/%ss, db=%s)",
                        self.config.concurrency, self.config.rate_limit_num,
                        self.config.rate_limit_window_seconds, self.storage.path)

    def shutdown(self, grace_seconds=None):
        with self._lifecycle:
            if not self.started:
                return []
            grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
            self.cron.stop(timeout=grace)
            abandoned = self.pool.stop(grace_seconds=grace)
            self.started = False
            logger.info("Scheduler stopped (%d job(s) requeued after grace period)", len(abandoned))
            return abandoned

    def close(self):
        self.shutdown()
        self.storage.close()

    def __enter__(self):
        self.startup()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ---------------- Jobs ----------------
    def schedule_on_demand(self, kind, payload=None, delay=0, max_attempts=None):
        kind = JobKind.parse(kind)
        if delay < 0:
            raise ValueError("delay must not be negative")
        scheduled_for = self.clock() + timedelta(seconds=delay)
        return self.storage.enqueue(kind, payload, scheduled_for=scheduled_for, max_attempts=max_attempts)

    def status(self, job_id):
        return self.storage.snapshot(job_id)

    def cancel(self, job_id):
        return self.storage.cancel(job_id)

    def retry_failed(self, job_id):
        """Re-enqueue a Failed job's work as a fresh job; the failed record stays as history."""
        job = self.storage.get(job_id)
        if job.state != JobState.FAILED:
            raise InvalidStateError(job_id, job.state.value, "retry")
        new_id = self.storage.enqueue(job.kind, job.payload, max_attempts=job.max_attempts)
        logger.info("Job %s re-enqueued as %s", job_id, new_id)
        return new_id

    def register_recurring(self, definition):
        return self.cron.register_recurring(definition)

    def summary(self):
        return {
            "counts": self.storage.count_by_state(),
            "rate_limits": self.limiter.snapshot(),
            "in_flight": self.pool.in_flight(),
            "recurring": {
                d.kind.value: {"every_n_hours": d.every_n_hours, "next_fire_time": d.next_fire_time.isoformat()}
                for d in self.cron.definitions()
            },
            "running": self.started,
        }
