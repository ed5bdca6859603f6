# cron.py
import logging
import threading
from datetime import timedelta

from models import JobKind, RecurringJobDefinition, utc_now

logger = logging.getLogger(__name__)


class CronTrigger:
    """Enqueues recurring jobs on a fixed hourly cadence."""

    def __init__(self, storage, poll_interval=5.0, clock=utc_now):
        self.storage = storage
        self.poll_interval = poll_interval
        self.clock = clock
        self._definitions = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = None

    def register_recurring(self, definition, now=None):
        """Add a definition; re-registering a kind replaces its cadence instead of duplicating it."""
        if definition.every_n_hours <= 0:
            raise ValueError(f"every_n_hours must be positive, got {definition.every_n_hours}")
        definition.kind = JobKind.parse(definition.kind)
        now = now or self.clock()
        definition.next_fire_time = now + timedelta(hours=definition.every_n_hours)
        with self._lock:
            replaced = definition.kind in self._definitions
            self._definitions[definition.kind] = definition
        logger.info("%s recurring %s every %sh (next fire %s)",
                    "Re-registered" if replaced else "Registered",
                    definition.kind.value, definition.every_n_hours, definition.next_fire_time.isoformat())
        return definition

    def unregister(self, kind):
        with self._lock:
            return self._definitions.pop(JobKind.parse(kind), None)

    def definitions(self):
        with self._lock:
            return list(self._definitions.values())

    def tick(self, now=None):
        """
        Fire every due definition once. Missed cadences are not backfilled:
        next_fire_time is advanced past `now` after a single enqueue.
        """
        now = now or self.clock()
        fired = []
        with self._lock:
            due = [d for d in self._definitions.values() if d.next_fire_time <= now]
            for definition in due:
                job_id = self.storage.enqueue(definition.kind, dict(definition.payload), scheduled_for=now)
                fired.append(job_id)
                every = timedelta(hours=definition.every_n_hours)
                skipped = -1
                while definition.next_fire_time <= now:
                    definition.next_fire_time += every
                    skipped += 1
                if skipped:
                    logger.warning("Recurring %s skipped %d missed run(s)", definition.kind.value, skipped)
                logger.info("Recurring %s fired job %s (next fire %s)",
                            definition.kind.value, job_id, definition.next_fire_time.isoformat())
        return fired

    # ---------------- Background loop ----------------
    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="cron-trigger", daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Cron tick failed; retrying in %ss", self.poll_interval)
            self._stop_event.wait(self.poll_interval)

    def stop(self, timeout=None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def alive(self):
        return bool(self._thread and self._thread.is_alive())


def default_definitions(config):
    """Recurring work implied by the scheduler config."""
    return [
        RecurringJobDefinition(kind=JobKind.USER_CLEANUP, every_n_hours=config.user_cleanup_every),
        RecurringJobDefinition(kind=JobKind.CALCULATE_SUMMARY, every_n_hours=config.user_cleanup_every),
        RecurringJobDefinition(kind=JobKind.PULL_INTEGRATIONS, every_n_hours=config.pull_every),
    ]
