# worker.py
import logging
import threading
import time
import uuid
from datetime import timedelta

from errors import HandlerTimeout, InvalidStateError
from models import utc_now

logger = logging.getLogger(__name__)


class Worker:
    """One execution slot: claim within the rate limit, run the handler, record the outcome."""

    def __init__(self, storage, limiter, registry, worker_id=None, poll_interval=1.0, handler_timeout=60.0,
                 backoff_base=2, lease_seconds=None, stop_event=None, clock=utc_now):
        self.storage = storage
        self.limiter = limiter
        self.registry = registry
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self.handler_timeout = handler_timeout
        self.backoff_base = backoff_base
        self.lease_seconds = lease_seconds
        self.stop_event = stop_event  # threading.Event() shared with the pool
        self.clock = clock
        self.current_job_id = None

    def run(self):
        while not (self.stop_event and self.stop_event.is_set()):
            try:
                outcome = self.run_once()
            except Exception:
                # One job's fault must not take the slot down
                logger.exception("%s: unexpected fault, continuing", self.worker_id)
                outcome = None
            if outcome is None:
                self._idle()

    def _idle(self):
        if self.stop_event:
            self.stop_event.wait(self.poll_interval)
        else:
            time.sleep(self.poll_interval)

    def run_once(self, now=None):
        """
        Process at most one job. Returns the job's resulting state, or None when
        nothing is ready or every ready kind is out of rate budget.
        """
        now = now or self.clock()
        # The limiter is consumed inside the claim, so a kind over its budget is
        # skipped and its jobs keep their place in the queue.
        job = self.storage.claim_next(self.registry.kinds(), now=now, worker_id=self.worker_id,
                                      lease_seconds=self.lease_seconds, admit=self.limiter.try_consume)
        if job is None:
            return None
        return self._process_job(job)

    def _process_job(self, job):
        self.current_job_id = job.id
        try:
            try:
                self._execute(job)
                error = None
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.warning("%s: job %s (%s) failed on attempt %d/%d: %s", self.worker_id, job.id,
                               job.kind.value, job.attempts, job.max_attempts, error)

            finished = self.clock()
            try:
                if error is None:
                    return self.storage.complete(job.id, now=finished, worker_id=self.worker_id)
                retry = job.attempts < job.max_attempts
                retry_at = finished + timedelta(seconds=self.backoff_base ** job.attempts) if retry else None
                return self.storage.fail(job.id, retry=retry, error=error, retry_at=retry_at, now=finished,
                                         worker_id=self.worker_id)
            except InvalidStateError as e:
                # Taken back by a shutdown or lease recovery while the handler ran
                logger.warning("%s: outcome of job %s discarded: %s", self.worker_id, job.id, e)
                return None
        finally:
            self.current_job_id = None

    def _execute(self, job):
        handler = self.registry.get(job.kind)
        outcome = {}

        def target():
            try:
                handler(job.payload)
            except Exception as e:
                outcome["error"] = e

        # Handlers are not preempted: on timeout the thread is abandoned, not killed
        thread = threading.Thread(target=target, name=f"{self.worker_id}-{job.id[:8]}", daemon=True)
        thread.start()
        thread.join(self.handler_timeout)
        if thread.is_alive():
            raise HandlerTimeout(self.handler_timeout)
        if "error" in outcome:
            raise outcome["error"]


class WorkerPool:
    """
    `concurrency` slots sharing one store and limiter.

    Every start() gets fresh slots, worker ids and stop event. A slot still inside
    a handler when stop() gave up on it keeps its old id and its set stop event,
    so it exits after the handler returns and the store rejects its outcome.
    """

    def __init__(self, storage, limiter, registry, concurrency=4, poll_interval=1.0, handler_timeout=60.0,
                 backoff_base=2, lease_seconds=None, clock=utc_now):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.storage = storage
        self.limiter = limiter
        self.registry = registry
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.handler_timeout = handler_timeout
        self.backoff_base = backoff_base
        self.lease_seconds = lease_seconds
        self.clock = clock
        self._threads = []
        self._new_generation()

    def _new_generation(self):
        self.stop_event = threading.Event()
        prefix = f"worker-{uuid.uuid4().hex[:6]}"
        self.workers = [
            Worker(self.storage, self.limiter, self.registry,
                   worker_id=f"{prefix}-{i + 1}",
                   poll_interval=self.poll_interval,
                   handler_timeout=self.handler_timeout,
                   backoff_base=self.backoff_base,
                   lease_seconds=self.lease_seconds,
                   stop_event=self.stop_event,
                   clock=self.clock)
            for i in range(self.concurrency)
        ]

    @property
    def alive(self):
        return any(t.is_alive() for t in self._threads)

    def start(self):
        if self._threads and not self.stop_event.is_set():
            return
        if self._threads:
            self._new_generation()
        self._threads = []
        for w in self.workers:
            t = threading.Thread(target=w.run, name=f"{w.worker_id}-thread", daemon=True)
            self._threads.append(t)
            logger.info("Starting %s (poll=%ss, timeout=%ss, backoff_base=%s)",
                        w.worker_id, w.poll_interval, w.handler_timeout, w.backoff_base)
            t.start()

    def in_flight(self):
        return [w.current_job_id for w in self.workers if w.current_job_id]

    def stop(self, grace_seconds=10.0):
        """
        Stop claiming, give in-flight jobs `grace_seconds` to finish, then fail
        whatever is still Running with retry so it resumes on next startup.
        """
        self.stop_event.set()
        deadline = time.monotonic() + grace_seconds
        for t in self._threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))

        abandoned = []
        for job in self.storage.running_jobs(worker_ids=[w.worker_id for w in self.workers]):
            try:
                state = self.storage.fail(job.id, retry=True, error="shutdown before completion",
                                          worker_id=job.worker_id)
            except InvalidStateError:
                continue
            abandoned.append(job.id)
            logger.warning("Job %s still running after %ss grace, marked %s", job.id, grace_seconds, state.value)
        return abandoned
