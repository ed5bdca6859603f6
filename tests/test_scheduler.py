import time
from datetime import timedelta

import pytest

from config import SchedulerConfig
from conftest import FakeProvider, wait_for
from errors import InvalidStateError, NotFoundError
from handlers import HandlerRegistry, build_registry
from models import JobKind, JobState, RecurringJobDefinition
from scheduler import Scheduler


def test_refresh_metadata_scenario_completes(make_scheduler, provider):
    scheduler = make_scheduler()
    job_id = scheduler.schedule_on_demand(JobKind.REFRESH_METADATA, {"id": 42})

    assert scheduler.pool.workers[0].run_once() == JobState.COMPLETED
    snapshot = scheduler.status(job_id)
    assert snapshot.state == JobState.COMPLETED
    assert snapshot.attempts == 1
    assert provider.calls == [42]


def test_always_failing_job_ends_failed_after_max_attempts(make_scheduler):
    def broken(payload):
        raise RuntimeError("nope")

    scheduler = make_scheduler(registry=HandlerRegistry({JobKind.CALCULATE_SUMMARY: broken}), max_attempts=3)
    job_id = scheduler.schedule_on_demand(JobKind.CALCULATE_SUMMARY)

    worker = scheduler.pool.workers[0]
    for _ in range(3):
        worker.run_once()

    snapshot = scheduler.status(job_id)
    assert snapshot.state == JobState.FAILED
    assert snapshot.attempts == 3
    assert snapshot.max_attempts == 3


def test_cancel_running_fails_and_pending_succeeds(make_scheduler, clock):
    scheduler = make_scheduler()
    running = scheduler.schedule_on_demand(JobKind.USER_CLEANUP)
    pending = scheduler.schedule_on_demand(JobKind.USER_CLEANUP, delay=60)
    scheduler.storage.claim_next({JobKind.USER_CLEANUP})

    with pytest.raises(InvalidStateError):
        scheduler.cancel(running)
    assert scheduler.status(running).state == JobState.RUNNING

    scheduler.cancel(pending)
    assert scheduler.status(pending).state == JobState.CANCELLED


def test_status_of_unknown_job(make_scheduler):
    with pytest.raises(NotFoundError):
        make_scheduler().status("does-not-exist")


def test_schedule_on_demand_delay_and_validation(make_scheduler, clock):
    scheduler = make_scheduler()
    job_id = scheduler.schedule_on_demand("PullIntegrations", {"source": "yank"}, delay=90, max_attempts=5)

    snapshot = scheduler.status(job_id)
    assert snapshot.kind == JobKind.PULL_INTEGRATIONS
    assert snapshot.scheduled_for == clock() + timedelta(seconds=90)
    assert snapshot.max_attempts == 5

    with pytest.raises(ValueError):
        scheduler.schedule_on_demand(JobKind.USER_CLEANUP, delay=-1)
    with pytest.raises(ValueError):
        scheduler.schedule_on_demand("DeleteEverything")
    with pytest.raises(ValueError, match="max_attempts"):
        scheduler.schedule_on_demand(JobKind.USER_CLEANUP, max_attempts=0)
    assert len(scheduler.storage.list_jobs()) == 1


def test_retry_failed_enqueues_fresh_job(make_scheduler):
    scheduler = make_scheduler(registry=build_registry(FakeProvider(fail=True)), max_attempts=1)
    failed = scheduler.schedule_on_demand(JobKind.REFRESH_METADATA, {"id": 5})
    scheduler.pool.workers[0].run_once()
    assert scheduler.status(failed).state == JobState.FAILED

    retried = scheduler.retry_failed(failed)
    assert retried != failed
    assert scheduler.status(retried).state == JobState.PENDING
    assert scheduler.storage.get(retried).payload == {"id": 5}
    assert scheduler.status(failed).state == JobState.FAILED

    with pytest.raises(InvalidStateError):
        scheduler.retry_failed(retried)


def test_startup_registers_recurring_definitions(make_scheduler, clock):
    scheduler = make_scheduler(user_cleanup_every=12, pull_every=2)
    scheduler.startup(run_workers=False, run_cron=False)

    recurring = scheduler.summary()["recurring"]
    assert set(recurring) == {"UserCleanup", "CalculateSummary", "PullIntegrations"}
    assert recurring["PullIntegrations"]["every_n_hours"] == 2

    clock.advance(hours=2)
    fired = scheduler.cron.tick()
    assert [scheduler.status(j).kind for j in fired] == [JobKind.PULL_INTEGRATIONS]

    clock.advance(hours=10)
    assert len(scheduler.cron.tick()) == 3
    assert scheduler.shutdown() == []


def test_register_recurring_through_facade(make_scheduler, clock):
    scheduler = make_scheduler()
    scheduler.register_recurring(RecurringJobDefinition(JobKind.REFRESH_METADATA, every_n_hours=1, payload={"id": 9}))
    clock.advance(hours=1)
    (job_id,) = scheduler.cron.tick()
    assert scheduler.storage.get(job_id).payload == {"id": 9}


def test_startup_recovers_expired_leases(make_scheduler, clock):
    scheduler = make_scheduler(handler_timeout_seconds=5, lease_seconds=10)
    job_id = scheduler.schedule_on_demand(JobKind.USER_CLEANUP)
    scheduler.storage.claim_next({JobKind.USER_CLEANUP}, worker_id="crashed", lease_seconds=10)

    clock.advance(seconds=30)
    scheduler.startup(run_workers=False, run_cron=False)
    snapshot = scheduler.status(job_id)
    assert snapshot.state == JobState.PENDING
    assert snapshot.attempts == 1


def test_startup_and_shutdown_are_idempotent(make_scheduler):
    scheduler = make_scheduler()
    assert scheduler.shutdown() == []
    scheduler.startup(run_workers=False, run_cron=False)
    scheduler.startup(run_workers=False, run_cron=False)
    assert len(scheduler.cron.definitions()) == 3
    scheduler.shutdown()
    assert not scheduler.started


def test_threaded_end_to_end(provider, registry):
    config = SchedulerConfig(concurrency=2, poll_interval=0.01, cron_poll_interval=0.01, backoff_base=0)
    with Scheduler(config, registry=registry) as scheduler:
        ids = [scheduler.schedule_on_demand(JobKind.REFRESH_METADATA, {"id": n}) for n in range(4)]
        assert wait_for(lambda: all(scheduler.status(i).state == JobState.COMPLETED for i in ids))
        assert scheduler.pool.alive
        assert scheduler.cron.alive
    assert sorted(provider.calls) == [0, 1, 2, 3]
    assert not scheduler.pool.alive


def test_rate_limit_applies_across_slots(registry, provider):
    config = SchedulerConfig(concurrency=3, poll_interval=0.01, rate_limit_num=2)
    with Scheduler(config, registry=registry) as scheduler:
        ids = [scheduler.schedule_on_demand(JobKind.REFRESH_METADATA, {"id": n}) for n in range(5)]
        assert wait_for(lambda: scheduler.storage.count_by_state()["Completed"] == 2)
        time.sleep(0.2)

        # only two executions fit in the first five second window
        assert len(provider.calls) == 2
        waiting = [scheduler.status(i) for i in ids if scheduler.status(i).state == JobState.PENDING]
        assert len(waiting) == 3
        assert all(s.attempts == 0 for s in waiting)


def test_from_database_url_layers_stored_config(tmp_path, monkeypatch):
    monkeypatch.setenv("SCHEDULER_RATE_LIMIT_NUM", "7")
    monkeypatch.setenv("SCHEDULER_MAX_ATTEMPTS", "4")
    url = f"sqlite://{tmp_path / 'jobs.db'}"

    first = Scheduler.from_database_url(url)
    first.storage.set_config("max_attempts", "6")
    first.close()

    scheduler = Scheduler.from_database_url(url, concurrency=2)
    try:
        assert scheduler.config.rate_limit_num == 7
        assert scheduler.config.max_attempts == 6
        assert scheduler.config.concurrency == 2
        job_id = scheduler.schedule_on_demand(JobKind.USER_CLEANUP)
        assert scheduler.status(job_id).max_attempts == 6
    finally:
        scheduler.close()
