# cli.py
import json
import logging
import time
from datetime import timedelta

import click

from config import SchedulerConfig, coerce
from errors import SchedulerError
from handlers import default_registry, load_registry
from models import JobKind, JobState, to_iso
from scheduler import Scheduler
from storage import Storage

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def _fail(message):
    click.echo(f"❌ {message}", err=True)
    click.get_current_context().exit(1)


def _open(ctx, registry=None, **overrides):
    """Open the store and build a Scheduler from env + stored config (+ CLI overrides)."""
    if "scheduler" not in ctx.obj:
        try:
            ctx.obj["scheduler"] = Scheduler.from_database_url(ctx.obj["database_url"], registry=registry, **overrides)
        except SchedulerError as e:
            _fail(str(e))
        ctx.call_on_close(ctx.obj["scheduler"].close)
    return ctx.obj["scheduler"]


def _fmt(dt):
    return to_iso(dt) if dt else "-"


@click.group()
@click.option("--database-url", envvar="SCHEDULER_DATABASE_URL", default="sqlite://queue.db", show_default=True,
              help="Job store location (sqlite://path or sqlite::memory:)")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, database_url, log_level):
    """schedctl - background job scheduler for metadata refresh and cleanup work"""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url


# ---------------- Enqueue ----------------
@cli.command()
@click.argument("kind", type=click.Choice([k.value for k in JobKind]))
@click.option("--payload", default="{}", help="JSON object handed to the job handler")
@click.option("--delay", default=0.0, type=float, help="Seconds before the job becomes eligible")
@click.option("--max-attempts", default=None, type=click.IntRange(min=1), help="Attempts before the job is marked Failed (uses config if set)")
@click.pass_context
def enqueue(ctx, kind, payload, delay, max_attempts):
    """Add a new job to the queue"""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        _fail(f"Invalid --payload JSON: {e}")
    if not isinstance(data, dict):
        _fail("--payload must be a JSON object")

    scheduler = _open(ctx)
    try:
        job_id = scheduler.schedule_on_demand(kind, data, delay=delay, max_attempts=max_attempts)
    except (SchedulerError, ValueError) as e:
        _fail(f"Failed to enqueue job: {e}")
    click.echo(f"✅ Job {job_id} enqueued (kind={kind}{f', delay={delay}s' if delay else ''}).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--state", default=None, type=click.Choice([s.value for s in JobState]), help="Filter jobs by state")
@click.option("--kind", default=None, type=click.Choice([k.value for k in JobKind]), help="Filter jobs by kind")
@click.option("--limit", default=None, type=int)
@click.pass_context
def list_jobs(ctx, state, kind, limit):
    """List jobs in the queue"""
    jobs = _open(ctx).storage.list_jobs(state=state, kind=kind, limit=limit)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        dur = f"{job.duration_seconds:.3f}s" if job.duration_seconds is not None else "-"
        click.echo(f"{job.id} | {job.kind.value} | state={job.state.value} | attempts={job.attempts}/{job.max_attempts} "
                   f"| scheduled_for={_fmt(job.scheduled_for)} | duration={dur}")


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job states"""
    counts = _open(ctx).storage.count_by_state()
    if not any(counts.values()):
        click.echo("No jobs in the system yet.")
        return
    click.echo("📊 Job Status Summary:")
    for state, count in counts.items():
        click.echo(f"  {state}: {count}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    try:
        job = _open(ctx).storage.get(job_id)
    except SchedulerError as e:
        _fail(str(e))
    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Kind: {job.kind.value}")
    click.echo(f"  Payload: {json.dumps(job.payload)}")
    click.echo(f"  State: {job.state.value}")
    click.echo(f"  Attempts: {job.attempts}/{job.max_attempts}")
    click.echo(f"  Scheduled for: {_fmt(job.scheduled_for)}")
    click.echo(f"  Created: {_fmt(job.created_at)}")
    click.echo(f"  Started: {_fmt(job.started_at)}")
    click.echo(f"  Finished: {_fmt(job.finished_at)}")
    click.echo(f"  Duration: {job.duration_seconds:.3f}s" if job.duration_seconds is not None else "  Duration: -")
    click.echo(f"  Worker: {job.worker_id or '-'}")
    click.echo(f"  Error: {job.error or '-'}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx, job_id):
    """Cancel a pending job"""
    try:
        _open(ctx).cancel(job_id)
    except SchedulerError as e:
        _fail(str(e))
    click.echo(f"🚫 Job {job_id} cancelled.")


# ---------------- Metrics ----------------
@cli.command()
@click.pass_context
def metrics(ctx):
    """Show job metrics summary"""
    data = _open(ctx).storage.metrics()
    counts = data["counts"]
    click.echo("📈 Metrics Summary")
    for state in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED, JobState.PENDING, JobState.RUNNING):
        click.echo(f"  {state.value} jobs: {counts[state.value]}")
    avg = data["avg_duration"]
    click.echo(f"  Avg duration (s): {avg:.3f}" if avg is not None else "  Avg duration: N/A")


# ---------------- Worker ----------------
@cli.command()
@click.option("--concurrency", default=None, type=int, help="Number of worker slots (uses config if set)")
@click.option("--handlers", "handlers_path", default=None,
              help="module:attr producing a HandlerRegistry (default: log-only handlers)")
@click.option("--no-cron", is_flag=True, help="Do not fire recurring jobs from this process")
@click.option("--grace-seconds", default=None, type=float, help="Shutdown grace for in-flight jobs (uses config if set)")
@click.pass_context
def worker(ctx, concurrency, handlers_path, no_cron, grace_seconds):
    """Run worker slots and the cron trigger until Ctrl+C"""
    try:
        registry = load_registry(handlers_path) if handlers_path else default_registry()
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        _fail(f"Cannot load handlers: {e}")
    scheduler = _open(ctx, registry=registry, concurrency=concurrency)
    cfg = scheduler.config
    try:
        scheduler.startup(run_cron=not no_cron)
    except SchedulerError as e:
        _fail(f"Cannot start scheduler: {e}")
    click.echo(f"🚀 Started {cfg.concurrency} worker(s) (rate_limit={cfg.rate_limit_num}/{cfg.rate_limit_window_seconds}s, "
               f"timeout={cfg.handler_timeout_seconds}s, cron={'off' if no_cron else 'on'})")
    click.echo("Press Ctrl+C to stop workers gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
        abandoned = scheduler.shutdown(grace_seconds=grace_seconds)
        if abandoned:
            click.echo(f"⚠️ {len(abandoned)} job(s) did not finish in time and were requeued: {', '.join(abandoned)}")
        click.echo("✅ Workers stopped cleanly.")


# ---------------- Failed jobs ----------------
@cli.group()
def dlq():
    """Failed job operations"""
    pass


@dlq.command("list")
@click.pass_context
def dlq_list(ctx):
    """List jobs that exhausted their attempts"""
    jobs = _open(ctx).storage.list_jobs(state=JobState.FAILED)
    if not jobs:
        click.echo("No failed jobs.")
        return
    for job in jobs:
        click.echo(f"{job.id} | {job.kind.value} | attempts={job.attempts}/{job.max_attempts} "
                   f"| finished={_fmt(job.finished_at)} | error={job.error}")


@dlq.command("retry")
@click.argument("job_id")
@click.pass_context
def dlq_retry(ctx, job_id):
    """Re-enqueue a failed job's work as a new job"""
    try:
        new_id = _open(ctx).retry_failed(job_id)
    except SchedulerError as e:
        _fail(str(e))
    click.echo(f"♻️ Job {job_id} re-enqueued as {new_id}.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration stored alongside the jobs"""
    pass


@config.command("set")
@click.argument("key", type=click.Choice(SchedulerConfig.settable_keys()))
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    try:
        coerce(key, value)
    except SchedulerError as e:
        _fail(str(e))
    storage = Storage(ctx.obj["database_url"])
    try:
        storage.set_config(key, value)
    finally:
        storage.close()
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key", type=click.Choice(SchedulerConfig.keys()))
@click.pass_context
def config_get(ctx, key):
    """Show the effective value of a config key"""
    storage = Storage(ctx.obj["database_url"])
    try:
        stored = storage.get_config(key)
        effective = SchedulerConfig.load(storage=storage, database_url=ctx.obj["database_url"])
    except SchedulerError as e:
        _fail(str(e))
    finally:
        storage.close()
    source = "stored" if stored is not None else "default/env"
    click.echo(f"{key}={getattr(effective, key)} ({source})")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List stored config keys"""
    storage = Storage(ctx.obj["database_url"])
    try:
        rows = storage.list_config()
    finally:
        storage.close()
    if not rows:
        click.echo("No config keys set.")
        return
    for key, value, updated_at in rows:
        click.echo(f"{key}={value} (updated_at={updated_at})")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Recovery tools for stuck jobs"""
    pass


@rescue.command("leases")
@click.option("--older-than-seconds", default=0, help="Only leases that expired at least N seconds ago")
@click.pass_context
def rescue_leases(ctx, older_than_seconds):
    """Return Running jobs with expired leases to Pending"""
    scheduler = _open(ctx)
    cutoff = scheduler.clock() - timedelta(seconds=older_than_seconds)
    ids = scheduler.storage.recover_expired_leases(expired_before=cutoff)
    if not ids:
        click.echo("No expired leases found.")
        return
    click.echo(f"🔧 Recovered {len(ids)} job(s): {', '.join(ids)}")


# ---------------- HTTP API ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--with-workers", is_flag=True, help="Also run worker slots and cron in this process")
@click.pass_context
def serve(ctx, host, port, with_workers):
    """Serve the job API and status pages"""
    import uvicorn

    from dashboard import create_app

    scheduler = _open(ctx)
    if with_workers:
        scheduler.startup()
    uvicorn.run(create_app(scheduler), host=host, port=port)


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
