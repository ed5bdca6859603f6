# dashboard.py
import html
import json
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from errors import InvalidStateError, NotFoundError, StorageError
from models import JobKind, JobState, to_iso
from scheduler import Scheduler


class JobRequest(BaseModel):
    kind: JobKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    delay_seconds: float = Field(default=0, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: sans-serif; margin: 0; background: #fafafa; color: #222; }
  h1 { background: #37474F; color: white; padding: 14px; margin: 0; }
  .navbar { background: #455A64; padding: 8px 20px; display: flex; gap: 18px; }
  .navbar a { color: white; text-decoration: none; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; background: white; }
  th, td { border: 1px solid #ddd; padding: 6px; text-align: left; }
  th { background: #607D8B; color: white; }
  .cards { display: flex; gap: 14px; flex-wrap: wrap; margin-bottom: 16px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 4px; padding: 10px 16px; }
  .muted { color: #666; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head><title>{html.escape(title)}</title><style>{BASE_STYLE}</style></head>
    <body>
      <h1>{html.escape(title)}</h1>
      <div class="navbar">
        <a href="/">Jobs</a>
        <a href="/dlq">Failed</a>
        <a href="/config">Config</a>
      </div>
      <div class="container">{body_html}</div>
    </body>
    </html>
    """


def _job_rows(jobs) -> str:
    rows = "<tr><th>ID</th><th>Kind</th><th>State</th><th>Attempts</th><th>Scheduled for</th><th>Error</th></tr>"
    for j in jobs:
        rows += (f"<tr><td><a href='/job/{j.id}'>{j.id}</a></td><td>{j.kind.value}</td><td>{j.state.value}</td>"
                 f"<td>{j.attempts}/{j.max_attempts}</td><td>{to_iso(j.scheduled_for)}</td>"
                 f"<td>{html.escape(j.error or '-')}</td></tr>")
    return f"<table>{rows}</table>"


def create_app(scheduler: Scheduler) -> FastAPI:
    app = FastAPI(title="schedctl")
    app.state.scheduler = scheduler

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateError)
    async def invalid_state(request: Request, exc: InvalidStateError):
        return JSONResponse(status_code=409, content={"detail": str(exc), "state": exc.state})

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        return JSONResponse(status_code=503, content={"detail": f"job store unavailable: {exc}"})

    # ---------- JSON API ----------
    @app.post("/jobs", status_code=201)
    def schedule_job(body: JobRequest):
        job_id = scheduler.schedule_on_demand(body.kind, body.payload, delay=body.delay_seconds,
                                              max_attempts=body.max_attempts)
        return {"id": job_id}

    @app.get("/jobs")
    def list_jobs(state: Optional[JobState] = None, kind: Optional[JobKind] = None, limit: int = 100):
        jobs = scheduler.storage.list_jobs(state=state, kind=kind, limit=limit, newest_first=True)
        return [j.snapshot().to_dict() for j in jobs]

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str):
        return scheduler.status(job_id).to_dict()

    @app.post("/jobs/{job_id}/cancel")
    def cancel_job(job_id: str):
        scheduler.cancel(job_id)
        return scheduler.status(job_id).to_dict()

    @app.post("/jobs/{job_id}/retry", status_code=201)
    def retry_job(job_id: str):
        return {"id": scheduler.retry_failed(job_id), "retried": job_id}

    @app.get("/metrics/json")
    def metrics_json():
        data = scheduler.storage.metrics()
        data.update({k: v for k, v in scheduler.summary().items() if k != "counts"})
        return data

    # ---------- Pages ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        counts = scheduler.storage.count_by_state()
        cards = "".join(f"<div class='card'><b>{s}</b><p>{n}</p></div>" for s, n in counts.items())
        jobs = scheduler.storage.list_jobs(limit=50, newest_first=True)
        body = f"<div class='cards'>{cards}</div><h2>Recent jobs</h2>{_job_rows(jobs)}"
        return page("Scheduler", body)

    @app.get("/dlq", response_class=HTMLResponse)
    def dlq_page():
        jobs = scheduler.storage.list_jobs(state=JobState.FAILED, newest_first=True)
        if not jobs:
            return page("Failed jobs", "<p class='muted'>No failed jobs.</p>")
        return page("Failed jobs", _job_rows(jobs) + "<p class='muted'>POST /jobs/&lt;id&gt;/retry to re-enqueue.</p>")

    @app.get("/config", response_class=HTMLResponse)
    def config_page():
        rows = "".join(f"<tr><td>{k}</td><td>{html.escape(str(v))}</td></tr>"
                       for k, v in scheduler.config.as_dict().items())
        recurring = scheduler.summary()["recurring"]
        rec_rows = "".join(f"<tr><td>{k}</td><td>{v['every_n_hours']}h</td><td>{v['next_fire_time']}</td></tr>"
                           for k, v in recurring.items())
        body = (f"<h2>Effective configuration</h2><table><tr><th>Key</th><th>Value</th></tr>{rows}</table>"
                f"<h2>Recurring jobs</h2><table><tr><th>Kind</th><th>Every</th><th>Next fire</th></tr>{rec_rows}</table>")
        return page("Config", body)

    @app.get("/job/{job_id}", response_class=HTMLResponse)
    def job_detail(job_id: str):
        try:
            job = scheduler.storage.get(job_id)
        except NotFoundError:
            return HTMLResponse(page("Job not found", f"<p>Job {html.escape(job_id)} not found.</p>"), status_code=404)
        duration = f"{job.duration_seconds:.3f}s" if job.duration_seconds is not None else "-"
        body = f"""
          <div class="cards">
            <div class="card"><b>Kind</b><p>{job.kind.value}</p></div>
            <div class="card"><b>State</b><p>{job.state.value}</p></div>
            <div class="card"><b>Attempts</b><p>{job.attempts}/{job.max_attempts}</p></div>
            <div class="card"><b>Duration</b><p>{duration}</p></div>
          </div>
          <h3>Payload</h3><pre>{html.escape(json.dumps(job.payload, indent=2))}</pre>
          <h3>Timestamps</h3>
          <table>
            <tr><th>Created</th><td>{to_iso(job.created_at)}</td></tr>
            <tr><th>Scheduled for</th><td>{to_iso(job.scheduled_for)}</td></tr>
            <tr><th>Started</th><td>{to_iso(job.started_at) or '-'}</td></tr>
            <tr><th>Finished</th><td>{to_iso(job.finished_at) or '-'}</td></tr>
            <tr><th>Updated</th><td>{to_iso(job.updated_at)}</td></tr>
          </table>
          <h3>Error</h3><pre>{html.escape(job.error or '-')}</pre>
        """
        return page(f"Job {job.id}", body)

    return app


def app_from_env() -> FastAPI:
    """Factory for `uvicorn dashboard:app_from_env --factory`; workers run elsewhere."""
    url = os.environ.get("SCHEDULER_DATABASE_URL", "sqlite://queue.db")
    return create_app(Scheduler.from_database_url(url))
