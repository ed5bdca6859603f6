import pytest
from fastapi.testclient import TestClient

from dashboard import create_app
from handlers import HandlerRegistry
from models import JobKind


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()


@pytest.fixture
def client(scheduler):
    return TestClient(create_app(scheduler))


def test_schedule_and_fetch_job(client):
    resp = client.post("/jobs", json={"kind": "RefreshMetadata", "payload": {"id": 42}})
    assert resp.status_code == 201
    job_id = resp.json()["id"]

    body = client.get(f"/jobs/{job_id}").json()
    assert body["kind"] == "RefreshMetadata"
    assert body["state"] == "Pending"
    assert body["attempts"] == 0


def test_schedule_rejects_bad_requests(client):
    assert client.post("/jobs", json={"kind": "DropTables"}).status_code == 422
    assert client.post("/jobs", json={"kind": "UserCleanup", "delay_seconds": -5}).status_code == 422
    assert client.post("/jobs", json={"kind": "UserCleanup", "max_attempts": 0}).status_code == 422


def test_unknown_job_is_404(client):
    assert client.get("/jobs/nope").status_code == 404
    assert client.post("/jobs/nope/cancel").status_code == 404
    assert client.get("/job/nope").status_code == 404


def test_cancel_and_conflicts(client):
    job_id = client.post("/jobs", json={"kind": "UserCleanup", "delay_seconds": 60}).json()["id"]

    resp = client.post(f"/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["state"] == "Cancelled"

    again = client.post(f"/jobs/{job_id}/cancel")
    assert again.status_code == 409
    assert again.json()["state"] == "Cancelled"
    assert client.post(f"/jobs/{job_id}/retry").status_code == 409


def test_retry_failed_job(make_scheduler):
    def broken(payload):
        raise RuntimeError("boom")

    scheduler = make_scheduler(registry=HandlerRegistry({JobKind.CALCULATE_SUMMARY: broken}), max_attempts=1)
    client = TestClient(create_app(scheduler))
    job_id = client.post("/jobs", json={"kind": "CalculateSummary"}).json()["id"]
    scheduler.pool.workers[0].run_once()

    failed = client.get("/jobs", params={"state": "Failed"}).json()
    assert [j["id"] for j in failed] == [job_id]

    resp = client.post(f"/jobs/{job_id}/retry")
    assert resp.status_code == 201
    assert resp.json()["retried"] == job_id
    assert client.get(f"/jobs/{resp.json()['id']}").json()["state"] == "Pending"

    assert job_id in client.get("/dlq").text


def test_list_filters_and_metrics(client):
    client.post("/jobs", json={"kind": "UserCleanup"})
    client.post("/jobs", json={"kind": "PullIntegrations"})

    pulls = client.get("/jobs", params={"kind": "PullIntegrations"}).json()
    assert [j["kind"] for j in pulls] == ["PullIntegrations"]
    assert client.get("/jobs", params={"state": "Completed"}).json() == []
    assert client.get("/jobs", params={"state": "Sleeping"}).status_code == 422

    metrics = client.get("/metrics/json").json()
    assert metrics["counts"]["Pending"] == 2
    assert metrics["counts"]["Completed"] == 0
    assert metrics["running"] is False


def test_html_pages_render(client, scheduler):
    job_id = client.post("/jobs", json={"kind": "RefreshMetadata", "payload": {"id": 7}}).json()["id"]
    scheduler.startup(run_workers=False, run_cron=False)

    home = client.get("/")
    assert home.status_code == 200
    assert job_id in home.text

    assert "No failed jobs." in client.get("/dlq").text

    config_page = client.get("/config").text
    assert "rate_limit_num" in config_page
    assert "PullIntegrations" in config_page

    detail = client.get(f"/job/{job_id}")
    assert detail.status_code == 200
    assert "RefreshMetadata" in detail.text
