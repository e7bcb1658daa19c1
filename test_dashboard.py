import pytest

from dashboard import create_app
from models import JobState


@pytest.fixture
def client(service):
    app = create_app(service)
    app.testing = True
    return app.test_client()


def test_enqueue_over_rpc(client, service):
    resp = client.post("/api/jobs", json={
        "type": "email",
        "payload": {"to": "a@x.com", "template": "welcome"},
        "priority": 2,
    })
    assert resp.status_code == 201
    job_id = resp.get_json()["id"]

    job = service.get(job_id)
    assert job.state is JobState.PENDING
    assert job.priority == 2


def test_enqueue_mismatched_payload_is_400(client):
    resp = client.post("/api/jobs", json={"type": "vectorization", "payload": {"name": "reindex"}})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "InvalidJobKind"


def test_enqueue_requires_type_and_payload(client):
    assert client.post("/api/jobs", json={"type": "email"}).status_code == 400
    assert client.post("/api/jobs", data="not json").status_code == 400


def test_duplicate_id_is_409(client):
    body = {"type": "generic", "payload": {"name": "x"}, "id": "job-1"}
    assert client.post("/api/jobs", json=body).status_code == 201
    assert client.post("/api/jobs", json=body).status_code == 409


def test_get_job(client, service):
    job_id = service.submit("import", {"source": "/tmp/a.csv"})
    resp = client.get(f"/api/jobs/{job_id}")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["type"] == "import"
    assert data["state"] == "pending"
    assert data["payload"]["source"] == "/tmp/a.csv"


def test_get_unknown_job_is_404(client):
    resp = client.get("/api/jobs/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "JobNotFound"


def test_cancel_over_rpc(client, service):
    job_id = service.submit("generic", {"name": "x"})
    resp = client.post(f"/api/jobs/{job_id}/cancel")
    assert resp.get_json() == {"id": job_id, "canceled": True, "state": "canceled"}


def test_status_and_dashboard_page(client, service):
    service.submit("generic", {"name": "x"})
    status = client.get("/api/status").get_json()
    assert status["summary"]["pending"] == 1
    assert "jobs_succeeded" in status["metrics"]

    page = client.get("/")
    assert page.status_code == 200
    assert b"QueueCTL Dashboard" in page.data
