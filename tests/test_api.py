from __future__ import annotations

from conftest import FakeStructuringClient

from tender_review.pipeline import TenderReviewPipeline
from tender_review.pipeline_config import PipelineConfig
from tender_review.routes import _deps
from tender_review.store import store


def _queued_job() -> str:
    job = store.create_job(user_id="user_api", file_name="tender.pdf", file_bytes=b"%PDF-1.7 api")
    return str(job["id"])


def _mock_env(monkeypatch) -> None:
    monkeypatch.setenv("TP_MOCK_EXTRACT", "1")
    monkeypatch.setenv("TP_MOCK_AI", "1")


def test_healthz_echoes_trace_id(client):
    resp = client.get("/healthz", headers={"x-trace-id": "trace_health_1"})

    assert resp.status_code == 200
    assert resp.headers["x-trace-id"] == "trace_health_1"
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["trace_id"] == "trace_health_1"


def test_process_job_mock_run_then_read_results(client, monkeypatch):
    _mock_env(monkeypatch)
    job_id = _queued_job()

    resp = client.post("/api/v1/internal/process-job", json={"job_id": job_id})
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "done"
    assert body["data"]["status"] == "done"

    result = client.get(f"/api/v1/jobs/{job_id}/result")
    assert result.status_code == 200
    data = result.json()["data"]
    assert data["status"] == "done"
    assert data["extracted_chars"] > 0
    assert len(data["checklist"]) == 6
    assert len(data["clarifications"]) == 3

    events = client.get(f"/api/v1/jobs/{job_id}/events").json()["data"]
    assert events["total"] == len(events["items"])
    assert events["items"][-1]["event_type"] == "job_completed"

    again = client.post("/api/v1/internal/process-job", json={"job_id": job_id})
    assert again.status_code == 200
    assert again.json()["data"]["detail"] == "job already finished"


def test_process_job_reports_transient_step_as_accepted(client, monkeypatch):
    job_id = _queued_job()
    monkeypatch.setattr(
        _deps,
        "build_pipeline",
        lambda: TenderReviewPipeline.from_store(
            store,
            storage=store.object_storage,
            config=PipelineConfig(),
            structuring_client=FakeStructuringClient(poll_statuses=["running"]),
        ),
    )

    resp = client.post("/api/v1/internal/process-job", json={"job_id": job_id})

    assert resp.status_code == 202
    assert resp.json()["data"]["status"] == "unstructured_submitted"
    assert resp.json()["data"]["retry_after_s"] == 5

    not_ready = client.get(f"/api/v1/jobs/{job_id}/result")
    assert not_ready.status_code == 409
    assert not_ready.json()["error"]["code"] == "RESULT_NOT_READY"


def test_process_job_validation_errors(client):
    empty = client.post("/api/v1/internal/process-job", json={"job_id": "  "})
    assert empty.status_code == 400
    assert empty.json()["error"]["code"] == "REQ_VALIDATION_FAILED"

    missing = client.post("/api/v1/internal/process-job", json={})
    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "REQ_VALIDATION_FAILED"

    unknown = client.post("/api/v1/internal/process-job", json={"job_id": "job_nope"})
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "JOB_NOT_FOUND"


def test_process_job_requires_shared_secret_when_configured(client, monkeypatch):
    _mock_env(monkeypatch)
    monkeypatch.setenv("PIPELINE_SHARED_SECRET", "s3cret")
    job_id = _queued_job()

    denied = client.post("/api/v1/internal/process-job", json={"job_id": job_id})
    assert denied.status_code == 401
    assert denied.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert store.get_job(job_id)["status"] == "queued"

    allowed = client.post(
        "/api/v1/internal/process-job",
        json={"job_id": job_id},
        headers={"x-pipeline-secret": "s3cret"},
    )
    assert allowed.status_code == 200


def test_csv_export_download(client, monkeypatch):
    _mock_env(monkeypatch)
    job_id = _queued_job()
    client.post("/api/v1/internal/process-job", json={"job_id": job_id})

    resp = client.get(f"/api/v1/jobs/{job_id}/export/csv", params={"type": "risks"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert f'filename="TenderPilot_risks_tender_{job_id}.csv"' in resp.headers["content-disposition"]
    assert resp.text.splitlines()[0].startswith("ref_key,severity,risk,detail")


def test_csv_export_rejects_bad_type_and_unfinished_jobs(client):
    bad = client.get("/api/v1/jobs/job_whatever/export/csv", params={"type": "pricing"})
    assert bad.status_code == 400
    assert "allowed" in bad.json()["error"]["message"]

    job_id = _queued_job()
    early = client.get(f"/api/v1/jobs/{job_id}/export/csv")
    assert early.status_code == 409


def test_unknown_job_and_route_are_not_found(client):
    job = client.get("/api/v1/jobs/job_missing")
    assert job.status_code == 404
    assert job.json()["error"]["code"] == "JOB_NOT_FOUND"

    route = client.get("/api/v1/nowhere")
    assert route.status_code == 404
    assert route.json()["error"]["code"] == "REQ_NOT_FOUND"
