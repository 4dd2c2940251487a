from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import FakeReviewer, FakeStructuringClient

from tender_review.cost_guard import CONTENT_SKIPPED_MARKER
from tender_review.errors import ApiError
from tender_review.event_log import JobEventLogger
from tender_review.evidence import NOT_FOUND_SOURCE
from tender_review.extraction_state import PendingExtraction, decode_extraction_state
from tender_review.grounding import MANUAL_CHECK_PREFIX
from tender_review.mock_llm import MOCK_ELEMENTS, mock_extracted_text
from tender_review.pipeline import TenderReviewPipeline
from tender_review.pipeline_config import PipelineConfig
from tender_review.store import store

REVIEW = {
    "executive_summary": {
        "decisionBadge": "Proceed",
        "decisionLine": "Routine services tender.",
        "keyFindings": ["Electronic submission"],
        "nextActions": ["Register on the portal"],
        "topRisks": [],
        "submissionDeadline": "2026-02-15 12:00 CET",
    },
    "checklist": [
        {"type": "MUST", "text": "Submit through the online portal", "evidence_ids": ["E001"]},
        {"type": "MUST", "text": "Provide a parent company guarantee", "evidence_ids": []},
    ],
    "risks": [],
    "buyer_questions": [],
    "proposal_draft": "1. Executive summary\n2. Service model",
}


def _pipeline(clock, *, config=None, structuring=None, reviewer=None) -> TenderReviewPipeline:
    return TenderReviewPipeline.from_store(
        store,
        storage=store.object_storage,
        config=config or PipelineConfig(),
        structuring_client=structuring,
        reviewer=reviewer,
        clock=clock,
    )


def _upload_job(**overrides) -> dict:
    values = {"user_id": "user_a", "file_name": "tender.pdf", "file_bytes": b"%PDF-1.7 tender"}
    values.update(overrides)
    return store.create_job(**values)


def _event_types(job_id: str) -> list[str]:
    return [e["event_type"] for e in store.events.list_for_job(job_id=job_id)]


def test_invalid_and_unknown_job_ids(clock):
    pipeline = _pipeline(clock)

    assert pipeline.advance("").http_status == 400
    assert pipeline.advance("  ").status == "invalid_request"
    result = pipeline.advance("job_missing")
    assert (result.status, result.http_status) == ("not_found", 404)
    assert result.is_final


def test_structuring_flow_submit_poll_then_done(clock):
    job = _upload_job()
    structuring = FakeStructuringClient(poll_statuses=["running", "succeeded"], elements=MOCK_ELEMENTS)
    reviewer = FakeReviewer(REVIEW)
    pipeline = _pipeline(clock, structuring=structuring, reviewer=reviewer)

    first = pipeline.advance(job["id"])
    assert (first.status, first.http_status, first.retry_after_s) == ("unstructured_submitted", 202, 5)
    pending = decode_extraction_state(store.results.get(job_id=job["id"])["extracted_text"])
    assert isinstance(pending, PendingExtraction)
    assert pending.external_job_id == "ext_1"

    clock.advance(seconds=5)
    second = pipeline.advance(job["id"])
    assert second.status == "unstructured_polling"
    assert decode_extraction_state(store.results.get(job_id=job["id"])["extracted_text"]).poll_count == 1

    clock.advance(seconds=5)
    third = pipeline.advance(job["id"])
    assert (third.status, third.http_status) == ("done", 200)
    assert (structuring.submit_calls, structuring.poll_calls, structuring.download_calls) == (1, 2, 1)
    assert len(reviewer.calls) == 1

    stored = store.get_job(job["id"])
    assert stored["status"] == "done"
    assert stored["pipeline"]["extract"]["mode"] == "structuring"
    assert stored["pipeline"]["extract"]["polls"] == 2
    assert stored["pipeline"]["reasoning"]["in_progress"] is False
    assert stored["pipeline"]["evidence"]["count"] >= 1

    result = store.results.get(job_id=job["id"])
    assert result["extracted_text"] == mock_extracted_text()
    must, demoted = result["checklist"]
    assert must["type"] == "MUST"
    assert must["source"] in result["extracted_text"]
    assert demoted["type"] == "INFO"
    assert demoted["text"] == MANUAL_CHECK_PREFIX + "Provide a parent company guarantee"
    assert demoted["source"] == NOT_FOUND_SOURCE

    types = _event_types(job["id"])
    assert types[0] == "job_claimed"
    assert "extract_started" in types
    assert "extract_completed" in types
    assert types[-1] == "job_completed"
    ai_event = next(e for e in store.events.list_for_job(job_id=job["id"]) if e["event_type"] == "ai_completed")
    assert ai_event["meta"] == {"model": "fake", "total_tokens": 0}


def test_finished_job_is_returned_without_side_effects(clock):
    job = _upload_job(extracted_text=mock_extracted_text())
    structuring = FakeStructuringClient()
    reviewer = FakeReviewer(REVIEW)
    pipeline = _pipeline(clock, structuring=structuring, reviewer=reviewer)
    assert pipeline.advance(job["id"]).status == "done"
    events_before = len(store.events.list_for_job(job_id=job["id"]))

    again = pipeline.advance(job["id"])

    assert (again.status, again.http_status) == ("done", 200)
    assert structuring.total_calls == 0
    assert len(reviewer.calls) == 1
    assert len(store.events.list_for_job(job_id=job["id"])) == events_before


def test_losing_the_claim_returns_already_claimed(clock):
    job = _upload_job()

    class StaleJobs:
        """Reads a queued snapshot while another invocation already holds the claim."""

        def __init__(self, inner):
            self._inner = inner

        def get(self, *, job_id):
            row = self._inner.get(job_id=job_id)
            return {**row, "status": "queued"} if row else row

        def __getattr__(self, name):
            return getattr(self._inner, name)

    assert store.jobs.claim(job_id=job["id"]) is True
    structuring = FakeStructuringClient()
    pipeline = TenderReviewPipeline(
        jobs_repository=StaleJobs(store.jobs),
        results_repository=store.results,
        events=JobEventLogger(events_repository=store.events, clock=clock),
        storage=store.object_storage,
        structuring_client=structuring,
        clock=clock,
    )

    result = pipeline.advance(job["id"])

    assert (result.status, result.http_status) == ("already_claimed", 409)
    assert result.retry_after_s == 5
    assert not result.is_final
    assert structuring.total_calls == 0


def test_fast_path_skips_structuring(clock):
    job = _upload_job(extracted_text=mock_extracted_text())
    structuring = FakeStructuringClient()
    reviewer = FakeReviewer(REVIEW)

    result = _pipeline(clock, structuring=structuring, reviewer=reviewer).advance(job["id"])

    assert result.status == "done"
    assert structuring.total_calls == 0
    assert store.get_job(job["id"])["pipeline"]["extract"]["mode"] == "client"
    assert "extract_fast_path" in _event_types(job["id"])


def test_mock_mode_end_to_end(clock):
    job = _upload_job()
    config = PipelineConfig(mock_extract=True, mock_ai=True)

    result = _pipeline(clock, config=config).advance(job["id"])

    assert result.status == "done"
    stored = store.results.get(job_id=job["id"])
    assert len(stored["checklist"]) == 6
    assert sum(1 for x in stored["checklist"] if x["type"] == "MUST") == 3
    assert len(stored["clarifications"]) == 3
    assert stored["executive_summary"]["submissionDeadline"] == "2026-02-15 12:00 CET"
    assert _event_types(job["id"]) == [
        "job_claimed",
        "extract_mock",
        "evidence_built",
        "ai_mock",
        "grounding_applied",
        "job_completed",
    ]


def test_split_stages_defers_reasoning(clock):
    job = _upload_job()
    reviewer = FakeReviewer(REVIEW)
    pipeline = _pipeline(clock, config=PipelineConfig(mock_extract=True, split_stages=True), reviewer=reviewer)

    first = pipeline.advance(job["id"])
    assert (first.status, first.http_status) == ("extracted_scheduled", 202)
    assert reviewer.calls == []

    second = pipeline.advance(job["id"])
    assert second.status == "done"
    assert len(reviewer.calls) == 1


def test_poll_limit_times_out(clock):
    job = _upload_job()
    structuring = FakeStructuringClient(poll_statuses=["running"])
    pipeline = _pipeline(clock, config=PipelineConfig(max_extract_polls=2), structuring=structuring)

    statuses = [pipeline.advance(job["id"]).status for _ in range(4)]

    assert statuses == ["unstructured_submitted", "unstructured_polling", "unstructured_polling", "failed"]
    assert structuring.poll_calls == 2
    stored = store.get_job(job["id"])
    assert stored["status"] == "failed"
    assert stored["error_message"].startswith("EXTRACTION_TIMEOUT")


def test_elapsed_minutes_time_out(clock):
    job = _upload_job()
    structuring = FakeStructuringClient(poll_statuses=["running"])
    pipeline = _pipeline(clock, config=PipelineConfig(max_extract_minutes=20), structuring=structuring)
    pipeline.advance(job["id"])

    clock.advance(minutes=21)
    result = pipeline.advance(job["id"])

    assert (result.status, result.detail) == ("failed", "EXTRACTION_TIMEOUT")
    assert structuring.poll_calls == 0


def test_failed_structuring_job_fails_the_review(clock):
    job = _upload_job()
    pipeline = _pipeline(clock, structuring=FakeStructuringClient(poll_statuses=["failed"]))
    pipeline.advance(job["id"])

    result = pipeline.advance(job["id"])

    assert result.detail == "EXTRACTION_FAILED"
    assert "upstream said no" in store.get_job(job["id"])["error_message"]
    assert _event_types(job["id"])[-1] == "job_failed"


def test_retryable_poll_error_keeps_polling(clock):
    class FlakyPoll(FakeStructuringClient):
        def poll(self, *, job_id):
            self.poll_calls += 1
            raise ApiError(
                code="STRUCTURING_UPSTREAM_UNAVAILABLE",
                message="dns failure",
                error_class="transient",
                retryable=True,
                http_status=503,
            )

    job = _upload_job()
    pipeline = _pipeline(clock, structuring=FlakyPoll())
    pipeline.advance(job["id"])

    result = pipeline.advance(job["id"])

    assert result.status == "unstructured_polling"
    assert store.get_job(job["id"])["status"] == "processing"
    assert "extract_poll_retry" in _event_types(job["id"])


def test_storage_download_failure(clock):
    job = store.create_job(user_id="user_a", file_name="gone.pdf", file_path="object://local/uploads/gone.pdf")
    structuring = FakeStructuringClient()

    result = _pipeline(clock, structuring=structuring).advance(job["id"])

    assert (result.status, result.detail) == ("failed", "STORAGE_DOWNLOAD_FAILED")
    assert structuring.submit_calls == 0
    assert "storage_download_failed" in _event_types(job["id"])


def test_cost_cap_stops_before_model_call(clock):
    job = _upload_job()
    reviewer = FakeReviewer(REVIEW)
    config = PipelineConfig(mock_extract=True, max_usd_per_job=0.0001)

    result = _pipeline(clock, config=config, reviewer=reviewer).advance(job["id"])

    assert (result.status, result.detail) == ("failed", "COST_CAP_EXCEEDED")
    assert reviewer.calls == []
    stored = store.get_job(job["id"])
    assert stored["pipeline"]["cost"]["max_usd"] == 0.0001
    assert stored["pipeline"]["reasoning"]["in_progress"] is False
    assert "cost_cap_exceeded" in _event_types(job["id"])


def test_long_source_is_truncated_before_model_call(clock):
    job = _upload_job()
    reviewer = FakeReviewer(REVIEW)
    config = PipelineConfig(mock_extract=True, max_input_chars=600)

    assert _pipeline(clock, config=config, reviewer=reviewer).advance(job["id"]).status == "done"

    sent = reviewer.calls[0]["source_text"]
    assert len(sent) <= 600
    assert CONTENT_SKIPPED_MARKER in sent
    assert store.get_job(job["id"])["pipeline"]["cost"]["truncated"] is True
    assert "source_truncated" in _event_types(job["id"])


def test_reviewer_crash_fails_job_and_releases_lock(clock):
    job = _upload_job(extracted_text=mock_extracted_text())
    reviewer = FakeReviewer(error=RuntimeError("socket closed"))

    result = _pipeline(clock, reviewer=reviewer).advance(job["id"])

    assert (result.status, result.detail) == ("failed", "PIPELINE_STEP_FAILED")
    reasoning = store.get_job(job["id"])["pipeline"]["reasoning"]
    assert reasoning["in_progress"] is False
    assert reasoning["last_error"] == "socket closed"


def _claimed_job_with_lock(**lock_values) -> dict:
    job = _upload_job(extracted_text=mock_extracted_text())
    store.jobs.claim(job_id=job["id"])
    store.jobs.update_pipeline_section(job_id=job["id"], section="extract", values={"mode": "client"})
    store.jobs.update_pipeline_section(job_id=job["id"], section="reasoning", values=lock_values)
    return job


def test_reasoning_in_progress_is_not_duplicated(clock):
    job = _claimed_job_with_lock(in_progress=True, started_at=clock().isoformat(), attempts=1)
    reviewer = FakeReviewer(REVIEW)

    result = _pipeline(clock, reviewer=reviewer).advance(job["id"])

    assert (result.status, result.http_status, result.retry_after_s) == ("reasoning_in_progress", 202, 5)
    assert reviewer.calls == []


def test_reasoning_cooldown_after_recent_attempt(clock):
    job = _claimed_job_with_lock(in_progress=False, last_attempt_at=clock().isoformat(), attempts=1)
    reviewer = FakeReviewer(REVIEW)
    pipeline = _pipeline(clock, reviewer=reviewer)

    result = pipeline.advance(job["id"])
    assert (result.status, result.retry_after_s) == ("cooldown", 30)
    assert reviewer.calls == []

    clock.advance(seconds=31)
    assert pipeline.advance(job["id"]).status == "done"
    assert store.get_job(job["id"])["pipeline"]["reasoning"]["attempts"] == 2


def test_attempt_cap_fails_job(clock):
    last = (clock() - timedelta(hours=1)).isoformat()
    job = _claimed_job_with_lock(attempts=3, last_attempt_at=last, last_error="worker restarted")
    reviewer = FakeReviewer(REVIEW)

    result = _pipeline(clock, reviewer=reviewer).advance(job["id"])

    assert (result.status, result.detail) == ("failed", "REASONING_ATTEMPTS_EXHAUSTED")
    assert reviewer.calls == []
    assert "worker restarted" in store.get_job(job["id"])["error_message"]


@pytest.mark.parametrize("token", ["done", "failed"])
def test_step_result_tokens_are_final(token):
    from tender_review.pipeline import StepResult

    assert StepResult(token, 200, "job_x").is_final
    assert not StepResult("unstructured_polling", 202, "job_x").is_final
