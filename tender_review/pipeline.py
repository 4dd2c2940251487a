"""
Tender review job state machine.

`TenderReviewPipeline.advance(job_id)` performs one bounded step for a job and
returns a StepResult token. It is safe to call repeatedly and concurrently:

  queued      -> compare-and-set claim to processing (losers: already_claimed)
  processing  -> extraction sub-stage until anchored text is stored, then the
                 reasoning sub-stage under the soft reasoning lock
  done/failed -> returned as is, no external calls

Each invocation makes at most one round trip per external service and never
waits for the structuring job to finish; the caller re-delivers the job id
after `retry_after_s`.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from tender_review.anchoring import build_anchored_text
from tender_review.cost_guard import enforce_cost_cap, prepare_model_input
from tender_review.errors import ApiError, PipelineStepError
from tender_review.event_log import JobEventLogger
from tender_review.evidence import build_evidence_candidates
from tender_review.extraction_state import (
    ExtractionState,
    PendingExtraction,
    ReadyExtraction,
    decode_extraction_state,
    encode_extraction_state,
)
from tender_review.grounding import ground_review
from tender_review.llm_provider import llm_review_tender, normalize_review, provider_config_from_env
from tender_review.mock_llm import mock_extracted_text, mock_review
from tender_review.object_storage import content_type_for_source
from tender_review.pipeline_config import PipelineConfig
from tender_review.reasoning_lock import (
    LOCK_COOLDOWN,
    LOCK_EXHAUSTED,
    LOCK_IN_PROGRESS,
    LOCK_SECTION,
    LockPolicy,
    ReasoningLease,
)
from tender_review.repositories.jobs import TERMINAL_STATUSES
from tender_review.structuring_client import create_structuring_client_from_env

logger = logging.getLogger(__name__)

STATUS_INVALID_REQUEST = "invalid_request"
STATUS_NOT_FOUND = "not_found"
STATUS_ALREADY_CLAIMED = "already_claimed"
STATUS_SUBMITTED = "unstructured_submitted"
STATUS_POLLING = "unstructured_polling"
STATUS_EXTRACTED_SCHEDULED = "extracted_scheduled"
STATUS_REASONING_IN_PROGRESS = LOCK_IN_PROGRESS
STATUS_COOLDOWN = LOCK_COOLDOWN
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_ERROR = "error"

FINAL_TOKENS = frozenset({STATUS_DONE, STATUS_FAILED, STATUS_INVALID_REQUEST, STATUS_NOT_FOUND, STATUS_ERROR})


@dataclass(frozen=True)
class StepResult:
    status: str
    http_status: int
    job_id: str
    retry_after_s: int | None = None
    detail: str = ""

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_TOKENS

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "retry_after_s": self.retry_after_s,
            "detail": self.detail,
        }


class TenderReviewPipeline:
    def __init__(
        self,
        *,
        jobs_repository: Any,
        results_repository: Any,
        events: JobEventLogger,
        storage: Any,
        config: PipelineConfig | None = None,
        structuring_client: Any | None = None,
        reviewer: Callable[..., tuple[dict[str, Any], Any]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._jobs = jobs_repository
        self._results = results_repository
        self._events = events
        self._storage = storage
        self._config = config or PipelineConfig()
        self._structuring_client = structuring_client
        self._reviewer = reviewer
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_store(
        cls,
        store: Any,
        *,
        storage: Any,
        config: PipelineConfig | None = None,
        **kwargs: Any,
    ) -> TenderReviewPipeline:
        clock = kwargs.pop("clock", None)
        return cls(
            jobs_repository=store.jobs,
            results_repository=store.results,
            events=JobEventLogger(events_repository=store.events, clock=clock),
            storage=storage,
            config=config,
            clock=clock,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def advance(self, job_id: str | None) -> StepResult:
        job_id = str(job_id or "").strip()
        if not job_id:
            return StepResult(STATUS_INVALID_REQUEST, 400, "", detail="job_id is required")

        job = self._jobs.get(job_id=job_id)
        if job is None:
            return StepResult(STATUS_NOT_FOUND, 404, job_id, detail="job not found")

        status = str(job.get("status") or "")
        if status in TERMINAL_STATUSES:
            return StepResult(status, 200, job_id, detail="job already finished")

        if status == "queued":
            if not self._jobs.claim(job_id=job_id):
                return StepResult(
                    STATUS_ALREADY_CLAIMED,
                    409,
                    job_id,
                    retry_after_s=self._config.followup_delay_seconds,
                    detail="job claimed by another invocation",
                )
            job["status"] = "processing"
            self._events.info(job, "job_claimed", "Job claimed and processing started")

        try:
            return self._run_stages(job)
        except ApiError as exc:
            return self._fail(job, exc)
        except Exception as exc:
            logger.exception("pipeline step crashed job=%s", job_id)
            return self._fail(job, PipelineStepError(code="PIPELINE_STEP_FAILED", message=str(exc), http_status=500))

    def _run_stages(self, job: dict[str, Any]) -> StepResult:
        result = self._results.get(job_id=job["id"]) or {}
        state = decode_extraction_state(result.get("extracted_text"))

        extracted_now = False
        if isinstance(state, ReadyExtraction):
            if not (job.get("pipeline") or {}).get("extract"):
                self._events.info(job, "extract_fast_path", "Using pre-extracted text (fast path)", chars=len(state.text))
                self._jobs.update_pipeline_section(
                    job_id=job["id"],
                    section="extract",
                    values={"mode": "client", "finished_at": self._clock().isoformat()},
                )
                job.setdefault("pipeline", {})["extract"] = {"mode": "client"}
        else:
            outcome = self._extract(job, state)
            if isinstance(outcome, StepResult):
                return outcome
            state = outcome
            extracted_now = True
            if self._config.split_stages:
                return StepResult(
                    STATUS_EXTRACTED_SCHEDULED,
                    202,
                    job["id"],
                    retry_after_s=self._config.followup_delay_seconds,
                    detail="extraction stored; reasoning deferred",
                )

        return self._reason(job, state.text, extracted_now=extracted_now)

    def _fail(self, job: dict[str, Any], exc: ApiError) -> StepResult:
        self._events.error(job, "job_failed", exc.message, code=exc.code)
        try:
            self._jobs.update_status(
                job_id=job["id"],
                status="failed",
                error_message=f"{exc.code}: {exc.message}"[:1000],
            )
        except Exception as persist_exc:
            logger.exception("marking job failed did not persist job=%s", job["id"])
            return StepResult(STATUS_ERROR, 500, job["id"], detail=str(persist_exc))
        return StepResult(STATUS_FAILED, 200, job["id"], detail=exc.code)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _structuring(self) -> Any:
        if self._structuring_client is None:
            self._structuring_client = create_structuring_client_from_env()
        return self._structuring_client

    def _extract(self, job: dict[str, Any], state: ExtractionState | None) -> StepResult | ReadyExtraction:
        if self._config.mock_extract:
            self._events.info(job, "extract_mock", "Mock extract enabled")
            text = mock_extracted_text()
            self._save_ready(job, text, mode="mock", polls=0)
            return ReadyExtraction(text=text)
        if isinstance(state, PendingExtraction):
            return self._poll(job, state)
        return self._submit(job)

    def _submit(self, job: dict[str, Any]) -> StepResult:
        client = self._structuring()
        try:
            file_bytes = self._storage.download(storage_uri=str(job.get("file_path") or ""))
        except PipelineStepError:
            self._events.error(job, "storage_download_failed", "Storage download failed", file_path=job.get("file_path"))
            raise

        try:
            submitted = client.submit(
                file_bytes=file_bytes,
                filename=str(job.get("file_name") or "document"),
                content_type=content_type_for_source(str(job.get("source_type") or "")),
            )
        except ApiError as exc:
            raise PipelineStepError(
                code="EXTRACTION_FAILED",
                message=f"structuring submit failed: {exc.message}",
            ) from exc

        now = self._clock()
        pending = PendingExtraction(
            external_job_id=submitted.job_id,
            external_file_id=submitted.file_id,
            poll_count=0,
            submitted_at=now.isoformat(),
        )
        self._results.upsert(
            job_id=job["id"],
            user_id=str(job.get("user_id") or ""),
            values={"extracted_text": encode_extraction_state(pending)},
        )
        self._jobs.update_pipeline_section(
            job_id=job["id"],
            section="extract",
            values={"mode": "structuring", "submitted_at": now.isoformat(), "polls": 0, "external_job_id": submitted.job_id},
        )
        self._events.info(
            job,
            "extract_started",
            "Unstructured extract started",
            external_job_id=submitted.job_id,
            bytes=len(file_bytes),
        )
        return StepResult(
            STATUS_SUBMITTED,
            202,
            job["id"],
            retry_after_s=self._config.followup_delay_seconds,
            detail=submitted.job_id,
        )

    def _poll(self, job: dict[str, Any], pending: PendingExtraction) -> StepResult | ReadyExtraction:
        cfg = self._config
        elapsed = pending.elapsed_minutes(self._clock())
        if elapsed >= cfg.max_extract_minutes or pending.poll_count >= cfg.max_extract_polls:
            raise PipelineStepError(
                code="EXTRACTION_TIMEOUT",
                message=f"extraction not finished after {pending.poll_count} polls in {elapsed:.1f} minutes",
                http_status=504,
            )

        client = self._structuring()
        try:
            polled = client.poll(job_id=pending.external_job_id)
        except ApiError as exc:
            if not exc.retryable:
                raise PipelineStepError(code="EXTRACTION_FAILED", message=f"structuring poll failed: {exc.message}") from exc
            self._events.warn(job, "extract_poll_retry", "Unstructured poll failed, will retry", code=exc.code)
            return self._still_running(job, pending.next_poll())

        if polled.status == "running":
            return self._still_running(job, pending.next_poll(file_id=polled.file_id))
        if polled.status == "failed":
            raise PipelineStepError(code="EXTRACTION_FAILED", message=f"structuring job failed: {polled.detail}")

        file_id = polled.file_id or pending.external_file_id
        if not file_id:
            raise PipelineStepError(code="EXTRACTION_FAILED", message="structuring job finished without a file id")
        try:
            elements = client.download(job_id=pending.external_job_id, file_id=file_id)
        except ApiError as exc:
            raise PipelineStepError(
                code="EXTRACTION_FAILED",
                message=f"structuring download failed: {exc.message}",
            ) from exc

        text = build_anchored_text(elements)
        if not text:
            raise PipelineStepError(code="EXTRACTION_FAILED", message="structuring returned no text")
        self._save_ready(job, text, mode="structuring", polls=pending.poll_count + 1)
        self._events.info(
            job,
            "extract_completed",
            "Unstructured extract completed",
            chars=len(text),
            elements=len(elements),
        )
        return ReadyExtraction(text=text)

    def _still_running(self, job: dict[str, Any], pending: PendingExtraction) -> StepResult:
        self._results.upsert(
            job_id=job["id"],
            user_id=str(job.get("user_id") or ""),
            values={"extracted_text": encode_extraction_state(pending)},
        )
        self._jobs.update_pipeline_section(job_id=job["id"], section="extract", values={"polls": pending.poll_count})
        return StepResult(
            STATUS_POLLING,
            202,
            job["id"],
            retry_after_s=self._config.followup_delay_seconds,
            detail=f"poll {pending.poll_count}",
        )

    def _save_ready(self, job: dict[str, Any], text: str, *, mode: str, polls: int) -> None:
        self._results.upsert(
            job_id=job["id"],
            user_id=str(job.get("user_id") or ""),
            values={"extracted_text": encode_extraction_state(ReadyExtraction(text=text))},
        )
        self._jobs.update_pipeline_section(
            job_id=job["id"],
            section="extract",
            values={"mode": mode, "polls": polls, "finished_at": self._clock().isoformat()},
        )

    # ------------------------------------------------------------------
    # Reasoning
    # ------------------------------------------------------------------

    def _reason(self, job: dict[str, Any], text: str, *, extracted_now: bool) -> StepResult:
        cfg = self._config
        lock_state = dict((job.get("pipeline") or {}).get(LOCK_SECTION) or {})
        lease = ReasoningLease(
            jobs_repository=self._jobs,
            job_id=job["id"],
            policy=LockPolicy(
                ttl_seconds=cfg.lock_ttl_seconds,
                cooldown_seconds=cfg.cooldown_seconds,
                max_attempts=cfg.max_reasoning_attempts,
            ),
            clock=self._clock,
        )
        decision = lease.acquire(lock_state)

        if decision == LOCK_EXHAUSTED:
            raise PipelineStepError(
                code="REASONING_ATTEMPTS_EXHAUSTED",
                message=(
                    f"reasoning gave up after {lock_state.get('attempts')} attempts; "
                    f"last error: {lock_state.get('last_error') or 'none recorded'}"
                ),
            )
        if decision in (LOCK_IN_PROGRESS, LOCK_COOLDOWN):
            token = STATUS_EXTRACTED_SCHEDULED if extracted_now else decision
            delay = cfg.cooldown_seconds if decision == LOCK_COOLDOWN else cfg.followup_delay_seconds
            return StepResult(token, 202, job["id"], retry_after_s=delay, detail=decision)

        with lease:
            review = self._review(job, text)
            self._save_results(job, review)

        if not self._jobs.update_status(job_id=job["id"], status="done"):
            current = self._jobs.get(job_id=job["id"]) or {}
            logger.warning("job left processing before completion job=%s status=%s", job["id"], current.get("status"))
            return StepResult(str(current.get("status") or STATUS_ERROR), 200, job["id"], detail="status changed concurrently")
        self._events.info(job, "job_completed", "Job completed", attempt=lease.attempt)
        return StepResult(STATUS_DONE, 200, job["id"])

    def _review(self, job: dict[str, Any], text: str) -> dict[str, Any]:
        cfg = self._config
        candidates = build_evidence_candidates(text, **cfg.evidence_options())
        self._jobs.update_pipeline_section(
            job_id=job["id"],
            section="evidence",
            values={"count": len(candidates), "candidates": [c.as_dict() for c in candidates]},
        )
        self._events.info(job, "evidence_built", "Evidence candidates built", count=len(candidates))

        if cfg.mock_ai:
            self._events.info(job, "ai_mock", "Mock AI enabled")
            review = normalize_review(mock_review(source_text=text, candidates=candidates))
        else:
            clipped, estimate = prepare_model_input(
                text=text,
                model=cfg.model,
                max_input_chars=cfg.max_input_chars,
                max_output_tokens=cfg.max_output_tokens,
                max_usd=cfg.max_usd_per_job,
            )
            self._jobs.update_pipeline_section(job_id=job["id"], section="cost", values=estimate.as_dict())
            if estimate.truncated:
                self._events.warn(
                    job,
                    "source_truncated",
                    "Source text truncated for AI",
                    original_chars=len(text),
                    sent_chars=estimate.input_chars,
                )
            if estimate.exceeds_cap:
                self._events.error(
                    job,
                    "cost_cap_exceeded",
                    "Job exceeds cost cap, reduce input or limits",
                    **estimate.as_dict(),
                )
            enforce_cost_cap(estimate)

            self._events.info(job, "ai_started", "OpenAI started", model=cfg.model, usd_est=round(estimate.usd_est, 6))
            review, usage = self._review_fn()(
                source_text=clipped,
                candidates=candidates,
                max_output_tokens=cfg.max_output_tokens,
            )
            self._events.info(job, "ai_completed", "OpenAI completed", **usage.as_dict())

        grounded, report = ground_review(review, candidates)
        self._events.info(job, "grounding_applied", "Grounding applied", **report.as_dict())
        return grounded

    def _review_fn(self) -> Callable[..., tuple[dict[str, Any], Any]]:
        if self._reviewer is None:
            provider = provider_config_from_env(model=self._config.model, fallback_model=self._config.fallback_model)
            self._reviewer = functools.partial(llm_review_tender, config=provider)
        return self._reviewer

    def _save_results(self, job: dict[str, Any], review: dict[str, Any]) -> None:
        try:
            self._results.upsert(
                job_id=job["id"],
                user_id=str(job.get("user_id") or ""),
                values={
                    "executive_summary": review["executive_summary"],
                    "checklist": review["checklist"],
                    "risks": review["risks"],
                    "clarifications": review["buyer_questions"],
                    "proposal_draft": review["proposal_draft"],
                },
            )
        except Exception as exc:
            self._events.error(job, "results_save_failed", "Saving results failed", error=str(exc))
            raise PipelineStepError(
                code="RESULT_PERSIST_FAILED",
                message=f"saving results failed: {exc}",
                http_status=500,
            ) from exc
