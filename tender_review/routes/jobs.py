from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request, Response

from tender_review.errors import ApiError
from tender_review.export import EXPORT_TYPES, export_filename, invalid_export_type, render_csv
from tender_review.extraction_state import ReadyExtraction, decode_extraction_state
from tender_review.routes._deps import trace_id_from_request
from tender_review.schemas import success_envelope
from tender_review.store import store

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


def _result_not_ready(job: dict[str, Any]) -> ApiError:
    return ApiError(
        code="RESULT_NOT_READY",
        message=f"job {job['id']} is {job.get('status')}; results are available once done",
        error_class="business_rule",
        retryable=True,
        http_status=409,
    )


@router.get("/{job_id}")
def get_job(job_id: str, request: Request):
    return success_envelope(store.get_job(job_id), trace_id_from_request(request))


@router.get("/{job_id}/result")
def get_job_result(job_id: str, request: Request):
    job = store.get_job(job_id)
    if job.get("status") != "done":
        raise _result_not_ready(job)
    result = store.results.get(job_id=job_id) or {}
    state = decode_extraction_state(result.get("extracted_text"))
    data = {
        "job_id": job_id,
        "status": job["status"],
        "extracted_chars": len(state.text) if isinstance(state, ReadyExtraction) else 0,
        "executive_summary": result.get("executive_summary") or {},
        "checklist": result.get("checklist") or [],
        "risks": result.get("risks") or [],
        "clarifications": result.get("clarifications") or [],
        "proposal_draft": result.get("proposal_draft") or "",
    }
    return success_envelope(data, trace_id_from_request(request))


@router.get("/{job_id}/events")
def list_job_events(job_id: str, request: Request):
    store.get_job(job_id)
    items = store.events.list_for_job(job_id=job_id)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/{job_id}/export/csv")
def export_job_csv(job_id: str, requested_type: str = Query(default="requirements", alias="type")):
    export_type = requested_type.strip().lower()
    if export_type not in EXPORT_TYPES:
        raise invalid_export_type(requested_type)
    job = store.get_job(job_id)
    if job.get("status") != "done":
        raise _result_not_ready(job)
    body = render_csv(export_type, job=job, result=store.results.get(job_id=job_id) or {})
    filename = export_filename(export_type=export_type, job=job)
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
