from __future__ import annotations

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from tender_review.errors import ApiError, job_not_found
from tender_review.pipeline import STATUS_ERROR, STATUS_INVALID_REQUEST, STATUS_NOT_FOUND
from tender_review.routes import _deps
from tender_review.schemas import ProcessJobRequest, success_envelope

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/process-job")
def process_job(
    payload: ProcessJobRequest,
    request: Request,
    x_pipeline_secret: str | None = Header(default=None, alias="x-pipeline-secret"),
):
    _deps.require_pipeline_secret(x_pipeline_secret)
    result = _deps.build_pipeline().advance(payload.job_id)
    if result.status == STATUS_INVALID_REQUEST:
        raise ApiError(
            code="REQ_VALIDATION_FAILED",
            message=result.detail,
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    if result.status == STATUS_NOT_FOUND:
        raise job_not_found(result.job_id)
    if result.status == STATUS_ERROR:
        raise ApiError(
            code="PIPELINE_PERSIST_FAILED",
            message=result.detail,
            error_class="transient",
            retryable=True,
            http_status=500,
        )
    return JSONResponse(
        status_code=result.http_status,
        content=success_envelope(result.as_dict(), _deps.trace_id_from_request(request), message=result.status),
    )
