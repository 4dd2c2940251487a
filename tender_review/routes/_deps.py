from __future__ import annotations

import hmac
import os
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from tender_review.errors import ApiError
from tender_review.pipeline import TenderReviewPipeline
from tender_review.pipeline_config import PipelineConfig
from tender_review.schemas import error_envelope
from tender_review.store import store


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def require_pipeline_secret(provided: str | None) -> None:
    expected = os.environ.get("PIPELINE_SHARED_SECRET", "").strip()
    if not expected:
        return
    if not provided or not hmac.compare_digest(provided.strip(), expected):
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="invalid pipeline secret",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )


def build_pipeline() -> TenderReviewPipeline:
    """Fresh pipeline per invocation so configuration is read once per call."""
    return TenderReviewPipeline.from_store(
        store,
        storage=store.object_storage,
        config=PipelineConfig.from_env(),
    )
