"""Client for the hosted document structuring job API.

The service runs partitioning as a background job:

  POST {base}/jobs/                     multipart upload, returns the job id
  GET  {base}/jobs/{id}                 job status and input file ids
  GET  {base}/jobs/{id}/download        element list for one input file

Each method performs a single HTTP round trip. Waiting for completion is
left to the caller, which re-polls on a later pipeline invocation.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib import parse, request
from urllib.error import HTTPError, URLError

from tender_review.errors import ApiError, PipelineStepError

logger = logging.getLogger(__name__)

STRUCTURING_API_BASE = "https://platform.unstructuredapp.io/api/v1"

_SUCCEEDED = {"COMPLETED", "SUCCEEDED", "FINISHED"}
_FAILED = {"FAILED", "STOPPED", "CANCELLED", "ERROR"}


@dataclass
class StructuringApiConfig:
    api_key: str
    api_base: str = STRUCTURING_API_BASE
    timeout_s: float = 30.0
    strategy: str = "hi_res"


@dataclass(frozen=True)
class SubmitResult:
    job_id: str
    file_id: str | None = None


@dataclass(frozen=True)
class PollResult:
    status: str  # running | succeeded | failed
    file_id: str | None = None
    detail: str = ""


def _first_file_id(data: Mapping[str, Any]) -> str | None:
    ids = data.get("input_file_ids") or data.get("file_ids") or []
    if isinstance(ids, list) and ids:
        return str(ids[0])
    file_id = data.get("file_id")
    return str(file_id) if file_id else None


def _encode_multipart(
    *,
    fields: dict[str, str],
    file_field: str,
    filename: str,
    content_type: str,
    file_bytes: bytes,
) -> tuple[bytes, str]:
    boundary = f"----tender-review-{uuid.uuid4().hex}"
    chunks: list[bytes] = []
    for name, value in fields.items():
        chunks.append(
            f'--{boundary}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n{value}\r\n'.encode("utf-8")
        )
    chunks.append(
        (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{file_field}"; filename="{filename}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode("utf-8")
    )
    chunks.append(file_bytes)
    chunks.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


class StructuringApiClient:
    def __init__(self, config: StructuringApiConfig) -> None:
        if not config.api_key:
            raise ApiError(
                code="CONFIG_MISSING",
                message="UNSTRUCTURED_API_KEY is required for structuring extraction",
                error_class="config",
                retryable=False,
                http_status=500,
            )
        self._config = config

    def _make_request(
        self,
        *,
        endpoint: str,
        method: str = "GET",
        body: bytes | None = None,
        content_type: str | None = None,
    ) -> Any:
        url = f"{self._config.api_base.rstrip('/')}{endpoint}"
        headers = {
            "accept": "application/json",
            "unstructured-api-key": self._config.api_key,
        }
        if content_type:
            headers["Content-Type"] = content_type
        req = request.Request(url, data=body, method=method, headers=headers)
        try:
            with request.urlopen(req, timeout=self._config.timeout_s) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as e:
            raw = e.read().decode("utf-8", errors="replace")
            raise ApiError(
                code="STRUCTURING_UPSTREAM_ERROR",
                message=f"structuring API HTTP {e.code}: {raw[:600]}",
                error_class="transient" if e.code >= 500 or e.code == 429 else "external",
                retryable=e.code >= 500 or e.code == 429,
                http_status=502,
            ) from e
        except (URLError, OSError) as e:
            raise ApiError(
                code="STRUCTURING_UPSTREAM_UNAVAILABLE",
                message=f"structuring API unavailable: {e}",
                error_class="transient",
                retryable=True,
                http_status=503,
            ) from e
        except json.JSONDecodeError as e:
            raise PipelineStepError(
                code="STRUCTURING_RESPONSE_INVALID",
                message=f"structuring API returned non-JSON body: {e}",
            ) from e

    def submit(self, *, file_bytes: bytes, filename: str, content_type: str) -> SubmitResult:
        request_data = {
            "template_id": self._config.strategy,
            "job_type": "ephemeral",
        }
        body, multipart_type = _encode_multipart(
            fields={"request_data": json.dumps(request_data)},
            file_field="input_files",
            filename=filename,
            content_type=content_type,
            file_bytes=file_bytes,
        )
        data = self._make_request(endpoint="/jobs/", method="POST", body=body, content_type=multipart_type)
        job_id = str((data or {}).get("id") or (data or {}).get("job_id") or "")
        if not job_id:
            raise PipelineStepError(
                code="STRUCTURING_RESPONSE_INVALID",
                message="structuring API did not return a job id",
            )
        logger.info("structuring job submitted job_id=%s bytes=%s", job_id, len(file_bytes))
        return SubmitResult(job_id=job_id, file_id=_first_file_id(data))

    def poll(self, *, job_id: str) -> PollResult:
        data = self._make_request(endpoint=f"/jobs/{parse.quote(job_id)}") or {}
        status = str(data.get("status") or "").upper()
        if status in _SUCCEEDED:
            return PollResult(status="succeeded", file_id=_first_file_id(data))
        if status in _FAILED:
            return PollResult(status="failed", file_id=_first_file_id(data), detail=str(data.get("message") or status))
        return PollResult(status="running", file_id=_first_file_id(data))

    def download(self, *, job_id: str, file_id: str) -> list[dict[str, Any]]:
        query = parse.urlencode({"file_id": file_id})
        data = self._make_request(endpoint=f"/jobs/{parse.quote(job_id)}/download?{query}")
        if isinstance(data, dict) and isinstance(data.get("elements"), list):
            data = data["elements"]
        if not isinstance(data, list):
            raise PipelineStepError(
                code="STRUCTURING_RESPONSE_INVALID",
                message="structuring download is not an element list",
            )
        return [x for x in data if isinstance(x, dict)]


def create_structuring_client_from_env(environ: Mapping[str, str] | None = None) -> StructuringApiClient:
    env = os.environ if environ is None else environ
    api_key = str(env.get("UNSTRUCTURED_API_KEY") or env.get("TP_UNSTRUCTURED_API_KEY") or "").strip()
    return StructuringApiClient(
        StructuringApiConfig(
            api_key=api_key,
            api_base=str(env.get("UNSTRUCTURED_API_URL", "")).strip() or STRUCTURING_API_BASE,
            timeout_s=float(str(env.get("UNSTRUCTURED_TIMEOUT_S", "30")).strip() or 30),
        )
    )
