from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status

    def as_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "class": self.error_class,
            "retryable": self.retryable,
        }


class PipelineStepError(ApiError):
    """Permanent failure of one pipeline stage; the job ends in `failed`."""

    def __init__(self, *, code: str, message: str, http_status: int = 502) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="external",
            retryable=False,
            http_status=http_status,
        )


def job_not_found(job_id: str) -> ApiError:
    return ApiError(
        code="JOB_NOT_FOUND",
        message=f"job not found: {job_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )
