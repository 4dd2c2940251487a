from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

EVENT_LEVELS = ("info", "warn", "error")
_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class JobEventLogger:
    """Append structured per-job events and mirror them to the module logger.

    Event writes are best-effort: a failed insert is reported through the
    logger and never changes the outcome of the pipeline step.
    """

    def __init__(self, *, events_repository: Any, clock: Callable[[], datetime] | None = None) -> None:
        self._events = events_repository
        self._clock = clock or (lambda: datetime.now(UTC))

    def log(
        self,
        job: dict[str, Any],
        level: str,
        event_type: str,
        message: str,
        meta: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        if level not in EVENT_LEVELS:
            raise ValueError(f"unsupported event level: {level}")
        event = {
            "event_id": f"evt_{uuid.uuid4().hex[:16]}",
            "job_id": str(job.get("id", "")),
            "user_id": str(job.get("user_id", "")),
            "level": level,
            "event_type": event_type,
            "message": message,
            "meta": dict(meta or {}),
            "created_at": self._clock().isoformat(),
        }
        logger.log(_LOG_LEVELS[level], "job=%s %s: %s %s", event["job_id"], event_type, message, event["meta"])
        try:
            return self._events.append(event=event)
        except Exception as exc:
            logger.warning("job event insert failed job=%s type=%s: %s", event["job_id"], event_type, exc)
            return None

    def info(self, job: dict[str, Any], event_type: str, message: str, **meta: Any) -> dict[str, Any] | None:
        return self.log(job, "info", event_type, message, meta)

    def warn(self, job: dict[str, Any], event_type: str, message: str, **meta: Any) -> dict[str, Any] | None:
        return self.log(job, "warn", event_type, message, meta)

    def error(self, job: dict[str, Any], event_type: str, message: str, **meta: Any) -> dict[str, Any] | None:
        return self.log(job, "error", event_type, message, meta)
