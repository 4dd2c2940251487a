"""Extraction state stored in the job result's `extracted_text` slot.

The slot holds either final anchored text or a pending marker for an
in-flight structuring job. Markers are a fixed prefix followed by JSON so that
readers of the plain text column can tell the two apart; the marker is
overwritten by final text in a single upsert.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Union

from tender_review.errors import PipelineStepError

PENDING_MARKER_PREFIX = "TP_EXTRACTION_PENDING::"


@dataclass(frozen=True)
class PendingExtraction:
    external_job_id: str
    external_file_id: str | None
    poll_count: int
    submitted_at: str

    def submitted_at_dt(self) -> datetime:
        dt = datetime.fromisoformat(self.submitted_at)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt

    def elapsed_minutes(self, now: datetime) -> float:
        return (now - self.submitted_at_dt()).total_seconds() / 60.0

    def next_poll(self, *, file_id: str | None = None) -> PendingExtraction:
        return replace(
            self,
            poll_count=self.poll_count + 1,
            external_file_id=file_id or self.external_file_id,
        )


@dataclass(frozen=True)
class ReadyExtraction:
    text: str


ExtractionState = Union[PendingExtraction, ReadyExtraction]


def encode_extraction_state(state: ExtractionState) -> str:
    if isinstance(state, ReadyExtraction):
        return state.text
    payload = {
        "external_job_id": state.external_job_id,
        "external_file_id": state.external_file_id,
        "poll_count": state.poll_count,
        "submitted_at": state.submitted_at,
    }
    return PENDING_MARKER_PREFIX + json.dumps(payload, ensure_ascii=True, sort_keys=True)


def decode_extraction_state(raw: str | None) -> ExtractionState | None:
    """Return None for an empty slot, Pending for a marker, Ready otherwise."""
    text = str(raw or "").strip()
    if not text:
        return None
    if not text.startswith(PENDING_MARKER_PREFIX):
        return ReadyExtraction(text=text)
    try:
        data = json.loads(text[len(PENDING_MARKER_PREFIX) :])
        return PendingExtraction(
            external_job_id=str(data["external_job_id"]),
            external_file_id=str(data["external_file_id"]) if data.get("external_file_id") else None,
            poll_count=int(data.get("poll_count") or 0),
            submitted_at=str(data["submitted_at"]),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        raise PipelineStepError(
            code="EXTRACTION_MARKER_INVALID",
            message=f"unreadable extraction marker: {exc}",
            http_status=500,
        ) from exc
