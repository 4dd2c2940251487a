"""CSV exports of a finished review.

Every row carries a stable `ref_key` derived from the job id, the export type
and the normalised item text, so re-exports of the same review line up in
spreadsheets that track owner / status columns by key.
"""

from __future__ import annotations

import csv
import io
import re
from collections.abc import Iterable
from typing import Any

from tender_review.errors import ApiError
from tender_review.evidence import NOT_FOUND_SOURCE, EvidenceCandidate

EXPORT_TYPES = ("overview", "requirements", "risks", "clarifications", "outline")

_HEADERS: dict[str, list[str]] = {
    "overview": ["field", "value"],
    "requirements": ["ref_key", "type", "requirement", "owner", "status", "due_at", "notes", "evidence_ids", "pages"],
    "risks": ["ref_key", "severity", "risk", "detail", "owner", "status", "due_at", "notes", "evidence_ids", "pages"],
    "clarifications": ["ref_key", "question", "owner", "status", "due_at", "notes"],
    "outline": ["ref_key", "section", "bullets", "owner", "status", "due_at", "notes"],
}

_WS_RE = re.compile(r"\s+")
_OUTLINE_LINE_RE = re.compile(r"^\s*(\d+)[.)]\s+(.+?)\s*$")
_FILENAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 16777619


def fnv1a32(text: str) -> int:
    h = FNV_OFFSET_BASIS
    for ch in text:
        h ^= ord(ch)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def _norm(text: Any) -> str:
    return _WS_RE.sub(" ", str(text or "")).strip()


def stable_ref_key(*, job_id: str, export_type: str, text: str, extra: str = "") -> str:
    seed = f"{job_id}|{export_type}|{_norm(text).lower()}|{_norm(extra).lower()}"
    return f"{export_type}_{fnv1a32(seed):08x}"


def invalid_export_type(export_type: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=f"invalid export type: {export_type}; allowed: {', '.join(EXPORT_TYPES)}",
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def _pages_for(ids: Iterable[str], pages_by_id: dict[str, int | None]) -> str:
    pages = sorted({p for p in (pages_by_id.get(i) for i in ids) if p is not None})
    return ";".join(str(p) for p in pages)


def outline_sections(proposal_draft: str) -> list[tuple[str, list[str]]]:
    """Numbered outline lines with any indented or bulleted lines that follow them."""
    sections: list[tuple[str, list[str]]] = []
    for raw in str(proposal_draft or "").splitlines():
        match = _OUTLINE_LINE_RE.match(raw)
        if match:
            sections.append((match.group(2), []))
            continue
        line = raw.strip()
        if sections and raw[:1].isspace() and line:
            sections[-1][1].append(line.lstrip("-• ").strip())
        elif not line or not sections:
            continue
        else:
            # A flush-left unnumbered line ends the outline block.
            break
    return sections


def _rows(export_type: str, *, job: dict[str, Any], result: dict[str, Any]) -> list[list[str]]:
    job_id = str(job.get("id") or "")
    candidates = [
        EvidenceCandidate.from_dict(x)
        for x in ((job.get("pipeline") or {}).get("evidence") or {}).get("candidates") or []
        if isinstance(x, dict)
    ]
    pages_by_id = {c.id: c.page for c in candidates}
    summary = result.get("executive_summary") or {}

    if export_type == "overview":
        return [
            ["Tender", str(job.get("file_name") or "")],
            ["Decision", str(summary.get("decisionBadge") or "")],
            ["Why", str(summary.get("decisionLine") or "")],
            ["Submission deadline", str(summary.get("submissionDeadline") or NOT_FOUND_SOURCE)],
        ]

    if export_type == "requirements":
        rows = []
        for item in result.get("checklist") or []:
            ids = [str(x) for x in item.get("evidence_ids") or []]
            kind = str(item.get("type") or "")
            text = str(item.get("text") or "")
            rows.append(
                [
                    stable_ref_key(job_id=job_id, export_type="requirements", text=text, extra=kind),
                    kind,
                    text,
                    "",
                    "",
                    "",
                    "",
                    ";".join(ids),
                    _pages_for(ids, pages_by_id),
                ]
            )
        return rows

    if export_type == "risks":
        rows = []
        for risk in result.get("risks") or []:
            ids = [str(x) for x in risk.get("evidence_ids") or []]
            title = str(risk.get("title") or "")
            rows.append(
                [
                    stable_ref_key(job_id=job_id, export_type="risks", text=title, extra=str(risk.get("detail") or "")),
                    str(risk.get("severity") or ""),
                    title,
                    str(risk.get("detail") or ""),
                    "",
                    "",
                    "",
                    "",
                    ";".join(ids),
                    _pages_for(ids, pages_by_id),
                ]
            )
        return rows

    if export_type == "clarifications":
        return [
            [stable_ref_key(job_id=job_id, export_type="clarifications", text=str(q)), str(q), "", "", "", ""]
            for q in result.get("clarifications") or []
        ]

    return [
        [
            stable_ref_key(job_id=job_id, export_type="outline", text=section),
            section,
            " | ".join(bullets),
            "",
            "",
            "",
            "",
        ]
        for section, bullets in outline_sections(str(result.get("proposal_draft") or ""))
    ]


def export_filename(*, export_type: str, job: dict[str, Any]) -> str:
    base = str(job.get("file_name") or "tender").rsplit(".", 1)[0]
    base = _FILENAME_UNSAFE_RE.sub("_", base).strip("_") or "tender"
    return f"TenderPilot_{export_type}_{base}_{job.get('id')}.csv"


def render_csv(export_type: str, *, job: dict[str, Any], result: dict[str, Any]) -> str:
    if export_type not in EXPORT_TYPES:
        raise invalid_export_type(export_type)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(_HEADERS[export_type])
    writer.writerows(_rows(export_type, job=job, result=result))
    return buffer.getvalue()
