"""Anchored text built from structuring-service elements.

Each element is a mapping with `text`, an optional `metadata.page_number`
(or `page_num` / `page`) and an optional `type` / `category`. The output is a
single text blob with navigation markers inserted in document order:

  [PAGE 3]                      on every page change
  ANNEX: Annex B - Price Schedule
  SECTION 5 – Tenderer's Responsibilities
  SECTION 5.4 – Tenderer's Responsibilities
  SECTION: Instructions to Tenderers

Heading classification is delegated to an AnchorDetector so the heuristics can
be swapped or tested on their own.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

LABEL_MAX_CHARS = 140
SHORT_HEADING_MAX_CHARS = 90


# ---------------------------------------------------------------------------
# Heading patterns
# ---------------------------------------------------------------------------

_ANNEX_RE = re.compile(r"^(annex|appendix|schedule)\b", re.IGNORECASE)
_MAJOR_HEADING_RE = re.compile(r"^(\d+)\.\s+(.{3,})$")
_CLAUSE_RE = re.compile(r"^(\d+(?:\.\d+)+)\s+(.{3,})$")
_SECTION_KEYWORD_RES = [
    re.compile(r"^instructions to tenderers\b", re.IGNORECASE),
    re.compile(r"^instructions for (tenderers|bidders)\b", re.IGNORECASE),
    re.compile(r"^instructions to bidders\b", re.IGNORECASE),
    re.compile(r"^evaluation( criteria)?\b", re.IGNORECASE),
    re.compile(r"^submission( instructions)?\b", re.IGNORECASE),
    re.compile(r"^how to submit\b", re.IGNORECASE),
    re.compile(r"^eligibility\b", re.IGNORECASE),
    re.compile(r"^qualification\b", re.IGNORECASE),
    re.compile(r"^terms and conditions\b", re.IGNORECASE),
    re.compile(r"^contract(ual)?\b", re.IGNORECASE),
]
_TITLE_CATEGORY_HINTS = ("title", "header", "heading", "section", "subtitle")
_SENTENCE_END_RE = re.compile(r"[.!?]$")
_WS_RE = re.compile(r"\s+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_MARKER_LINE_RE = re.compile(r"^(?:\[PAGE \d+\]|ANNEX: .+|SECTION: .+|SECTION \d+(?:\.\d+)*(?: – .+)?)$")


def normalize_label(label: str) -> str:
    return _WS_RE.sub(" ", str(label or "")).strip()[:LABEL_MAX_CHARS]


def is_anchor_marker(line: str) -> bool:
    """True for lines inserted by build_anchored_text rather than taken from the document."""
    return bool(_MARKER_LINE_RE.match(str(line or "").strip()))


def element_page_number(element: Mapping[str, Any]) -> int | None:
    metadata = element.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        return None
    raw = metadata.get("page_number")
    if raw is None:
        raw = metadata.get("page_num")
    if raw is None:
        raw = metadata.get("page")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return int(value)


def element_category(element: Mapping[str, Any]) -> str:
    return str(element.get("type") or element.get("category") or "").lower()


@dataclass(frozen=True)
class AnchorMatch:
    """Classification of one element: annex, major, clause or heading."""

    kind: str
    label: str
    number: str | None = None


class AnchorDetector:
    """Regex heuristics for tender headings; first matching rule wins."""

    def detect(self, text: str, category: str = "") -> AnchorMatch | None:
        stripped = text.strip()
        if _ANNEX_RE.match(stripped):
            return AnchorMatch(kind="annex", label=stripped)

        major = _MAJOR_HEADING_RE.match(stripped)
        if major:
            return AnchorMatch(kind="major", label=major.group(2).strip(), number=major.group(1))

        clause = _CLAUSE_RE.match(stripped)
        if clause:
            return AnchorMatch(kind="clause", label=clause.group(2).strip(), number=clause.group(1))

        if any(hint in category for hint in _TITLE_CATEGORY_HINTS) or self.looks_like_section_heading(stripped):
            return AnchorMatch(kind="heading", label=stripped)
        return None

    @staticmethod
    def looks_like_section_heading(text: str) -> bool:
        if not text:
            return False
        if any(pattern.match(text) for pattern in _SECTION_KEYWORD_RES):
            return True
        punctuation = text.count(";") + text.count(":")
        return len(text) <= SHORT_HEADING_MAX_CHARS and not _SENTENCE_END_RE.search(text) and punctuation <= 1


def build_anchored_text(
    elements: Iterable[Mapping[str, Any]],
    *,
    detector: AnchorDetector | None = None,
) -> str:
    detector = detector or AnchorDetector()
    parts: list[str] = []
    last_page: int | None = None
    major_number: str | None = None
    major_title: str | None = None

    for element in elements:
        raw = element.get("text")
        text = raw.strip() if isinstance(raw, str) else ""
        if not text:
            continue

        page = element_page_number(element)
        if page is not None and page != last_page:
            parts.append(f"[PAGE {page}]")
            last_page = page

        match = detector.detect(text, element_category(element))
        if match is None:
            parts.append(text)
            continue

        if match.kind == "annex":
            parts.append(f"ANNEX: {normalize_label(match.label)}")
        elif match.kind == "major":
            major_number = match.number
            major_title = match.label
            parts.append(f"SECTION {match.number} – {normalize_label(match.label)}")
        elif match.kind == "clause":
            suffix = ""
            if major_number and major_title and str(match.number).startswith(f"{major_number}."):
                suffix = f" – {normalize_label(major_title)}"
            parts.append(f"SECTION {match.number}{suffix}")
        else:
            parts.append(f"SECTION: {normalize_label(match.label)}")
        parts.append(text)

    return _BLANK_RUN_RE.sub("\n\n", "\n\n".join(parts)).strip()
