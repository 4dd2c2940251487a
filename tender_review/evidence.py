"""Evidence candidates: short, citable excerpts scored for tender relevance.

The builder favours precision. A missed clause only means the model has less
to cite; a weak excerpt backing a MUST item would defeat grounding.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, replace
from typing import Any

from tender_review.anchoring import is_anchor_marker

NOT_FOUND_SOURCE = "Not found in extracted text."
MIN_EXCERPT_CHARS = 30
TITLE_LIKE_MAX_CHARS = 140
ANCHOR_CAPS_MIN_CHARS = 12
ANCHOR_CAPS_MAX_CHARS = 120


# ---------------------------------------------------------------------------
# Scoring vocabulary
# ---------------------------------------------------------------------------

_NORMATIVE_RE = re.compile(
    r"\b(shall not|shall|must not|must|required|is required|are required|will be rejected|disqualified|rejection)\b",
    re.IGNORECASE,
)
_DEADLINE_RE = re.compile(r"\b(deadline|closing|submit|delivered|on or before|no later than)\b", re.IGNORECASE)
_DATE_RE = re.compile(
    r"\b("
    r"\d{1,2}\s+(jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\s+\d{4}"
    r"|\d{4}-\d{2}-\d{2}"
    r"|\d{1,2}[/.]\d{1,2}[/.]\d{4}"
    r")\b",
    re.IGNORECASE,
)
_TIME_RE = re.compile(r"\b(\d{1,2}[:.]\d{2}\s*(am|pm)?|\d{1,2}\s*(am|pm))\b", re.IGNORECASE)
_SUBMISSION_RE = re.compile(
    r"\b(sealed envelope|envelope|copies|original|physically|electronic|online portal|upload|address)\b"
    r"|\bp\.o\. box\b|\bpo box\b",
    re.IGNORECASE,
)
_SECURITY_RE = re.compile(r"\b(tender security|bid security|tender-secure|guarantee|security)\b", re.IGNORECASE)
_MONEY_RE = re.compile(r"\b(kshs?|kes|eur|usd|gbp)\b|\b\d{1,3}(?:,\d{3})+(?:\.\d+)?\b", re.IGNORECASE)
_NOT_PERMITTED_RE = re.compile(r"\bnot permitted\b", re.IGNORECASE)

# ---------------------------------------------------------------------------
# Structure patterns
# ---------------------------------------------------------------------------

_PAGE_MARKER_RE = re.compile(r"^\[page\s+(\d+)\]", re.IGNORECASE)
_ANCHOR_LINE_RE = re.compile(r"^(section|annex|appendix|part)\b", re.IGNORECASE)
_SECTION_START_RE = re.compile(r"^section\s+\w+", re.IGNORECASE)
_INVITATION_RE = re.compile(r"^invitation to tender", re.IGNORECASE)
_TOC_LEADER_RE = re.compile(r"\.\.{4,}")
_BULLET_RE = re.compile(r"^[•\-]\s+")
_TABLE_RE = re.compile(r"\btable\b|\S\s*\|\s*\S", re.IGNORECASE)
_NUMBERED_RE = re.compile(r"^\d+(?:\.\d+)*\.?\s")
_WS_RE = re.compile(r"\s+")
_RAW_LINE_RE = re.compile(r"[^\r\n]+")
_TITLE_PREFIXES = (
    "standard tender document",
    "tender document for",
    "request for",
    "invitation to tender",
)


def normalize_line(line: str) -> str:
    return _WS_RE.sub(" ", str(line or "")).strip()


def is_toc_like(line: str) -> bool:
    return bool(_TOC_LEADER_RE.search(line)) or "table of contents" in line.lower()


def is_title_like(line: str) -> bool:
    text = line.strip()
    if not text:
        return False
    if text.lower().startswith(_TITLE_PREFIXES):
        return True
    return not _NORMATIVE_RE.search(text) and text == text.upper() and len(text) < TITLE_LIKE_MAX_CHARS


@dataclass(frozen=True)
class EvidenceCandidate:
    id: str
    excerpt: str
    page: int | None
    anchor: str | None
    kind: str
    score: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvidenceCandidate:
        page = data.get("page")
        return cls(
            id=str(data.get("id") or ""),
            excerpt=str(data.get("excerpt") or ""),
            page=int(page) if isinstance(page, (int, float)) and not isinstance(page, bool) else None,
            anchor=str(data["anchor"]) if data.get("anchor") else None,
            kind=str(data.get("kind") or "line"),
            score=int(data.get("score") or 0),
        )


class LineScorer:
    """Weighted vocabulary score for one normalized line."""

    weights: dict[str, int] = {
        "normative": 6,
        "deadline": 3,
        "date_or_time": 3,
        "submission": 2,
        "security": 2,
        "money": 1,
        "not_permitted": 2,
    }

    def score(self, line: str) -> int:
        total = 0
        if _NORMATIVE_RE.search(line):
            total += self.weights["normative"]
        if _DEADLINE_RE.search(line):
            total += self.weights["deadline"]
        if _DATE_RE.search(line) or _TIME_RE.search(line):
            total += self.weights["date_or_time"]
        if _SUBMISSION_RE.search(line):
            total += self.weights["submission"]
        if _SECURITY_RE.search(line):
            total += self.weights["security"]
        if _MONEY_RE.search(line):
            total += self.weights["money"]
        if _NOT_PERMITTED_RE.search(line):
            total += self.weights["not_permitted"]
        return total

    def kind(self, line: str) -> str:
        if _BULLET_RE.match(line):
            return "bullet"
        if _TABLE_RE.search(line):
            return "table_row"
        if _NUMBERED_RE.match(line) or _NORMATIVE_RE.search(line):
            return "clause"
        return "line"


class EvidenceCandidateBuilder:
    def __init__(
        self,
        *,
        scorer: LineScorer | None = None,
        max_candidates: int = 220,
        max_chars: int = 480,
        min_score: int = 5,
        scan_limit: int = 240,
        anchor_lookback: int = 8,
        page_lookback: int = 30,
        title_scan_lines: int = 80,
    ) -> None:
        self.scorer = scorer or LineScorer()
        self.max_candidates = max(1, int(max_candidates))
        self.max_chars = max(MIN_EXCERPT_CHARS, int(max_chars))
        self.min_score = int(min_score)
        self.scan_limit = max(self.max_candidates, int(scan_limit))
        self.anchor_lookback = max(0, int(anchor_lookback))
        self.page_lookback = max(0, int(page_lookback))
        self.title_scan_lines = max(0, int(title_scan_lines))

    def build(self, text: str) -> list[EvidenceCandidate]:
        source = str(text or "")
        spans = _line_spans(source)
        lines = [line for line, _, _ in spans]

        collected: list[EvidenceCandidate] = []
        seen: set[str] = set()
        for i in range(self._body_start(lines), len(lines)):
            line = lines[i]
            if is_anchor_marker(line) or is_toc_like(line) or is_title_like(line):
                continue
            score = self.scorer.score(line)
            if score < self.min_score:
                continue

            excerpt = self._excerpt(source, spans, i)
            if len(excerpt) < MIN_EXCERPT_CHARS or is_toc_like(excerpt) or is_title_like(excerpt):
                continue
            key = normalize_line(excerpt).lower()
            if key in seen:
                continue
            seen.add(key)

            collected.append(
                EvidenceCandidate(
                    id="",
                    excerpt=excerpt,
                    page=self._page(lines, i),
                    anchor=self._anchor(lines, i),
                    kind=self.scorer.kind(line),
                    score=score,
                )
            )
            if len(collected) >= self.scan_limit:
                break

        ranked = sorted(collected, key=lambda c: (-c.score, len(c.excerpt)))[: self.max_candidates]
        return [replace(c, id=f"E{idx:03d}") for idx, c in enumerate(ranked, start=1)]

    def _body_start(self, lines: list[str]) -> int:
        for i in range(min(len(lines), self.title_scan_lines)):
            if "table of contents" in lines[i].lower():
                return i + 1
            if _SECTION_START_RE.match(lines[i]) or _INVITATION_RE.match(lines[i]):
                return i
        return 0

    def _anchor(self, lines: list[str], i: int) -> str | None:
        for j in range(i, max(-1, i - self.anchor_lookback - 1), -1):
            line = lines[j]
            if _PAGE_MARKER_RE.match(line):
                continue
            if _ANCHOR_LINE_RE.match(line):
                return line
            if (
                line == line.upper()
                and ANCHOR_CAPS_MIN_CHARS <= len(line) <= ANCHOR_CAPS_MAX_CHARS
                and not is_toc_like(line)
            ):
                return line
        return None

    def _page(self, lines: list[str], i: int) -> int | None:
        for j in range(i, max(-1, i - self.page_lookback - 1), -1):
            match = _PAGE_MARKER_RE.match(lines[j])
            if match:
                return int(match.group(1))
        return None

    def _excerpt(self, source: str, spans: list[tuple[str, int, int]], i: int) -> str:
        # Line i plus its document neighbours, sliced from the source so the
        # excerpt is a literal substring of it. Inserted markers never join.
        first = last = i
        if i > 0 and self._joins_window(spans[i - 1][0]):
            first = i - 1
        if i + 1 < len(spans) and self._joins_window(spans[i + 1][0]):
            last = i + 1
        return source[spans[first][1] : spans[last][2]][: self.max_chars].strip()

    @staticmethod
    def _joins_window(line: str) -> bool:
        return not (is_anchor_marker(line) or is_toc_like(line) or is_title_like(line))


def _line_spans(text: str) -> list[tuple[str, int, int]]:
    """Non-blank lines as (normalized line, start, end) offsets into `text`."""
    spans: list[tuple[str, int, int]] = []
    for match in _RAW_LINE_RE.finditer(text):
        raw = match.group(0)
        line = normalize_line(raw)
        if not line:
            continue
        start = match.start() + len(raw) - len(raw.lstrip())
        end = match.end() - (len(raw) - len(raw.rstrip()))
        spans.append((line, start, end))
    return spans


def build_evidence_candidates(text: str, **options: Any) -> list[EvidenceCandidate]:
    return EvidenceCandidateBuilder(**options).build(text)


def normalized_document_text(text: str) -> str:
    """Whitespace-collapsed document text for previews."""
    return " ".join(x for x in (normalize_line(y) for y in str(text or "").splitlines()) if x)
