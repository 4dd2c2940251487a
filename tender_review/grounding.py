"""Evidence grounding for model output.

Every MUST checklist item, risk and top-risk entry has to cite at least one
known evidence id. Claims that fail are demoted, never silently deleted:

- MUST without evidence becomes INFO, prefixed "Manual check: ".
- A risk or top risk without evidence becomes a buyer question.
- SHOULD / INFO keep their place and carry the not-found sentinel.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from tender_review.evidence import NOT_FOUND_SOURCE, EvidenceCandidate

MANUAL_CHECK_PREFIX = "Manual check: "
MANUAL_RISK_PREFIX = "Manual check (risk): "


@dataclass
class GroundingReport:
    musts_downgraded: int = 0
    unsupported_items: int = 0
    risks_converted: int = 0
    top_risks_converted: int = 0
    unknown_ids_dropped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "musts_downgraded": self.musts_downgraded,
            "unsupported_items": self.unsupported_items,
            "risks_converted": self.risks_converted,
            "top_risks_converted": self.top_risks_converted,
            "unknown_ids_dropped": self.unknown_ids_dropped,
        }


class EvidenceResolver:
    def __init__(self, candidates: Iterable[EvidenceCandidate]) -> None:
        self._by_id = {c.id: c for c in candidates if c.id}
        self.unknown_ids = 0

    def resolve(self, declared: Any) -> tuple[list[str], str]:
        """Return (known ids in first-seen order, source excerpt or sentinel)."""
        ids: list[str] = []
        if isinstance(declared, (list, tuple)):
            for raw in declared:
                ev_id = str(raw or "").strip()
                if ev_id not in self._by_id:
                    self.unknown_ids += 1
                    continue
                if ev_id not in ids:
                    ids.append(ev_id)
        if not ids:
            return [], NOT_FOUND_SOURCE
        return ids, self._by_id[ids[0]].excerpt


def _risk_question(risk: dict[str, Any]) -> str:
    title = str(risk.get("title") or "").strip()
    detail = str(risk.get("detail") or "").strip()
    body = f"{title} – {detail}" if title and detail else (title or detail)
    return f"{MANUAL_RISK_PREFIX}{body}"


def _append_question(questions: list[str], question: str) -> None:
    if question.lower() not in {q.lower() for q in questions}:
        questions.append(question)


def ground_review(
    review: dict[str, Any],
    candidates: Iterable[EvidenceCandidate],
) -> tuple[dict[str, Any], GroundingReport]:
    resolver = EvidenceResolver(candidates)
    report = GroundingReport()
    questions = [str(q) for q in review.get("buyer_questions") or [] if str(q).strip()]

    checklist: list[dict[str, Any]] = []
    for item in review.get("checklist") or []:
        ids, source = resolver.resolve(item.get("evidence_ids"))
        kind = str(item.get("type") or "INFO").upper()
        if ids:
            checklist.append({**item, "type": kind, "evidence_ids": ids, "source": source})
            continue
        if kind == "MUST":
            report.musts_downgraded += 1
            checklist.append(
                {
                    **item,
                    "type": "INFO",
                    "text": f"{MANUAL_CHECK_PREFIX}{str(item.get('text') or '').strip()}",
                    "evidence_ids": [],
                    "source": NOT_FOUND_SOURCE,
                }
            )
            continue
        report.unsupported_items += 1
        checklist.append({**item, "type": kind, "evidence_ids": [], "source": NOT_FOUND_SOURCE})

    risks: list[dict[str, Any]] = []
    for risk in review.get("risks") or []:
        ids, source = resolver.resolve(risk.get("evidence_ids"))
        if not ids:
            report.risks_converted += 1
            _append_question(questions, _risk_question(risk))
            continue
        risks.append({**risk, "evidence_ids": ids, "source": source})

    summary = dict(review.get("executive_summary") or {})
    top_risks: list[dict[str, Any]] = []
    for risk in summary.get("topRisks") or []:
        ids, source = resolver.resolve(risk.get("evidence_ids"))
        if not ids:
            report.top_risks_converted += 1
            _append_question(questions, _risk_question(risk))
            continue
        top_risks.append({**risk, "evidence_ids": ids, "source": source})
    summary["topRisks"] = top_risks

    report.unknown_ids_dropped = resolver.unknown_ids
    grounded = {
        **review,
        "executive_summary": summary,
        "checklist": checklist,
        "risks": risks,
        "buyer_questions": questions,
    }
    return grounded, report
