"""
Mock extraction and review output for end-to-end runs without external services.

Enabled per invocation through PipelineConfig (TP_MOCK_EXTRACT / TP_MOCK_AI).
Output is deterministic: the same source text and evidence set always
produce the same review.
"""

from __future__ import annotations

from typing import Any

from tender_review.anchoring import build_anchored_text
from tender_review.evidence import EvidenceCandidate, normalized_document_text

SOURCE_PREVIEW_CHARS = 240

MOCK_ELEMENTS: list[dict[str, Any]] = [
    {"type": "Title", "text": "INVITATION TO TENDER – IT SUPPORT SERVICES", "metadata": {"page_number": 1}},
    {
        "type": "NarrativeText",
        "text": "Tender reference: TP-MOCK-001. Contracting authority: Example Municipality.",
        "metadata": {"page_number": 1},
    },
    {"type": "Title", "text": "1. Submission instructions", "metadata": {"page_number": 1}},
    {"type": "NarrativeText", "text": "1.1 Submission deadline: 2026-02-15 12:00 CET.", "metadata": {"page_number": 1}},
    {
        "type": "NarrativeText",
        "text": "1.2 Bids must be submitted electronically via the online portal no later than the deadline.",
        "metadata": {"page_number": 1},
    },
    {"type": "Title", "text": "2. Service requirements", "metadata": {"page_number": 2}},
    {
        "type": "ListItem",
        "text": "2.1 The bidder must provide 24/7 incident intake with a response time of 30 minutes.",
        "metadata": {"page_number": 2},
    },
    {
        "type": "ListItem",
        "text": "2.2 The bidder must appoint a dedicated service manager for the contract.",
        "metadata": {"page_number": 2},
    },
    {
        "type": "ListItem",
        "text": "2.3 The bidder must hold a valid ISO 27001 certification at the time of submission.",
        "metadata": {"page_number": 2},
    },
    {"type": "ListItem", "text": "2.4 The bidder should provide monthly service reporting.", "metadata": {"page_number": 2}},
    {
        "type": "ListItem",
        "text": "2.5 The bidder should propose a transition plan within 30 days of contract award.",
        "metadata": {"page_number": 2},
    },
    {"type": "Title", "text": "3. Commercial terms", "metadata": {"page_number": 3}},
    {
        "type": "NarrativeText",
        "text": "3.1 The price must be a fixed monthly fee in EUR covering the full contract term.",
        "metadata": {"page_number": 3},
    },
    {
        "type": "NarrativeText",
        "text": "3.2 A bid security of EUR 5,000 is required with the submission.",
        "metadata": {"page_number": 3},
    },
    {"type": "Title", "text": "4. Clarifications", "metadata": {"page_number": 3}},
    {
        "type": "NarrativeText",
        "text": "4.1 Questions may be raised via the online portal until 2026-02-05.",
        "metadata": {"page_number": 3},
    },
    {"type": "Title", "text": "Annex A – Service level schedule", "metadata": {"page_number": 4}},
    {
        "type": "NarrativeText",
        "text": "Priority 1 incidents: response within 30 minutes, resolution within 4 hours.",
        "metadata": {"page_number": 4},
    },
]


def mock_extracted_text() -> str:
    """Anchored text of the fixed mock tender."""
    return build_anchored_text(MOCK_ELEMENTS)


def _cite(candidates: list[EvidenceCandidate], keyword: str) -> list[str]:
    """Ids of the first candidate whose excerpt mentions `keyword`."""
    needle = keyword.lower()
    for c in candidates:
        if needle in c.excerpt.lower():
            return [c.id]
    return []


# (type, text, keyword used to find supporting evidence)
_CHECKLIST = [
    ("MUST", "Provide 24/7 incident intake with a 30 minute response time.", "24/7"),
    ("MUST", "Appoint a dedicated service manager.", "service manager"),
    ("MUST", "Hold a valid ISO 27001 certification at submission.", "iso 27001"),
    ("SHOULD", "Provide monthly service reporting.", "monthly service reporting"),
    ("SHOULD", "Propose a transition plan within 30 days of award.", "transition plan"),
    ("INFO", "Pricing is a fixed monthly fee in EUR.", "fixed monthly fee"),
]

# (title, severity, detail, keyword)
_RISKS = [
    ("Tight response SLA", "high", "24/7 intake with a 30 minute response may need extra staffing.", "24/7"),
    ("Certification evidence", "medium", "ISO 27001 certificate must be valid at submission.", "iso 27001"),
    ("Transition timeline", "medium", "A 30 day transition plan may be hard to deliver.", "transition plan"),
]


def mock_review(*, source_text: str, candidates: list[EvidenceCandidate]) -> dict[str, Any]:
    """Deterministic review shaped like model output, citing evidence by keyword."""
    risks = [
        {"title": title, "severity": severity, "detail": detail, "evidence_ids": _cite(candidates, keyword)}
        for title, severity, detail, keyword in _RISKS
    ]
    preview = normalized_document_text(source_text)[:SOURCE_PREVIEW_CHARS]
    deadline = "2026-02-15 12:00 CET" if "2026-02-15 12:00 CET" in source_text else "Not found in extracted text."
    return {
        "executive_summary": {
            "decisionBadge": "Proceed with caution",
            "decisionLine": (
                "Drafting support only. Verify mandatory requirements and deadlines against the source tender."
            ),
            "keyFindings": [
                "Mandatory 24/7 incident intake with a 30 minute response.",
                "ISO 27001 certification is required at submission.",
                "Electronic submission through the online portal.",
            ],
            "nextActions": [
                "Confirm staffing for the 24/7 service desk.",
                "Collect the current ISO 27001 certificate.",
                "Prepare the transition plan outline.",
            ],
            "topRisks": [dict(r) for r in risks],
            "submissionDeadline": deadline,
        },
        "checklist": [
            {"type": kind, "text": text, "evidence_ids": _cite(candidates, keyword)}
            for kind, text, keyword in _CHECKLIST
        ],
        "risks": risks,
        "buyer_questions": [
            "Please confirm whether partial weekend coverage is acceptable for Priority 3 incidents.",
            "Please confirm the expected contract start date and transition period.",
        ],
        "proposal_draft": (
            "Draft outline\n\n"
            "1. Executive summary\n"
            "2. Understanding of scope\n"
            "3. Service model and SLAs\n"
            "4. Security and compliance evidence\n"
            "5. Transition plan\n"
            "6. Pricing approach\n\n"
            f"Source preview\n{preview}"
        ),
    }
