"""Tests for the deterministic mock extraction and review."""

from tender_review.evidence import build_evidence_candidates
from tender_review.grounding import MANUAL_RISK_PREFIX, ground_review
from tender_review.llm_provider import normalize_review
from tender_review.mock_llm import mock_extracted_text, mock_review


def test_mock_text_is_anchored():
    text = mock_extracted_text()

    assert text.startswith("[PAGE 1]")
    assert "SECTION 2.3 – Service requirements" in text
    assert "ANNEX: Annex A – Service level schedule" in text
    assert "[PAGE 4]" in text


def test_mock_review_is_deterministic():
    text = mock_extracted_text()
    candidates = build_evidence_candidates(text)

    assert mock_review(source_text=text, candidates=candidates) == mock_review(source_text=text, candidates=candidates)


def test_mock_review_cites_existing_evidence():
    text = mock_extracted_text()
    candidates = build_evidence_candidates(text)
    known = {c.id for c in candidates}

    review = mock_review(source_text=text, candidates=candidates)

    cited = [i for item in review["checklist"] for i in item["evidence_ids"]]
    assert cited
    assert set(cited) <= known
    assert review["executive_summary"]["submissionDeadline"] == "2026-02-15 12:00 CET"
    assert "Source preview\n[PAGE 1]" in review["proposal_draft"]


def test_mock_review_survives_grounding():
    text = mock_extracted_text()
    candidates = build_evidence_candidates(text)

    grounded, report = ground_review(normalize_review(mock_review(source_text=text, candidates=candidates)), candidates)

    musts = [x for x in grounded["checklist"] if x["type"] == "MUST"]
    assert len(musts) == 3
    assert all(x["source"] in text for x in musts)
    assert report.musts_downgraded == 0
    assert report.unsupported_items == 2
    assert report.risks_converted == 1
    assert report.top_risks_converted == 1
    assert grounded["buyer_questions"][-1].startswith(MANUAL_RISK_PREFIX + "Transition timeline")
    assert len(grounded["buyer_questions"]) == 3


def test_mock_review_without_source_marks_deadline_missing():
    review = mock_review(source_text="", candidates=[])

    assert review["executive_summary"]["submissionDeadline"] == "Not found in extracted text."
    assert all(item["evidence_ids"] == [] for item in review["checklist"])
