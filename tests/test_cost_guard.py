from __future__ import annotations

import pytest

from tender_review.cost_guard import (
    CONTENT_SKIPPED_MARKER,
    clamp_text,
    enforce_cost_cap,
    estimate_tokens_from_chars,
    estimate_usd,
    prepare_model_input,
)
from tender_review.errors import PipelineStepError


def test_clamp_text_keeps_short_text_untouched():
    assert clamp_text("short tender", 100) == ("short tender", False)


def test_clamp_text_keeps_head_and_tail_around_marker():
    text = "A" * 700 + "B" * 300 + "C" * 1000
    clipped, truncated = clamp_text(text, 500)

    assert truncated is True
    assert len(clipped) <= 500
    assert CONTENT_SKIPPED_MARKER in clipped
    head, tail = clipped.split(CONTENT_SKIPPED_MARKER)
    budget = 500 - len(CONTENT_SKIPPED_MARKER)
    assert head == "A" * int(budget * 0.7)
    assert tail == "C" * (budget - int(budget * 0.7))


def test_estimate_tokens_rounds_up():
    assert estimate_tokens_from_chars(0) == 0
    assert estimate_tokens_from_chars(1) == 1
    assert estimate_tokens_from_chars(8) == 2
    assert estimate_tokens_from_chars(9) == 3


def test_unknown_model_uses_default_prices():
    known = estimate_usd(model="gpt-4.1-mini", input_tokens=1_000_000, output_tokens=1_000_000)
    unknown = estimate_usd(model="some-new-model", input_tokens=1_000_000, output_tokens=1_000_000)
    assert known == pytest.approx(2.0)
    assert unknown == known
    assert estimate_usd(model="gpt-4o-mini", input_tokens=1_000_000, output_tokens=0) == pytest.approx(0.15)


def test_prepare_model_input_reports_truncation_and_estimate():
    clipped, estimate = prepare_model_input(
        text="x" * 1000,
        model="gpt-4.1-mini",
        max_input_chars=400,
        max_output_tokens=1800,
        max_usd=0.05,
    )
    assert len(clipped) <= 400
    assert estimate.truncated is True
    assert estimate.input_chars == len(clipped)
    assert estimate.input_tokens_est == estimate_tokens_from_chars(len(clipped))
    assert estimate.exceeds_cap is False
    assert estimate.as_dict()["output_tokens_max"] == 1800


def test_enforce_cost_cap_raises_when_estimate_exceeds_budget():
    _, estimate = prepare_model_input(
        text="x" * 400_000,
        model="gpt-4.1-mini",
        max_input_chars=400_000,
        max_output_tokens=1800,
        max_usd=0.01,
    )
    with pytest.raises(PipelineStepError) as exc_info:
        enforce_cost_cap(estimate)
    assert exc_info.value.code == "COST_CAP_EXCEEDED"
    assert exc_info.value.http_status == 413
