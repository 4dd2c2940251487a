from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from tender_review.errors import PipelineStepError

CONTENT_SKIPPED_MARKER = "\n\n[CONTENT SKIPPED DUE TO SIZE]\n\n"
CHARS_PER_TOKEN = 4
HEAD_SHARE = 0.7

# USD per 1M tokens: (input, output)
MODEL_PRICES_PER_MILLION: dict[str, tuple[float, float]] = {
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4.1-nano": (0.10, 0.40),
}
DEFAULT_MODEL_PRICE = MODEL_PRICES_PER_MILLION["gpt-4.1-mini"]


def clamp_text(text: str, max_chars: int) -> tuple[str, bool]:
    """Fit `text` into `max_chars`, keeping the opening and the tail.

    The head gets 70% of the budget and the tail the rest; the two halves are
    joined by CONTENT_SKIPPED_MARKER. Returns (text, truncated).
    """
    source = str(text or "")
    if len(source) <= max_chars:
        return source, False

    budget = max(0, max_chars - len(CONTENT_SKIPPED_MARKER))
    head_len = max(0, math.floor(budget * HEAD_SHARE))
    tail_len = max(0, budget - head_len)

    head = source[:head_len].rstrip()
    tail = source[len(source) - tail_len :].lstrip() if tail_len > 0 else ""
    return (head + CONTENT_SKIPPED_MARKER + tail)[:max_chars], True


def estimate_tokens_from_chars(chars: int) -> int:
    return math.ceil(max(0, chars) / CHARS_PER_TOKEN)


def estimate_usd(*, model: str, input_tokens: int, output_tokens: int) -> float:
    in_per_m, out_per_m = MODEL_PRICES_PER_MILLION.get(model, DEFAULT_MODEL_PRICE)
    return (input_tokens / 1_000_000) * in_per_m + (output_tokens / 1_000_000) * out_per_m


@dataclass(frozen=True)
class CostEstimate:
    model: str
    input_chars: int
    input_tokens_est: int
    output_tokens_max: int
    usd_est: float
    max_usd: float
    truncated: bool

    @property
    def exceeds_cap(self) -> bool:
        return self.usd_est > self.max_usd

    def as_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "input_chars": self.input_chars,
            "input_tokens_est": self.input_tokens_est,
            "output_tokens_max": self.output_tokens_max,
            "usd_est": round(self.usd_est, 6),
            "max_usd": self.max_usd,
            "truncated": self.truncated,
        }


def prepare_model_input(
    *,
    text: str,
    model: str,
    max_input_chars: int,
    max_output_tokens: int,
    max_usd: float,
) -> tuple[str, CostEstimate]:
    clipped, truncated = clamp_text(text, max_input_chars)
    input_tokens = estimate_tokens_from_chars(len(clipped))
    estimate = CostEstimate(
        model=model,
        input_chars=len(clipped),
        input_tokens_est=input_tokens,
        output_tokens_max=max_output_tokens,
        usd_est=estimate_usd(model=model, input_tokens=input_tokens, output_tokens=max_output_tokens),
        max_usd=max_usd,
        truncated=truncated,
    )
    return clipped, estimate


def enforce_cost_cap(estimate: CostEstimate) -> None:
    if estimate.exceeds_cap:
        raise PipelineStepError(
            code="COST_CAP_EXCEEDED",
            message=(
                f"estimated cost {estimate.usd_est:.4f} USD exceeds per-job cap "
                f"{estimate.max_usd:.4f} USD; reduce input or limits"
            ),
            http_status=413,
        )
