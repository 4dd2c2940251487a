from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(float(raw))
    except ValueError:
        return default
    return value if value > 0 else default


def _env_float(env: Mapping[str, str], name: str, *, default: float) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable settings for one pipeline invocation.

    Numeric values that are missing, unparsable or not positive fall back to
    their defaults, so a bad deployment variable never disables a guard.
    """

    mock_extract: bool = False
    mock_ai: bool = False
    model: str = "gpt-4.1-mini"
    fallback_model: str = ""
    max_input_chars: int = 120_000
    max_output_tokens: int = 1800
    max_usd_per_job: float = 0.05
    max_extract_polls: int = 60
    max_extract_minutes: float = 20.0
    max_reasoning_attempts: int = 3
    cooldown_seconds: int = 30
    lock_ttl_seconds: int = 300
    evidence_max_candidates: int = 220
    evidence_max_chars: int = 480
    evidence_min_score: int = 5
    evidence_scan_limit: int = 240
    anchor_lookback_lines: int = 8
    page_lookback_lines: int = 30
    title_scan_lines: int = 80
    followup_delay_seconds: int = 5
    split_stages: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PipelineConfig:
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            mock_extract=_env_bool(env, "TP_MOCK_EXTRACT", default=defaults.mock_extract),
            mock_ai=_env_bool(env, "TP_MOCK_AI", default=defaults.mock_ai),
            model=str(env.get("TP_OPENAI_MODEL", "")).strip() or defaults.model,
            fallback_model=str(env.get("TP_OPENAI_FALLBACK_MODEL", "")).strip(),
            max_input_chars=_env_int(env, "TP_MAX_INPUT_CHARS", default=defaults.max_input_chars),
            max_output_tokens=_env_int(env, "TP_MAX_OUTPUT_TOKENS", default=defaults.max_output_tokens),
            max_usd_per_job=_env_float(env, "TP_MAX_USD_PER_JOB", default=defaults.max_usd_per_job),
            max_extract_polls=_env_int(env, "TP_MAX_EXTRACT_POLLS", default=defaults.max_extract_polls),
            max_extract_minutes=_env_float(env, "TP_MAX_EXTRACT_MINUTES", default=defaults.max_extract_minutes),
            max_reasoning_attempts=_env_int(
                env,
                "TP_MAX_REASONING_ATTEMPTS",
                default=defaults.max_reasoning_attempts,
            ),
            cooldown_seconds=_env_int(env, "TP_REASONING_COOLDOWN_SECONDS", default=defaults.cooldown_seconds),
            lock_ttl_seconds=_env_int(env, "TP_REASONING_LOCK_TTL_SECONDS", default=defaults.lock_ttl_seconds),
            evidence_max_candidates=_env_int(
                env,
                "TP_EVIDENCE_MAX_CANDIDATES",
                default=defaults.evidence_max_candidates,
            ),
            evidence_max_chars=_env_int(env, "TP_EVIDENCE_MAX_CHARS", default=defaults.evidence_max_chars),
            evidence_min_score=_env_int(env, "TP_EVIDENCE_MIN_SCORE", default=defaults.evidence_min_score),
            followup_delay_seconds=_env_int(
                env,
                "TP_FOLLOWUP_DELAY_SECONDS",
                default=defaults.followup_delay_seconds,
            ),
            split_stages=_env_bool(env, "TP_SPLIT_STAGES", default=defaults.split_stages),
        )

    def evidence_options(self) -> dict[str, int]:
        return {
            "max_candidates": self.evidence_max_candidates,
            "max_chars": self.evidence_max_chars,
            "min_score": self.evidence_min_score,
            "scan_limit": self.evidence_scan_limit,
            "anchor_lookback": self.anchor_lookback_lines,
            "page_lookback": self.page_lookback_lines,
            "title_scan_lines": self.title_scan_lines,
        }
