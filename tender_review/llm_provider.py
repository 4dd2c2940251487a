"""
Language model access for the tender review stage.

Architecture:
  - ProviderConfig: model, fallback model, credentials, endpoint
  - Degradation chain: primary model -> fallback model -> LlmCallError
  - Structured output: strict JSON schema via response_format
  - Output checks: JSON parse, jsonschema validation, shape normalisation

Configuration via environment variables:
  TP_OPENAI_MODEL           = gpt-4.1-mini   (primary model)
  TP_OPENAI_FALLBACK_MODEL  =                (optional fallback on primary failure)
  OPENAI_API_KEY            = sk-...         (TP_OPENAI_API_KEY also accepted)
  OPENAI_BASE_URL           =                (any OpenAI-compatible endpoint)
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import openai
from jsonschema import ValidationError, validate

from tender_review.errors import PipelineStepError
from tender_review.evidence import NOT_FOUND_SOURCE, EvidenceCandidate

logger = logging.getLogger(__name__)

DECISION_BADGES = ("Proceed", "Proceed with caution", "Hold – potential blocker")
SEVERITIES = ("high", "medium", "low")
CHECKLIST_TYPES = ("MUST", "SHOULD", "INFO")


@dataclass
class ProviderConfig:
    model: str = "gpt-4.1-mini"
    fallback_model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.2


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    degraded: bool = False
    degrade_reason: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "model": self.model,
            "latency_ms": self.latency_ms,
            "degraded": self.degraded,
            "degrade_reason": self.degrade_reason,
        }


class LlmCallError(PipelineStepError):
    """Model call failed after the degradation chain; carries the upstream status and body."""

    def __init__(self, *, status: int | None, body: str) -> None:
        super().__init__(code="LLM_CALL_FAILED", message=f"model call failed ({status}): {body[:500]}")
        self.status = status
        self.body = body


def provider_config_from_env(
    *,
    model: str,
    fallback_model: str = "",
    environ: Mapping[str, str] | None = None,
) -> ProviderConfig:
    env = os.environ if environ is None else environ
    return ProviderConfig(
        model=model,
        fallback_model=fallback_model,
        api_key=str(env.get("TP_OPENAI_API_KEY") or env.get("OPENAI_API_KEY") or "").strip(),
        base_url=str(env.get("OPENAI_BASE_URL", "")).strip(),
    )


# ---------------------------------------------------------------------------
# Prompt and schema
# ---------------------------------------------------------------------------

_RISK_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "title": {"type": "string"},
        "severity": {"type": "string", "enum": list(SEVERITIES)},
        "detail": {"type": "string"},
        "evidence_ids": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["title", "severity", "detail", "evidence_ids"],
}

REVIEW_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "executive_summary": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "decisionBadge": {"type": "string"},
                "decisionLine": {"type": "string"},
                "keyFindings": {"type": "array", "items": {"type": "string"}, "maxItems": 7},
                "nextActions": {"type": "array", "items": {"type": "string"}, "maxItems": 3},
                "topRisks": {"type": "array", "maxItems": 3, "items": _RISK_ITEM_SCHEMA},
                "submissionDeadline": {"type": "string"},
            },
            "required": [
                "decisionBadge",
                "decisionLine",
                "keyFindings",
                "nextActions",
                "topRisks",
                "submissionDeadline",
            ],
        },
        "checklist": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "type": {"type": "string", "enum": list(CHECKLIST_TYPES)},
                    "text": {"type": "string"},
                    "evidence_ids": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["type", "text", "evidence_ids"],
            },
        },
        "risks": {"type": "array", "items": _RISK_ITEM_SCHEMA},
        "buyer_questions": {"type": "array", "items": {"type": "string"}},
        "proposal_draft": {"type": "string"},
    },
    "required": ["executive_summary", "checklist", "risks", "buyer_questions", "proposal_draft"],
}

# Accepted before normalisation; item-level problems are repaired or dropped.
_OUTPUT_ENVELOPE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "executive_summary": {"type": "object"},
        "checklist": {"type": ["array", "object", "null"]},
        "risks": {"type": ["array", "object", "null"]},
    },
    "required": ["executive_summary", "checklist", "risks"],
}

REVIEW_INSTRUCTIONS = (
    "You are a tender review assistant. Drafting support only. Not legal advice. Not procurement advice. "
    "Use executive, compliance grade language. No AI talk. "
    "Always write in the same language as the tender source text. "
    f"Avoid false certainty. If not present, write: {NOT_FOUND_SOURCE}"
)

_USER_PROMPT_TEMPLATE = """Task
Review the tender source text and produce a decision-first bid kit.

Strict rules
1. Grounding. Use only the evidence snippets provided. Do not guess. If a detail is not present, write: {not_found}
2. Decision. Choose decisionBadge exactly as one of: {badges}. Provide decisionLine as one clear sentence.
3. Submission deadline. If an explicit deadline date or time is present, copy it verbatim. Otherwise set submissionDeadline to: {not_found}
4. Checklist. MUST means mandatory or disqualifying if missed. SHOULD means preferred or scoring. INFO is context.
5. Evidence (STRICT). You MUST cite evidence_ids:
   - For each MUST checklist item: include at least one evidence id that directly proves it.
   - For each risk and each top risk: include at least one evidence id that supports it.
   - Do not invent clause numbers or cross-references. Cite only evidence ids.
   - If you cannot support a MUST or a risk with evidence, downgrade it to INFO and add a buyer question for manual verification.
6. Deduplication. Do not repeat checklist items verbatim inside the executive summary.
7. Missing info. Put ambiguities or missing info into buyer_questions.

Evidence snippets (use ONLY these; cite their ids in evidence_ids):
{evidence}

Tender source text (context only; do not cite directly):
{source_text}"""


def format_evidence_list(candidates: list[EvidenceCandidate]) -> str:
    lines: list[str] = []
    for c in candidates:
        page = f" [PAGE {c.page}]" if c.page is not None else ""
        anchor = f" {c.anchor}" if c.anchor else ""
        lines.append(f"{c.id}{page}{anchor}: {c.excerpt}")
    return "\n".join(lines) if lines else "(no evidence snippets found)"


def build_user_prompt(*, source_text: str, candidates: list[EvidenceCandidate]) -> str:
    return _USER_PROMPT_TEMPLATE.format(
        not_found=NOT_FOUND_SOURCE,
        badges=", ".join(DECISION_BADGES),
        evidence=format_evidence_list(candidates),
        source_text=source_text,
    )


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


def _create_client(config: ProviderConfig) -> openai.OpenAI:
    kwargs: dict[str, Any] = {"api_key": config.api_key}
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return openai.OpenAI(**kwargs)


def _call_chat(
    *,
    client: Any,
    model: str,
    messages: list[dict[str, str]],
    json_schema: dict[str, Any],
    temperature: float,
    max_tokens: int,
) -> tuple[str, LLMUsage]:
    """Call chat completions with a strict schema and return (content, usage)."""
    t0 = time.monotonic()
    response = client.chat.completions.create(
        model=model,
        temperature=temperature,
        messages=messages,
        max_tokens=max_tokens,
        response_format={
            "type": "json_schema",
            "json_schema": {"name": "tender_review", "strict": True, "schema": json_schema},
        },
    )
    elapsed_ms = (time.monotonic() - t0) * 1000

    content = response.choices[0].message.content or ""
    usage_data = response.usage
    usage = LLMUsage(
        prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
        completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
        total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
        model=model,
        latency_ms=round(elapsed_ms, 1),
    )
    return content, usage


def _call_with_degradation(
    *,
    config: ProviderConfig,
    messages: list[dict[str, str]],
    json_schema: dict[str, Any],
    max_tokens: int,
) -> tuple[str, LLMUsage]:
    """Try primary model, then fallback model, raising on total failure."""
    client = _create_client(config)

    try:
        return _call_chat(
            client=client,
            model=config.model,
            messages=messages,
            json_schema=json_schema,
            temperature=config.temperature,
            max_tokens=max_tokens,
        )
    except Exception as primary_exc:
        if not config.fallback_model:
            raise

        logger.warning(
            "Primary model %s failed (%s), degrading to %s",
            config.model,
            type(primary_exc).__name__,
            config.fallback_model,
        )
        content, usage = _call_chat(
            client=client,
            model=config.fallback_model,
            messages=messages,
            json_schema=json_schema,
            temperature=config.temperature,
            max_tokens=max_tokens,
        )
        usage.degraded = True
        usage.degrade_reason = f"primary_failed:{type(primary_exc).__name__}"
        return content, usage


def generate_review(
    *,
    config: ProviderConfig,
    instructions: str,
    user_prompt: str,
    json_schema: dict[str, Any],
    max_output_tokens: int,
) -> tuple[str, LLMUsage]:
    if not config.api_key:
        raise PipelineStepError(
            code="CONFIG_MISSING",
            message="OPENAI_API_KEY is required when mock AI is disabled",
            http_status=500,
        )
    messages = [
        {"role": "system", "content": instructions},
        {"role": "user", "content": user_prompt},
    ]
    try:
        return _call_with_degradation(
            config=config,
            messages=messages,
            json_schema=json_schema,
            max_tokens=max_output_tokens,
        )
    except openai.APIStatusError as exc:
        raise LlmCallError(status=exc.status_code, body=str(exc.message)) from exc
    except openai.OpenAIError as exc:
        raise LlmCallError(status=None, body=str(exc)) from exc


# ---------------------------------------------------------------------------
# Output parsing and normalisation
# ---------------------------------------------------------------------------

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def parse_review_json(content: str) -> dict[str, Any]:
    text = str(content or "").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(text)
        if match is None:
            raise PipelineStepError(code="LLM_OUTPUT_INVALID", message="model output is not JSON") from None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise PipelineStepError(code="LLM_OUTPUT_INVALID", message=f"model output is not JSON: {exc}") from exc
    try:
        validate(instance=data, schema=_OUTPUT_ENVELOPE_SCHEMA)
    except ValidationError as exc:
        raise PipelineStepError(
            code="LLM_OUTPUT_INVALID",
            message=f"model output failed schema check: {exc.message}",
        ) from exc
    return data


def _as_list(value: Any, *keys: str) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in keys:
            if isinstance(value.get(key), list):
                return value[key]
    return []


def _strings(value: Any, *, limit: int | None = None) -> list[str]:
    out = [str(x).strip() for x in _as_list(value, "items") if isinstance(x, (str, int, float)) and str(x).strip()]
    return out[:limit] if limit is not None else out


def _evidence_ids(value: Any) -> list[str]:
    return [str(x).strip() for x in _as_list(value) if str(x).strip()]


def _normalize_risk(item: Any) -> dict[str, Any] | None:
    if not isinstance(item, dict):
        return None
    title = str(item.get("title") or "").strip()
    detail = str(item.get("detail") or "").strip()
    if not title and not detail:
        return None
    severity = str(item.get("severity") or "medium").strip().lower()
    return {
        "title": title,
        "severity": severity if severity in SEVERITIES else "medium",
        "detail": detail,
        "evidence_ids": _evidence_ids(item.get("evidence_ids")),
    }


def normalize_review(raw: dict[str, Any]) -> dict[str, Any]:
    """Coerce model output into the persisted bundle shape without inventing content."""
    summary_raw = raw.get("executive_summary") if isinstance(raw.get("executive_summary"), dict) else {}
    badge = str(summary_raw.get("decisionBadge") or "").strip()
    if badge not in DECISION_BADGES:
        badge = "Proceed with caution"
    deadline = str(summary_raw.get("submissionDeadline") or "").strip() or NOT_FOUND_SOURCE

    checklist: list[dict[str, Any]] = []
    for item in _as_list(raw.get("checklist"), "items", "requirements"):
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        kind = str(item.get("type") or "INFO").strip().upper()
        checklist.append(
            {
                "type": kind if kind in CHECKLIST_TYPES else "INFO",
                "text": text,
                "evidence_ids": _evidence_ids(item.get("evidence_ids")),
            }
        )

    risks = [r for r in (_normalize_risk(x) for x in _as_list(raw.get("risks"), "items", "risks")) if r]
    top_risks = [r for r in (_normalize_risk(x) for x in _as_list(summary_raw.get("topRisks"))) if r][:3]

    return {
        "executive_summary": {
            "decisionBadge": badge,
            "decisionLine": str(summary_raw.get("decisionLine") or "").strip(),
            "keyFindings": _strings(summary_raw.get("keyFindings"), limit=7),
            "nextActions": _strings(summary_raw.get("nextActions"), limit=3),
            "topRisks": top_risks,
            "submissionDeadline": deadline,
        },
        "checklist": checklist,
        "risks": risks,
        "buyer_questions": _strings(raw.get("buyer_questions"), limit=None),
        "proposal_draft": str(raw.get("proposal_draft") or "").strip(),
    }


def llm_review_tender(
    *,
    config: ProviderConfig,
    source_text: str,
    candidates: list[EvidenceCandidate],
    max_output_tokens: int,
) -> tuple[dict[str, Any], LLMUsage]:
    """Run the evidence-first review prompt and return (normalised review, usage)."""
    content, usage = generate_review(
        config=config,
        instructions=REVIEW_INSTRUCTIONS,
        user_prompt=build_user_prompt(source_text=source_text, candidates=candidates),
        json_schema=REVIEW_SCHEMA,
        max_output_tokens=max_output_tokens,
    )
    return normalize_review(parse_review_json(content)), usage
