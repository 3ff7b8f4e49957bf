"""Qualification oracles: the model that scores a completed form."""

import asyncio
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import OpenAI

from schedform.config import Settings
from schedform.flows.errors import OracleFailure
from schedform.qualification.scoring import AnswerContext


@dataclass
class OracleRequest:
    flow_id: str
    prompt: str
    answers: List[AnswerContext] = field(default_factory=list)
    rule_score: Optional[float] = None
    respondent_name: Optional[str] = None
    respondent_email: Optional[str] = None
    candidate_slots: List[Dict[str, Any]] = field(default_factory=list)
    curated_slot_count: int = 3

    def as_input(self) -> Dict[str, Any]:
        return {
            "respondent": {"name": self.respondent_name, "email": self.respondent_email},
            "answers": [answer.as_dict() for answer in self.answers],
            "rule_score": self.rule_score,
            "candidate_slots": [slot["slot_id"] for slot in self.candidate_slots],
        }


@dataclass
class OracleResponse:
    score: float
    reasons: List[str] = field(default_factory=list)
    confidence: float = 0.5
    intent_score: Optional[int] = None
    summary: Optional[str] = None
    insights: Dict[str, Any] = field(default_factory=dict)
    recommendation: Dict[str, Any] = field(default_factory=dict)
    curated_slots: List[Dict[str, Any]] = field(default_factory=list)
    raw: Optional[str] = None
    model: str = "unknown"
    tokens: Optional[int] = None

    def as_results(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "reasons": self.reasons,
            "confidence": self.confidence,
            "intent_score": self.intent_score,
            "summary": self.summary,
            "insights": self.insights,
            "recommendation": self.recommendation,
            "curated_slots": [slot["slot_id"] for slot in self.curated_slots],
        }


class QualificationOracle:
    model_name = "oracle"

    async def evaluate(self, request: OracleRequest) -> OracleResponse:  # pragma: no cover - override
        raise NotImplementedError


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _fallback_score(answers: List[AnswerContext]) -> float:
    """Deterministic heuristic for forms without weighted choices."""
    text = " ".join(" ".join(answer.values) for answer in answers).lower()
    base = 25.0
    budget_boost = 15.0 if "budget" in text or "$" in text else 0.0
    intent_keywords = ["timeline", "deadline", "launch", "this quarter", "asap"]
    intent_boost = 15.0 if any(k in text for k in intent_keywords) else 0.0
    detail_factor = 25.0 * math.tanh(len(text) / 300)
    return round(_clamp(base + budget_boost + intent_boost + detail_factor, 0.0, 100.0), 2)


class HeuristicQualificationOracle(QualificationOracle):
    """Scores from the form's own weights; used when no model is configured."""

    model_name = "heuristic"

    async def evaluate(self, request: OracleRequest) -> OracleResponse:
        if request.rule_score is not None:
            score = request.rule_score
            weighted = sorted(
                (a for a in request.answers if a.weight > 0 and a.choices),
                key=lambda a: a.weight,
                reverse=True,
            )
            reasons = [f"{a.question}: {', '.join(c.label for c in a.choices)}" for a in weighted[:3]]
            confidence = 0.8
        else:
            score = _fallback_score(request.answers)
            reasons = ["No weighted answers; scored from free text"]
            confidence = 0.4

        ranked = sorted(
            request.candidate_slots,
            key=lambda slot: (-(slot.get("optimality_score") or 0), slot["start_time"]),
        )
        curated = sorted(ranked[: request.curated_slot_count], key=lambda slot: slot["start_time"])
        return OracleResponse(
            score=score,
            reasons=reasons,
            confidence=confidence,
            intent_score=int(_clamp(round(score), 1, 100)),
            summary=f"Rule-based score {score:g}",
            curated_slots=curated,
            model=self.model_name,
        )


def _extract_payload(raw: str) -> Dict[str, Any]:
    raw = raw.strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        raw = raw[raw.find("{") :]
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end == -1:
        raise OracleFailure("Oracle response did not contain a JSON object")
    try:
        data = json.loads(raw[start : end + 1])
    except json.JSONDecodeError as exc:
        raise OracleFailure(f"Oracle response was not valid JSON: {exc}") from exc
    if not isinstance(data, dict) or "score" not in data:
        raise OracleFailure("Oracle response is missing a score")
    return data


class OpenAIQualificationOracle(QualificationOracle):
    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: Optional[OpenAI] = None):
        self.model_name = model
        self._client = client or OpenAI(api_key=api_key)

    async def evaluate(self, request: OracleRequest) -> OracleResponse:
        response = await asyncio.to_thread(self._client.responses.create, model=self.model_name, input=request.prompt)
        content = response.output_text or ""
        data = _extract_payload(content)

        try:
            score = _clamp(float(data["score"]), 0.0, 100.0)
            confidence = _clamp(float(data.get("confidence", 0.5)), 0.0, 1.0)
            intent = data.get("intent_score")
            intent_score = int(_clamp(float(intent), 1, 100)) if intent is not None else None
        except (TypeError, ValueError) as exc:
            raise OracleFailure(f"Oracle returned a non-numeric score: {exc}") from exc

        recommendation = data.get("recommendation") or {}
        by_id = {slot["slot_id"]: slot for slot in request.candidate_slots}
        picked = [by_id[s] for s in recommendation.get("slot_ids", []) if s in by_id]

        usage = getattr(response, "usage", None)
        return OracleResponse(
            score=score,
            reasons=[str(r) for r in data.get("reasons") or []],
            confidence=confidence,
            intent_score=intent_score,
            summary=data.get("summary"),
            insights=data.get("insights") or {},
            recommendation=recommendation,
            curated_slots=picked[: request.curated_slot_count],
            raw=content,
            model=self.model_name,
            tokens=getattr(usage, "total_tokens", None),
        )


def build_oracle(settings: Settings) -> QualificationOracle:
    if settings.openai_api_key:
        return OpenAIQualificationOracle(settings.openai_api_key, settings.openai_model)
    return HeuristicQualificationOracle()
