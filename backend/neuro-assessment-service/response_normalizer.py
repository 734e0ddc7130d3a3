"""
Neuro Assessment Service - Response Normalizer

Turns free-text reasoning/validation output into typed records:
- strips markdown fences
- recovers embedded or truncated JSON objects
- maps every risk vocabulary onto RiskLevel
- validates required fields and fills optional ones with defaults

Never raises on provider content: failures come back as NormalizationFailure.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from models import (
    AssessmentSource,
    ClinicalFindings,
    MedicalAssessment,
    Recommendations,
    RiskLevel,
    Severity,
    TerritorialLikelihoods,
    UrgencyLevel,
    URGENCY_FOR_RISK,
    ValidationAgreement,
    ValidationCritique,
)

logger = logging.getLogger(__name__)


RISK_LEVEL_ALIASES: Dict[str, RiskLevel] = {
    "none": RiskLevel.LOW,
    "minimal": RiskLevel.LOW,
    "low": RiskLevel.LOW,
    "mild": RiskLevel.MODERATE,
    "medium": RiskLevel.MODERATE,
    "moderate": RiskLevel.MODERATE,
    "elevated": RiskLevel.HIGH,
    "high": RiskLevel.HIGH,
    "severe": RiskLevel.HIGH,
    "very high": RiskLevel.CRITICAL,
    "critical": RiskLevel.CRITICAL,
    "emergent": RiskLevel.CRITICAL,
}

SEVERITY_ALIASES: Dict[str, Severity] = {
    "none": Severity.NONE,
    "absent": Severity.NONE,
    "normal": Severity.NONE,
    "no": Severity.NONE,
    "false": Severity.NONE,
    "low": Severity.MILD,
    "mild": Severity.MILD,
    "minimal": Severity.MILD,
    "medium": Severity.MODERATE,
    "moderate": Severity.MODERATE,
    "present": Severity.MODERATE,
    "yes": Severity.MODERATE,
    "true": Severity.MODERATE,
    "high": Severity.SEVERE,
    "severe": Severity.SEVERE,
    "critical": Severity.SEVERE,
}

URGENCY_ALIASES: Dict[str, UrgencyLevel] = {
    "routine": UrgencyLevel.ROUTINE,
    "normal": UrgencyLevel.ROUTINE,
    "low": UrgencyLevel.ROUTINE,
    "moderate": UrgencyLevel.MODERATE,
    "medium": UrgencyLevel.MODERATE,
    "concerning": UrgencyLevel.URGENT,
    "urgent": UrgencyLevel.URGENT,
    "high": UrgencyLevel.URGENT,
    "emergent": UrgencyLevel.CRITICAL,
    "immediate": UrgencyLevel.CRITICAL,
    "critical": UrgencyLevel.CRITICAL,
}

AGREEMENT_ALIASES: Dict[str, ValidationAgreement] = {
    "corroborates": ValidationAgreement.CORROBORATES,
    "agree": ValidationAgreement.CORROBORATES,
    "agrees": ValidationAgreement.CORROBORATES,
    "confirmed": ValidationAgreement.CORROBORATES,
    "partial": ValidationAgreement.PARTIAL,
    "partially_corroborates": ValidationAgreement.PARTIAL,
    "partially agrees": ValidationAgreement.PARTIAL,
    "contradicts": ValidationAgreement.CONTRADICTS,
    "disagree": ValidationAgreement.CONTRADICTS,
    "disagrees": ValidationAgreement.CONTRADICTS,
}

# Legacy schema only carries a level; scores are placed at the band midpoints.
RISK_SCORE_FOR_LEVEL: Dict[RiskLevel, float] = {
    RiskLevel.LOW: 15.0,
    RiskLevel.MODERATE: 45.0,
    RiskLevel.HIGH: 70.0,
    RiskLevel.CRITICAL: 90.0,
}

MEDICAL_REQUIRED_FIELDS = ["overallRisk", "riskScore", "confidence"]
VALIDATION_REQUIRED_FIELDS = ["validationScore", "agreement"]


@dataclass(frozen=True)
class NormalizationFailure:
    reason: str
    missing_fields: List[str] = field(default_factory=list)
    recovered_fields: List[str] = field(default_factory=list)

    def describe(self) -> str:
        parts = [self.reason]
        if self.missing_fields:
            parts.append(f"missing: {', '.join(self.missing_fields)}")
        if self.recovered_fields:
            parts.append(f"recovered: {', '.join(self.recovered_fields)}")
        return "; ".join(parts)


class _MissingField(ValueError):
    pass


# -----------------------------------------------------------------------------
# JSON recovery
# -----------------------------------------------------------------------------


def strip_markdown_fences(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned.startswith("```"):
        return cleaned
    cleaned = re.sub(r"^\s*```[a-zA-Z0-9_-]*\s*", "", cleaned)
    cleaned = re.sub(r"\s*```\s*$", "", cleaned)
    return cleaned.strip()


def repair_truncated_json(text: str) -> str:
    """
    Closes unterminated strings/brackets of a JSON object cut off mid-stream.
    Returns the first balanced object unchanged if one exists.
    """
    cleaned = (text or "").strip()
    start = cleaned.find("{")
    if start == -1:
        return cleaned
    cleaned = cleaned[start:]

    in_string = False
    escaped = False
    stack: List[str] = []
    close_for = {"{": "}", "[": "]"}

    for idx, ch in enumerate(cleaned):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(close_for[ch])
        elif ch in "}]" and stack:
            stack.pop()
            if not stack:
                return cleaned[: idx + 1]

    repaired = cleaned.rstrip().rstrip(",")
    if in_string:
        repaired += '"'
    while stack:
        repaired += stack.pop()
    return repaired


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Best-effort extraction of one JSON object from model output.
    """
    cleaned = strip_markdown_fences(text)
    if not cleaned:
        return None

    candidates = [cleaned]
    start = cleaned.find("{")
    if start != -1:
        candidates.append(cleaned[start:])
        candidates.append(repair_truncated_json(cleaned[start:]))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    decoder = json.JSONDecoder()
    idx = 0
    while True:
        brace_idx = cleaned.find("{", idx)
        if brace_idx == -1:
            return None
        try:
            embedded, end_idx = decoder.raw_decode(cleaned, brace_idx)
        except json.JSONDecodeError:
            idx = brace_idx + 1
            continue
        if isinstance(embedded, dict):
            return embedded
        idx = max(brace_idx + 1, end_idx)


def recover_fields(text: str, keys: List[str]) -> Dict[str, str]:
    """
    Loose `"key": value` scan for malformed payloads; diagnostics only.
    """
    cleaned = strip_markdown_fences(text)
    recovered: Dict[str, str] = {}
    for key in keys:
        match = re.search(
            rf'["\']?{re.escape(key)}["\']?\s*[:=]\s*"?([^",}}\n]+)',
            cleaned,
            flags=re.IGNORECASE,
        )
        if match:
            recovered[key] = match.group(1).strip()
    return recovered


# -----------------------------------------------------------------------------
# Field coercion
# -----------------------------------------------------------------------------


def _lookup(aliases: Dict[str, Any], value: Any) -> Optional[Any]:
    if value is None:
        return None
    if isinstance(value, bool):
        value = "true" if value else "false"
    key = str(value).strip().lower().replace("-", " ").replace("_", " ")
    if key in aliases:
        return aliases[key]
    return aliases.get(key.replace(" ", "_"))


def coerce_risk_level(value: Any) -> Optional[RiskLevel]:
    return _lookup(RISK_LEVEL_ALIASES, value)


def coerce_severity(value: Any) -> Severity:
    return _lookup(SEVERITY_ALIASES, value) or Severity.NONE


def coerce_urgency(value: Any) -> Optional[UrgencyLevel]:
    return _lookup(URGENCY_ALIASES, value)


def coerce_score(value: Any, *, upper: float = 100.0) -> Optional[float]:
    """
    Accepts 72, "72", "72%", or 0.72 (fractions are scaled to percent).
    """
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip().rstrip("%")
    try:
        number = float(text)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    if upper == 100.0 and 0.0 < number <= 1.0 and "." in text:
        number *= 100.0
    return max(0.0, min(upper, number))


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value)]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value).strip()


def _require(value: Any, name: str) -> Any:
    if value is None:
        raise _MissingField(name)
    return value


# -----------------------------------------------------------------------------
# Schema mapping
# -----------------------------------------------------------------------------


def _territories(payload: Dict[str, Any]) -> TerritorialLikelihoods:
    block = payload.get("territorialAnalysis") or {}
    if not isinstance(block, dict):
        return TerritorialLikelihoods()
    return TerritorialLikelihoods(
        anterior_circulation=coerce_score(block.get("anteriorCirculation")) or 0.0,
        posterior_circulation=coerce_score(block.get("posteriorCirculation")) or 0.0,
        lacunar=coerce_score(block.get("lacunar")) or 0.0,
        most_likely=_as_text(block.get("mostLikely")) or None,
    )


def _findings(payload: Dict[str, Any]) -> ClinicalFindings:
    block = payload.get("clinicalFindings") or {}
    if not isinstance(block, dict):
        return ClinicalFindings()

    def _section(name: str) -> Dict[str, Any]:
        value = block.get(name)
        return value if isinstance(value, dict) else {}

    speech = _section("speechLanguage")
    facial = _section("facialFunction")
    motor = _section("motorFunction")
    return ClinicalFindings.model_validate(
        {
            "speech_language": {
                "dysarthria": coerce_severity(speech.get("dysarthria")),
                "aphasia": coerce_severity(speech.get("aphasia")),
                "apraxia": coerce_severity(speech.get("apraxia")),
                "details": _as_text(speech.get("details")),
            },
            "facial_function": {
                "asymmetry": coerce_severity(facial.get("asymmetry")),
                "weakness": coerce_severity(facial.get("weakness")),
                "details": _as_text(facial.get("details")),
            },
            "motor_function": {
                "coordination": coerce_severity(motor.get("coordination")),
                "balance": coerce_severity(motor.get("balance")),
                "details": _as_text(motor.get("details")),
            },
        }
    )


def _from_enhanced_schema(payload: Dict[str, Any]) -> MedicalAssessment:
    risk = payload.get("strokeRiskAssessment")
    if not isinstance(risk, dict):
        raise _MissingField("strokeRiskAssessment")

    risk_level = _require(coerce_risk_level(risk.get("overallRisk")), "overallRisk")
    risk_score = _require(coerce_score(risk.get("riskScore")), "riskScore")
    confidence = _require(coerce_score(risk.get("confidence")), "confidence")

    rec_block = payload.get("recommendations")
    rec_block = rec_block if isinstance(rec_block, dict) else {}
    urgency = coerce_urgency(rec_block.get("urgency")) or URGENCY_FOR_RISK[risk_level]
    recommendations = Recommendations(
        urgency=urgency,
        next_steps=_as_list(rec_block.get("nextSteps")),
        follow_up=_as_text(rec_block.get("followUp")),
        red_flags=_as_list(rec_block.get("redFlags")),
    )
    nihss = coerce_score(risk.get("nihssEquivalent"), upper=42.0)

    return MedicalAssessment(
        risk_level=risk_level,
        risk_score=risk_score,
        confidence=confidence,
        urgency_level=urgency,
        nihss_equivalent=nihss,
        territorial_likelihoods=_territories(payload),
        clinical_findings=_findings(payload),
        recommendations=recommendations,
        key_findings=_as_list(payload.get("keyFindings")),
        multimodal_correlation=_as_text(payload.get("multimodalCorrelation")),
        medical_summary=_as_text(payload.get("medicalSummary")),
        patient_summary=_as_text(payload.get("patientSummary")),
        source=AssessmentSource.REASONING,
    )


def _from_legacy_schema(payload: Dict[str, Any]) -> MedicalAssessment:
    indicators = payload.get("strokeIndicators")
    indicators = indicators if isinstance(indicators, dict) else {}
    speech = payload.get("speechAnalysis")
    speech = speech if isinstance(speech, dict) else {}

    risk_level = _require(
        coerce_risk_level(indicators.get("overallSpeechRisk") or payload.get("riskLevel")),
        "overallRisk",
    )
    confidence = _require(coerce_score(payload.get("confidenceLevel")), "confidence")
    risk_score = coerce_score(payload.get("riskScore"))
    if risk_score is None:
        risk_score = RISK_SCORE_FOR_LEVEL[risk_level]
    urgency = coerce_urgency(payload.get("urgencyLevel")) or URGENCY_FOR_RISK[risk_level]

    findings = ClinicalFindings.model_validate(
        {
            "speech_language": {
                "dysarthria": coerce_severity(indicators.get("dysarthriaLevel")),
                "aphasia": coerce_severity(indicators.get("aphasiaIndicators")),
                "details": _as_text(speech.get("speechPatterns")),
            }
        }
    )
    return MedicalAssessment(
        risk_level=risk_level,
        risk_score=risk_score,
        confidence=confidence,
        urgency_level=urgency,
        clinical_findings=findings,
        recommendations=Recommendations(
            urgency=urgency,
            next_steps=_as_list(payload.get("recommendations")),
        ),
        key_findings=_as_list(payload.get("clinicalObservations")),
        medical_summary=_as_text(payload.get("medicalSummary")),
        source=AssessmentSource.REASONING,
    )


def normalize_medical_assessment(raw_text: str) -> Union[MedicalAssessment, NormalizationFailure]:
    """
    Normalizes reasoning adapter output. Accepts the enhanced schema
    (`strokeRiskAssessment`, ...) and the legacy speech-only schema
    (`strokeIndicators`, `confidenceLevel`, ...).
    """
    payload = parse_json_object(raw_text or "")
    if payload is None:
        recovered = recover_fields(raw_text or "", MEDICAL_REQUIRED_FIELDS)
        return NormalizationFailure(
            reason="response is not a JSON object",
            recovered_fields=sorted(recovered),
        )

    try:
        if "strokeRiskAssessment" in payload:
            return _from_enhanced_schema(payload)
        if "strokeIndicators" in payload or "confidenceLevel" in payload:
            return _from_legacy_schema(payload)
        raise _MissingField("strokeRiskAssessment")
    except _MissingField as exc:
        return NormalizationFailure(
            reason="required field missing or invalid",
            missing_fields=[str(exc)],
        )
    except ValidationError as exc:
        logger.warning("Medical assessment failed schema validation: %s", exc.error_count())
        return NormalizationFailure(reason=f"schema validation failed ({exc.error_count()} errors)")


def normalize_validation_critique(raw_text: str) -> Union[ValidationCritique, NormalizationFailure]:
    payload = parse_json_object(raw_text or "")
    if payload is None:
        return NormalizationFailure(
            reason="response is not a JSON object",
            recovered_fields=sorted(recover_fields(raw_text or "", VALIDATION_REQUIRED_FIELDS)),
        )

    score = coerce_score(payload.get("validationScore"))
    agreement = _lookup(AGREEMENT_ALIASES, payload.get("agreement"))
    missing = [
        name
        for name, value in (("validationScore", score), ("agreement", agreement))
        if value is None
    ]
    if missing:
        return NormalizationFailure(reason="required field missing or invalid", missing_fields=missing)

    try:
        return ValidationCritique(
            agreement=agreement,
            validation_score=score,
            suggested_risk_level=coerce_risk_level(payload.get("suggestedRiskLevel")),
            missed_indicators=_as_list(payload.get("missedIndicators")),
            recommendation_issues=_as_list(payload.get("recommendationIssues")),
            notes=_as_text(payload.get("notes")),
        )
    except ValidationError as exc:
        return NormalizationFailure(reason=f"schema validation failed ({exc.error_count()} errors)")
