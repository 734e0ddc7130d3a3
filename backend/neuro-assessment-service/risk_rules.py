"""
Neuro Assessment Service - Rule-Based Risk Fallback

Deterministic stroke-risk scoring from numeric speech, facial and posture
metrics. Used whenever the reasoning model gives no usable assessment.
Every threshold lives in the named RULES table below.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from models import (
    AssessmentSource,
    FacialMetrics,
    MedicalAssessment,
    PostureMetrics,
    Recommendations,
    RiskLevel,
    SpeechFeatures,
    URGENCY_FOR_RISK,
)

# Speech thresholds
SLOW_SPEECH_WPM = 120.0
LONG_PAUSE_LIMIT = 2
SLURRING_LOW_CONFIDENCE_RATIO = 0.3
DISFLUENCY_RATE_LIMIT = 0.08
REPETITION_LIMIT = 3

# Facial thresholds
FACIAL_ASYMMETRY_SIGNIFICANT = 0.15
FACIAL_ASYMMETRY_MILD = 0.08

# Posture thresholds
SHOULDER_IMBALANCE_SIGNIFICANT = 0.12
SHOULDER_IMBALANCE_MILD = 0.06
POSTURAL_STABILITY_MIN = 0.6

# Score bands (inclusive lower bounds)
CRITICAL_RISK_SCORE = 85.0
HIGH_RISK_SCORE = 70.0
MODERATE_RISK_SCORE = 40.0
MAX_RISK_SCORE = 100.0

FALLBACK_CONFIDENCE = 30.0
NO_EVIDENCE_FINDING = "No numeric metrics were available for rule-based screening"


@dataclass(frozen=True)
class RiskRule:
    name: str
    metric: str
    compare: Callable[[float, float], bool]
    threshold: float
    points: float
    finding: str
    # Rule is skipped when any rule named here already fired.
    superseded_by: Tuple[str, ...] = ()


RULES: Tuple[RiskRule, ...] = (
    RiskRule(
        "slow_speech",
        "speech.words_per_minute",
        operator.lt,
        SLOW_SPEECH_WPM,
        25,
        "Reduced speech rate",
    ),
    RiskRule(
        "long_pauses",
        "speech.long_pause_count",
        operator.gt,
        LONG_PAUSE_LIMIT,
        30,
        "Frequent long pauses in speech",
    ),
    RiskRule(
        "slurring",
        "speech.low_confidence_ratio",
        operator.gt,
        SLURRING_LOW_CONFIDENCE_RATIO,
        35,
        "Possible slurred speech",
    ),
    RiskRule(
        "elevated_disfluency",
        "speech.disfluency_rate",
        operator.gt,
        DISFLUENCY_RATE_LIMIT,
        20,
        "Elevated disfluency rate",
    ),
    RiskRule(
        "repetitions",
        "speech.repetition_count",
        operator.gt,
        REPETITION_LIMIT,
        15,
        "Repeated words",
    ),
    RiskRule(
        "facial_asymmetry_significant",
        "facial.overall_asymmetry",
        operator.gt,
        FACIAL_ASYMMETRY_SIGNIFICANT,
        35,
        "Significant facial asymmetry detected",
    ),
    RiskRule(
        "facial_asymmetry_mild",
        "facial.overall_asymmetry",
        operator.gt,
        FACIAL_ASYMMETRY_MILD,
        20,
        "Mild facial asymmetry detected",
        superseded_by=("facial_asymmetry_significant",),
    ),
    RiskRule(
        "shoulder_imbalance_significant",
        "posture.shoulder_imbalance",
        operator.gt,
        SHOULDER_IMBALANCE_SIGNIFICANT,
        30,
        "Significant shoulder imbalance",
    ),
    RiskRule(
        "shoulder_imbalance_mild",
        "posture.shoulder_imbalance",
        operator.gt,
        SHOULDER_IMBALANCE_MILD,
        15,
        "Mild shoulder imbalance",
        superseded_by=("shoulder_imbalance_significant",),
    ),
    RiskRule(
        "postural_instability",
        "posture.postural_stability",
        operator.lt,
        POSTURAL_STABILITY_MIN,
        10,
        "Reduced postural stability",
    ),
)

RECOMMENDATIONS_FOR_LEVEL: Dict[RiskLevel, List[str]] = {
    RiskLevel.CRITICAL: [
        "Call emergency services immediately",
        "Note the time symptoms were first observed",
        "Do not drive to the hospital yourself",
    ],
    RiskLevel.HIGH: [
        "Consult a healthcare provider immediately",
        "Consider emergency evaluation if symptoms persist",
        "Monitor for additional stroke symptoms",
    ],
    RiskLevel.MODERATE: [
        "Schedule an appointment with a healthcare provider",
        "Monitor symptoms closely",
        "Repeat the assessment in 24 hours",
    ],
    RiskLevel.LOW: [
        "Continue regular health monitoring",
        "Maintain a healthy lifestyle",
    ],
}

BASE_RECOMMENDATIONS = [
    "Manual clinical assessment recommended",
    "Seek emergency care if sudden weakness, confusion or vision loss occurs",
]


@dataclass(frozen=True)
class RuleEvaluation:
    score: float
    fired: Tuple[str, ...]
    findings: Tuple[str, ...]
    evaluated_metrics: int


def collect_metrics(
    speech: Optional[SpeechFeatures],
    facial: Optional[FacialMetrics],
    posture: Optional[PostureMetrics],
) -> Dict[str, float]:
    metrics: Dict[str, float] = {}
    if speech is not None and not speech.is_empty:
        summary = speech.stroke_indicator_summary
        if speech.rate_stats.duration_seconds > 0:
            metrics["speech.words_per_minute"] = summary.words_per_minute
        metrics["speech.long_pause_count"] = float(summary.long_pause_count)
        metrics["speech.low_confidence_ratio"] = summary.low_confidence_ratio
        metrics["speech.disfluency_rate"] = summary.disfluency_rate
        metrics["speech.repetition_count"] = float(summary.repetition_count)
    for prefix, block in (("facial", facial), ("posture", posture)):
        if block is None:
            continue
        for name, value in block.model_dump().items():
            if value is not None:
                metrics[f"{prefix}.{name}"] = float(value)
    return metrics


def evaluate_rules(metrics: Dict[str, float], rules: Tuple[RiskRule, ...] = RULES) -> RuleEvaluation:
    fired: List[str] = []
    findings: List[str] = []
    score = 0.0
    for rule in rules:
        value = metrics.get(rule.metric)
        if value is None or any(name in fired for name in rule.superseded_by):
            continue
        if rule.compare(value, rule.threshold):
            fired.append(rule.name)
            findings.append(rule.finding)
            score += rule.points
    return RuleEvaluation(
        score=min(MAX_RISK_SCORE, score),
        fired=tuple(fired),
        findings=tuple(findings),
        evaluated_metrics=len(metrics),
    )


def risk_level_for_score(score: float) -> RiskLevel:
    if score >= CRITICAL_RISK_SCORE:
        return RiskLevel.CRITICAL
    if score >= HIGH_RISK_SCORE:
        return RiskLevel.HIGH
    if score >= MODERATE_RISK_SCORE:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


def build_fallback_assessment(
    speech: Optional[SpeechFeatures],
    facial: Optional[FacialMetrics],
    posture: Optional[PostureMetrics],
) -> MedicalAssessment:
    """
    Rule-table assessment. With no numeric evidence the score is 0 and the
    summary says so; the caller still gets a typed record.
    """
    metrics = collect_metrics(speech, facial, posture)
    evaluation = evaluate_rules(metrics)
    level = risk_level_for_score(evaluation.score)
    urgency = URGENCY_FOR_RISK[level]
    fired = ", ".join(evaluation.fired) or "none"
    findings = list(evaluation.findings)
    if not findings:
        findings = ["No rule thresholds exceeded"] if metrics else [NO_EVIDENCE_FINDING]
    return MedicalAssessment(
        risk_level=level,
        risk_score=evaluation.score,
        confidence=FALLBACK_CONFIDENCE,
        urgency_level=urgency,
        recommendations=Recommendations(
            urgency=urgency,
            next_steps=RECOMMENDATIONS_FOR_LEVEL[level] + BASE_RECOMMENDATIONS,
        ),
        key_findings=findings,
        medical_summary=(
            f"Rule-based screening score {evaluation.score:.0f}/100 from "
            f"{evaluation.evaluated_metrics} metrics (rules fired: {fired}). "
            "AI analysis temporarily unavailable."
        ),
        patient_summary="This is an automated screening result. Please confirm with a clinician.",
        source=AssessmentSource.RULE_BASED,
    )
