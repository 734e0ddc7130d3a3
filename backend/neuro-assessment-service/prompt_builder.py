"""
Clinical prompt assembly for stroke-risk reasoning and validation.

Provides:
- the primary reasoning prompt (speech, facial, posture, context sections)
- the secondary validation prompt that critiques a primary assessment
"""

from __future__ import annotations

import json
from typing import Iterable, List, Optional

from models import (
    FacialMetrics,
    MedicalAssessment,
    PatientContext,
    PostureMetrics,
    SpeechFeatures,
)

NOT_AVAILABLE = "not available"

RESPONSE_SCHEMA = {
    "strokeRiskAssessment": {
        "overallRisk": "low|moderate|high|critical",
        "riskScore": "0-100",
        "nihssEquivalent": "0-42",
        "confidence": "0-100",
    },
    "territorialAnalysis": {
        "anteriorCirculation": "0-100",
        "posteriorCirculation": "0-100",
        "lacunar": "0-100",
        "mostLikely": "territory name",
    },
    "clinicalFindings": {
        "speechLanguage": {
            "dysarthria": "none|mild|moderate|severe",
            "aphasia": "none|mild|moderate|severe",
            "apraxia": "none|mild|moderate|severe",
            "details": "text",
        },
        "facialFunction": {
            "asymmetry": "none|mild|moderate|severe",
            "weakness": "none|mild|moderate|severe",
            "details": "text",
        },
        "motorFunction": {
            "coordination": "none|mild|moderate|severe",
            "balance": "none|mild|moderate|severe",
            "details": "text",
        },
    },
    "keyFindings": ["finding"],
    "multimodalCorrelation": "how the modalities support each other",
    "recommendations": {
        "urgency": "routine|moderate|urgent|critical",
        "nextSteps": ["step"],
        "followUp": "text",
        "redFlags": ["sign"],
    },
    "medicalSummary": "text for clinicians",
    "patientSummary": "plain-language text",
}

VALIDATION_SCHEMA = {
    "agreement": "corroborates|partial|contradicts",
    "validationScore": "0-100",
    "suggestedRiskLevel": "low|moderate|high|critical",
    "missedIndicators": ["indicator"],
    "recommendationIssues": ["issue"],
    "notes": "text",
}


def _fmt(value: Optional[float], digits: int = 3) -> str:
    if value is None:
        return NOT_AVAILABLE
    return f"{value:.{digits}f}"


def _section(title: str, lines: Iterable[str]) -> str:
    body = [line for line in lines if line]
    if not body:
        body = [NOT_AVAILABLE]
    return "\n".join([f"## {title}"] + [f"- {line}" for line in body])


class ClinicalPromptBuilder:
    def reasoning_instruction(self) -> str:
        return (
            "You are a neurologist specialising in acute stroke screening. "
            "Assess stroke risk from the multimodal evidence below. Sections marked "
            f"'{NOT_AVAILABLE}' were not captured; do not infer findings for them. "
            "Return strict JSON only, matching the response schema. Do not add markdown."
        )

    def speech_section(self, transcript: Optional[str], features: Optional[SpeechFeatures]) -> str:
        lines: List[str] = []
        text = (transcript or "").strip()
        lines.append(f"Transcript: {json.dumps(text) if text else NOT_AVAILABLE}")
        if features is None or features.is_empty:
            lines.append(f"Speech metrics: {NOT_AVAILABLE}")
            return _section("SPEECH DATA", lines)

        pauses = features.pause_stats
        disfluency = features.disfluency_stats
        pronunciation = features.pronunciation_stats
        rate = features.rate_stats
        lines.extend(
            [
                f"Pauses >500ms: {pauses.pause_count} (long: {pauses.long_pause_count}, "
                f"average {_fmt(pauses.average_pause_ms, 1)}ms, max {pauses.max_pause_ms}ms)",
                f"Disfluency rate: {_fmt(disfluency.disfluency_rate)} ({disfluency.severity.value}); "
                f"fillers {disfluency.filler_count}, repetitions {disfluency.repetition_count}, "
                f"hesitations {disfluency.hesitation_count}",
                f"Pronunciation accuracy: {_fmt(pronunciation.accuracy)}; "
                f"stroke-sensitive word accuracy {_fmt(pronunciation.difficult_word_accuracy)}; "
                f"issues {len(pronunciation.issues)}",
                f"Speech rate: {_fmt(rate.words_per_minute, 1)} wpm ({rate.category.value}), "
                f"{_fmt(rate.syllables_per_minute, 1)} syllables/min",
            ]
        )
        for pause in pauses.long_pauses[:5]:
            lines.append(
                f"Long pause {pause.duration_ms}ms after {json.dumps(pause.preceding_word)} "
                f"({pause.severity.value})"
            )
        return _section("SPEECH DATA", lines)

    def facial_section(self, facial: Optional[FacialMetrics]) -> str:
        if facial is None:
            return _section("FACIAL METRICS", [])
        return _section(
            "FACIAL METRICS",
            [
                f"Overall asymmetry: {_fmt(facial.overall_asymmetry)} (normal < 0.050)",
                f"Eye asymmetry: {_fmt(facial.eye_asymmetry)}",
                f"Mouth asymmetry: {_fmt(facial.mouth_asymmetry)}",
                f"Eyebrow asymmetry: {_fmt(facial.eyebrow_asymmetry)}",
                f"Detection confidence: {_fmt(facial.confidence_score)}",
            ],
        )

    def posture_section(self, posture: Optional[PostureMetrics]) -> str:
        if posture is None:
            return _section("POSTURE METRICS", [])
        return _section(
            "POSTURE METRICS",
            [
                f"Shoulder imbalance: {_fmt(posture.shoulder_imbalance)}",
                f"Head tilt: {_fmt(posture.head_tilt)}",
                f"Body lean: {_fmt(posture.body_lean)}",
                f"Postural stability: {_fmt(posture.postural_stability)}",
                f"Coordination score: {_fmt(posture.coordination_score)}",
                f"Balance score: {_fmt(posture.balance_score)}",
            ],
        )

    def context_section(self, context: Optional[PatientContext]) -> str:
        if context is None:
            return _section("ASSESSMENT CONTEXT", [])
        history = ", ".join(context.medical_history) if context.medical_history else NOT_AVAILABLE
        duration = NOT_AVAILABLE
        if context.duration_seconds is not None:
            duration = f"{context.duration_seconds:.1f}s"
        return _section(
            "ASSESSMENT CONTEXT",
            [
                f"Assessment type: {context.assessment_type}",
                f"Duration: {duration}",
                f"Age: {context.age if context.age is not None else NOT_AVAILABLE}",
                f"Gender: {context.gender or NOT_AVAILABLE}",
                f"Medical history: {history}",
                f"Expected text: {json.dumps(context.expected_text) if context.expected_text else NOT_AVAILABLE}",
            ],
        )

    def build_evidence(
        self,
        *,
        transcript: Optional[str],
        speech_features: Optional[SpeechFeatures],
        facial: Optional[FacialMetrics],
        posture: Optional[PostureMetrics],
        context: Optional[PatientContext],
    ) -> str:
        """
        Labeled evidence sections in fixed order; absent modalities read `not available`.
        """
        return "\n\n".join(
            [
                self.speech_section(transcript, speech_features),
                self.facial_section(facial),
                self.posture_section(posture),
                self.context_section(context),
            ]
        )

    def build_reasoning_prompt(self, evidence: str) -> str:
        sections = [
            self.reasoning_instruction(),
            evidence,
            "## ASSESSMENT PROTOCOL\n"
            "1. Grade dysarthria, aphasia and apraxia from the speech evidence.\n"
            "2. Correlate facial asymmetry and posture with the speech findings.\n"
            "3. Estimate vascular territory likelihoods and an NIHSS-equivalent score.\n"
            "4. Set urgency and list red flags that require emergency care.",
            "## RESPONSE SCHEMA\n" + json.dumps(RESPONSE_SCHEMA, indent=2, sort_keys=True),
        ]
        return "\n\n".join(sections)

    def build_validation_prompt(self, primary: MedicalAssessment, evidence: str) -> str:
        primary_json = primary.model_dump_json(
            include={
                "risk_level",
                "risk_score",
                "confidence",
                "urgency_level",
                "clinical_findings",
                "key_findings",
                "recommendations",
            }
        )
        return "\n\n".join(
            [
                "You are a senior neurologist reviewing another model's stroke-risk assessment. "
                "Check it against the evidence, list missed indicators and problems with the "
                "recommendations, and state whether you corroborate it. Return strict JSON only.",
                "## PRIMARY ASSESSMENT\n" + primary_json,
                "## ORIGINAL EVIDENCE\n" + evidence,
                "## RESPONSE SCHEMA\n" + json.dumps(VALIDATION_SCHEMA, indent=2, sort_keys=True),
            ]
        )
