import json

from models import AssessmentSource, RiskLevel, Severity, UrgencyLevel, ValidationAgreement
from response_normalizer import (
    NormalizationFailure,
    coerce_risk_level,
    coerce_score,
    normalize_medical_assessment,
    normalize_validation_critique,
    parse_json_object,
    repair_truncated_json,
)


ENHANCED = {
    "strokeRiskAssessment": {
        "overallRisk": "medium",
        "riskScore": "55",
        "nihssEquivalent": 3,
        "confidence": "0.85",
    },
    "territorialAnalysis": {"anteriorCirculation": 60, "posteriorCirculation": 10, "mostLikely": "MCA"},
    "clinicalFindings": {
        "speechLanguage": {"dysarthria": "moderate", "aphasia": "absent", "details": "slurred consonants"},
        "facialFunction": {"asymmetry": "mild"},
    },
    "keyFindings": ["Reduced speech rate", "Left facial droop"],
    "recommendations": {"urgency": "emergent", "nextSteps": ["Call emergency services"]},
    "medicalSummary": "Possible anterior circulation event.",
}


def test_enhanced_schema_inside_markdown_fence():
    raw = "```json\n" + json.dumps(ENHANCED) + "\n```"
    assessment = normalize_medical_assessment(raw)

    assert not isinstance(assessment, NormalizationFailure)
    assert assessment.risk_level == RiskLevel.MODERATE
    assert assessment.risk_score == 55.0
    assert assessment.confidence == 85.0
    assert assessment.urgency_level == UrgencyLevel.CRITICAL
    assert assessment.nihss_equivalent == 3.0
    assert assessment.territorial_likelihoods.most_likely == "MCA"
    assert assessment.clinical_findings.speech_language.dysarthria == Severity.MODERATE
    assert assessment.clinical_findings.speech_language.aphasia == Severity.NONE
    assert assessment.clinical_findings.motor_function.balance == Severity.NONE
    assert assessment.key_findings == ["Reduced speech rate", "Left facial droop"]
    assert assessment.source == AssessmentSource.REASONING


def test_json_embedded_in_prose_is_recovered():
    raw = "Here is my analysis:\n" + json.dumps(ENHANCED) + "\nLet me know if you need more."
    assessment = normalize_medical_assessment(raw)

    assert not isinstance(assessment, NormalizationFailure)
    assert assessment.risk_level == RiskLevel.MODERATE


def test_truncated_json_is_repaired():
    raw = (
        '{"strokeRiskAssessment": {"overallRisk": "severe", "riskScore": 75, "confidence": 80}, '
        '"medicalSummary": "Patient shows sig'
    )
    assessment = normalize_medical_assessment(raw)

    assert not isinstance(assessment, NormalizationFailure)
    assert assessment.risk_level == RiskLevel.HIGH
    assert assessment.medical_summary == "Patient shows sig"
    assert assessment.urgency_level == UrgencyLevel.URGENT


def test_repair_truncated_json_keeps_first_balanced_object():
    assert repair_truncated_json('{"a": 1} trailing {"b": 2}') == '{"a": 1}'
    assert json.loads(repair_truncated_json('{"a": [1, 2, {"b": "x')) == {"a": [1, 2, {"b": "x"}]}


def test_legacy_schema_maps_level_to_band_score():
    raw = json.dumps(
        {
            "strokeIndicators": {"overallSpeechRisk": "high", "dysarthriaLevel": "mild"},
            "confidenceLevel": 72,
            "recommendations": ["See a neurologist"],
            "clinicalObservations": ["Mild slurring"],
        }
    )
    assessment = normalize_medical_assessment(raw)

    assert not isinstance(assessment, NormalizationFailure)
    assert assessment.risk_level == RiskLevel.HIGH
    assert assessment.risk_score == 70.0
    assert assessment.confidence == 72.0
    assert assessment.urgency_level == UrgencyLevel.URGENT
    assert assessment.clinical_findings.speech_language.dysarthria == Severity.MILD
    assert assessment.recommendations.next_steps == ["See a neurologist"]


def test_non_json_reports_recovered_fields():
    failure = normalize_medical_assessment("overallRisk: high, riskScore: 80 and I am fairly sure")

    assert isinstance(failure, NormalizationFailure)
    assert failure.reason == "response is not a JSON object"
    assert failure.recovered_fields == ["overallRisk", "riskScore"]
    assert "recovered: overallRisk, riskScore" in failure.describe()


def test_missing_required_field_is_a_failure():
    payload = {"strokeRiskAssessment": {"overallRisk": "low", "riskScore": 10}}
    failure = normalize_medical_assessment(json.dumps(payload))

    assert isinstance(failure, NormalizationFailure)
    assert failure.missing_fields == ["confidence"]


def test_unknown_risk_vocabulary_is_a_failure():
    payload = {"strokeRiskAssessment": {"overallRisk": "purple", "riskScore": 10, "confidence": 50}}
    failure = normalize_medical_assessment(json.dumps(payload))

    assert isinstance(failure, NormalizationFailure)
    assert failure.missing_fields == ["overallRisk"]


def test_unrecognised_object_is_a_failure():
    failure = normalize_medical_assessment('{"answer": "the patient is fine"}')

    assert isinstance(failure, NormalizationFailure)
    assert failure.missing_fields == ["strokeRiskAssessment"]


def test_risk_vocabulary_aliases():
    assert coerce_risk_level("Medium") == RiskLevel.MODERATE
    assert coerce_risk_level("none") == RiskLevel.LOW
    assert coerce_risk_level("very_high") == RiskLevel.CRITICAL
    assert coerce_risk_level("Emergent") == RiskLevel.CRITICAL
    assert coerce_risk_level("") is None


def test_coerce_score_formats():
    assert coerce_score("72%") == 72.0
    assert coerce_score(0.72) == 72.0
    assert coerce_score(1) == 1.0
    assert coerce_score(150) == 100.0
    assert coerce_score(-5) == 0.0
    assert coerce_score("n/a") is None
    assert coerce_score(True) is None
    assert coerce_score(50, upper=42.0) == 42.0


def test_coerce_score_rejects_non_finite_numbers():
    assert coerce_score(float("nan")) is None
    assert coerce_score(float("inf")) is None
    assert coerce_score("inf") is None
    assert coerce_score("-Infinity") is None
    assert coerce_score("NaN%") is None


def test_non_finite_scores_in_json_are_a_failure():
    nan_score = '{"strokeRiskAssessment": {"overallRisk": "low", "riskScore": NaN, "confidence": 80}}'
    inf_confidence = '{"strokeRiskAssessment": {"overallRisk": "low", "riskScore": 10, "confidence": Infinity}}'

    first = normalize_medical_assessment(nan_score)
    second = normalize_medical_assessment(inf_confidence)

    assert isinstance(first, NormalizationFailure)
    assert first.missing_fields == ["riskScore"]
    assert isinstance(second, NormalizationFailure)
    assert second.missing_fields == ["confidence"]


def test_parse_json_object_ignores_arrays():
    assert parse_json_object("[1, 2, 3]") is None
    assert parse_json_object('[1] then {"ok": true}') == {"ok": True}


def test_validation_critique_normalization():
    critique = normalize_validation_critique(
        '{"agreement": "Agrees", "validationScore": "80%", "suggestedRiskLevel": "medium", '
        '"missedIndicators": "word-finding pauses"}'
    )

    assert not isinstance(critique, NormalizationFailure)
    assert critique.agreement == ValidationAgreement.CORROBORATES
    assert critique.validation_score == 80.0
    assert critique.suggested_risk_level == RiskLevel.MODERATE
    assert critique.missed_indicators == ["word-finding pauses"]


def test_validation_critique_requires_agreement_and_score():
    failure = normalize_validation_critique('{"notes": "looks fine"}')

    assert isinstance(failure, NormalizationFailure)
    assert failure.missing_fields == ["validationScore", "agreement"]
