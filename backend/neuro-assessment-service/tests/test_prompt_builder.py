from fakes import make_transcription
from models import FacialMetrics, MedicalAssessment, PatientContext, PostureMetrics, RiskLevel, SpeechFeatures
from prompt_builder import NOT_AVAILABLE, ClinicalPromptBuilder
from speech_features import extract_speech_features


builder = ClinicalPromptBuilder()


def test_missing_modalities_read_not_available():
    evidence = builder.build_evidence(
        transcript=None,
        speech_features=SpeechFeatures(),
        facial=None,
        posture=None,
        context=None,
    )

    headings = ["## SPEECH DATA", "## FACIAL METRICS", "## POSTURE METRICS", "## ASSESSMENT CONTEXT"]
    positions = [evidence.index(heading) for heading in headings]
    assert positions == sorted(positions)
    assert f"Transcript: {NOT_AVAILABLE}" in evidence
    assert f"Speech metrics: {NOT_AVAILABLE}" in evidence
    assert evidence.count(f"- {NOT_AVAILABLE}") == 3


def test_evidence_renders_all_supplied_metrics():
    features = extract_speech_features(make_transcription(["the", "the", "um", "right", "arm"]))
    evidence = builder.build_evidence(
        transcript="the the um right arm",
        speech_features=features,
        facial=FacialMetrics(overall_asymmetry=0.12, mouth_asymmetry=0.2),
        posture=PostureMetrics(shoulder_imbalance=0.07),
        context=PatientContext(age=67, medical_history=["hypertension", "diabetes"]),
    )

    assert 'Transcript: "the the um right arm"' in evidence
    assert "Disfluency rate: 0.400 (severe)" in evidence
    assert "Overall asymmetry: 0.120" in evidence
    assert f"Eye asymmetry: {NOT_AVAILABLE}" in evidence
    assert "Shoulder imbalance: 0.070" in evidence
    assert "Age: 67" in evidence
    assert "Medical history: hypertension, diabetes" in evidence
    assert f"Duration: {NOT_AVAILABLE}" in evidence


def test_reasoning_prompt_wraps_evidence_with_protocol_and_schema():
    evidence = builder.build_evidence(
        transcript="hello", speech_features=None, facial=None, posture=None, context=None
    )
    prompt = builder.build_reasoning_prompt(evidence)

    assert prompt.startswith(builder.reasoning_instruction())
    assert evidence in prompt
    assert "## ASSESSMENT PROTOCOL" in prompt
    assert '"strokeRiskAssessment"' in prompt
    assert prompt.index(evidence) < prompt.index("## RESPONSE SCHEMA")


def test_validation_prompt_carries_primary_and_evidence_only():
    primary = MedicalAssessment(risk_level=RiskLevel.HIGH, risk_score=72, confidence=80)
    evidence = builder.build_evidence(
        transcript="hello", speech_features=None, facial=None, posture=None, context=None
    )
    prompt = builder.build_validation_prompt(primary, evidence)

    assert '"risk_level":"high"' in prompt
    assert "## ORIGINAL EVIDENCE\n" + evidence in prompt
    assert '"validationScore"' in prompt
    assert "## ASSESSMENT PROTOCOL" not in prompt
    assert "medical_summary" not in prompt
