from models import (
    AssessmentSource,
    FacialMetrics,
    PostureMetrics,
    RateStats,
    RiskLevel,
    SpeechFeatures,
    StrokeIndicatorSummary,
    UrgencyLevel,
)
from risk_rules import (
    FALLBACK_CONFIDENCE,
    NO_EVIDENCE_FINDING,
    build_fallback_assessment,
    collect_metrics,
    evaluate_rules,
    risk_level_for_score,
)


def _speech(wpm=150.0, duration=30.0, long_pauses=0, low_confidence_ratio=0.0):
    return SpeechFeatures(
        source="caller",
        rate_stats=RateStats(token_count=10, duration_seconds=duration, words_per_minute=wpm),
        stroke_indicator_summary=StrokeIndicatorSummary(
            words_per_minute=wpm,
            long_pause_count=long_pauses,
            low_confidence_ratio=low_confidence_ratio,
        ),
    )


def test_no_evidence_yields_typed_low_risk_record():
    assessment = build_fallback_assessment(None, None, None)

    assert assessment.risk_score == 0.0
    assert assessment.risk_level == RiskLevel.LOW
    assert assessment.urgency_level == UrgencyLevel.ROUTINE
    assert assessment.confidence == FALLBACK_CONFIDENCE
    assert assessment.key_findings == [NO_EVIDENCE_FINDING]
    assert assessment.source == AssessmentSource.RULE_BASED


def test_empty_speech_placeholder_contributes_no_metrics():
    assert collect_metrics(SpeechFeatures(), None, None) == {}


def test_significant_asymmetry_supersedes_mild_rule():
    evaluation = evaluate_rules(collect_metrics(None, FacialMetrics(overall_asymmetry=0.2), None))

    assert evaluation.fired == ("facial_asymmetry_significant",)
    assert evaluation.score == 35.0


def test_mild_asymmetry_and_shoulder_imbalance():
    metrics = collect_metrics(
        None,
        FacialMetrics(overall_asymmetry=0.1),
        PostureMetrics(shoulder_imbalance=0.08, postural_stability=0.5),
    )
    evaluation = evaluate_rules(metrics)

    assert evaluation.fired == ("facial_asymmetry_mild", "shoulder_imbalance_mild", "postural_instability")
    assert evaluation.score == 45.0
    assert risk_level_for_score(evaluation.score) == RiskLevel.MODERATE


def test_speech_rules_reach_critical_band():
    assessment = build_fallback_assessment(_speech(wpm=90, long_pauses=3, low_confidence_ratio=0.4), None, None)

    assert assessment.risk_score == 90.0
    assert assessment.risk_level == RiskLevel.CRITICAL
    assert assessment.urgency_level == UrgencyLevel.CRITICAL
    assert "Call emergency services immediately" in assessment.recommendations.next_steps
    assert "Possible slurred speech" in assessment.key_findings


def test_score_is_capped_at_one_hundred():
    assessment = build_fallback_assessment(
        _speech(wpm=90, long_pauses=3, low_confidence_ratio=0.4),
        FacialMetrics(overall_asymmetry=0.3),
        PostureMetrics(shoulder_imbalance=0.2),
    )

    assert assessment.risk_score == 100.0


def test_zero_duration_speech_does_not_count_as_slow():
    metrics = collect_metrics(_speech(wpm=0.0, duration=0.0), None, None)

    assert "speech.words_per_minute" not in metrics
    assert evaluate_rules(metrics).fired == ()


def test_risk_level_boundaries():
    assert risk_level_for_score(85) == RiskLevel.CRITICAL
    assert risk_level_for_score(84.9) == RiskLevel.HIGH
    assert risk_level_for_score(70) == RiskLevel.HIGH
    assert risk_level_for_score(40) == RiskLevel.MODERATE
    assert risk_level_for_score(39.9) == RiskLevel.LOW
