"""
Neuro Assessment Service - Data Models

Pydantic contracts for:
- Provider capabilities and adapter inputs
- Transcription output and derived speech features
- Medical assessment, validation critique and aggregation
- API request/response payloads
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_assessment_id() -> str:
    return f"NA-{uuid4().hex[:12]}"


# =============================================================================
# ENUMS
# =============================================================================


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(str, Enum):
    NONE = "none"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class UrgencyLevel(str, Enum):
    ROUTINE = "routine"
    MODERATE = "moderate"
    URGENT = "urgent"
    CRITICAL = "critical"


class DisfluencySeverity(str, Enum):
    NORMAL = "normal"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class RateCategory(str, Enum):
    VERY_SLOW = "very slow"
    SLOW = "slow"
    NORMAL = "normal"
    FAST = "fast"
    VERY_FAST = "very fast"
    UNKNOWN = "unknown"


class AdapterErrorKind(str, Enum):
    UNCONFIGURED = "unconfigured"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


class CapabilityStatus(str, Enum):
    HEALTHY = "healthy"
    ERROR = "error"
    UNAVAILABLE = "unavailable"


class ValidationAgreement(str, Enum):
    CORROBORATES = "corroborates"
    PARTIAL = "partial"
    CONTRADICTS = "contradicts"


class AssessmentSource(str, Enum):
    REASONING = "reasoning"
    RULE_BASED = "rule_based"
    NONE = "none"


RISK_ORDER = [RiskLevel.LOW, RiskLevel.MODERATE, RiskLevel.HIGH, RiskLevel.CRITICAL]

URGENCY_FOR_RISK: Dict[RiskLevel, UrgencyLevel] = {
    RiskLevel.LOW: UrgencyLevel.ROUTINE,
    RiskLevel.MODERATE: UrgencyLevel.MODERATE,
    RiskLevel.HIGH: UrgencyLevel.URGENT,
    RiskLevel.CRITICAL: UrgencyLevel.CRITICAL,
}


# =============================================================================
# PROVIDER CAPABILITY
# =============================================================================


class ProviderCapability(BaseModel):
    name: str
    status: CapabilityStatus
    available: bool
    last_error: Optional[str] = None
    last_checked_at: datetime = Field(default_factory=utc_now)


class CapabilityMatrix(BaseModel):
    capabilities: Dict[str, ProviderCapability] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=utc_now)

    def is_available(self, name: str) -> bool:
        capability = self.capabilities.get(name)
        return bool(capability and capability.available)


# =============================================================================
# ADAPTER INPUTS
# =============================================================================


class TranscriptionRequest(BaseModel):
    audio: Optional[bytes] = None
    audio_url: Optional[str] = None
    language_code: str = "en"
    boosted_vocabulary: List[str] = Field(default_factory=list)
    expected_duration_hint: Optional[float] = None


class ReasoningRequest(BaseModel):
    prompt: str
    temperature: float = 0.1
    max_output_tokens: int = 2048
    system_instruction: Optional[str] = None


# =============================================================================
# TRANSCRIPTION + SPEECH FEATURES
# =============================================================================


class TranscriptionToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    start_ms: int = Field(ge=0)
    end_ms: int = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)


class TranscriptionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = ""
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    tokens: List[TranscriptionToken] = Field(default_factory=list)
    language_code: Optional[str] = None
    audio_duration_seconds: Optional[float] = None
    provider_transcript_id: Optional[str] = None


class LongPause(BaseModel):
    start_ms: int
    duration_ms: int
    preceding_word: str = ""
    severity: Severity


class PauseStats(BaseModel):
    pause_count: int = 0
    long_pause_count: int = 0
    total_pause_ms: int = 0
    average_pause_ms: float = 0.0
    max_pause_ms: int = 0
    pause_rate: float = 0.0
    long_pauses: List[LongPause] = Field(default_factory=list)


class Hesitation(BaseModel):
    index: int
    word: str
    confidence: float


class DisfluencyStats(BaseModel):
    total_tokens: int = 0
    filler_count: int = 0
    repetition_count: int = 0
    hesitation_count: int = 0
    disfluency_rate: float = 0.0
    severity: DisfluencySeverity = DisfluencySeverity.NORMAL
    fillers: List[str] = Field(default_factory=list)
    repetitions: List[str] = Field(default_factory=list)
    hesitations: List[Hesitation] = Field(default_factory=list)


class PronunciationIssue(BaseModel):
    word: str
    category: str
    confidence: float
    severity: Severity


class PronunciationStats(BaseModel):
    accuracy: float = 0.0
    difficult_word_accuracy: float = 1.0
    issues: List[PronunciationIssue] = Field(default_factory=list)


class RateStats(BaseModel):
    token_count: int = 0
    duration_seconds: float = 0.0
    words_per_minute: float = 0.0
    syllables_per_minute: float = 0.0
    category: RateCategory = RateCategory.UNKNOWN


class StrokeIndicatorSummary(BaseModel):
    long_pause_count: int = 0
    words_per_minute: float = 0.0
    disfluency_rate: float = 0.0
    hesitation_count: int = 0
    repetition_count: int = 0
    pronunciation_accuracy: float = 0.0
    low_confidence_ratio: float = 0.0


class SpeechFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = "none"
    pause_stats: PauseStats = Field(default_factory=PauseStats)
    disfluency_stats: DisfluencyStats = Field(default_factory=DisfluencyStats)
    pronunciation_stats: PronunciationStats = Field(default_factory=PronunciationStats)
    rate_stats: RateStats = Field(default_factory=RateStats)
    stroke_indicator_summary: StrokeIndicatorSummary = Field(default_factory=StrokeIndicatorSummary)

    @property
    def is_empty(self) -> bool:
        return self.source == "none"


# =============================================================================
# VISION + CONTEXT INPUTS
# =============================================================================


class FacialMetrics(BaseModel):
    overall_asymmetry: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    eye_asymmetry: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    mouth_asymmetry: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    eyebrow_asymmetry: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class PostureMetrics(BaseModel):
    shoulder_imbalance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    head_tilt: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    body_lean: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    postural_stability: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    coordination_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    balance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class PatientContext(BaseModel):
    age: Optional[int] = Field(default=None, ge=0, le=130)
    gender: Optional[str] = None
    medical_history: List[str] = Field(default_factory=list)
    assessment_type: str = "comprehensive"
    duration_seconds: Optional[float] = None
    expected_text: Optional[str] = None


# =============================================================================
# MEDICAL ASSESSMENT + VALIDATION
# =============================================================================


class TerritorialLikelihoods(BaseModel):
    anterior_circulation: float = Field(default=0.0, ge=0.0, le=100.0)
    posterior_circulation: float = Field(default=0.0, ge=0.0, le=100.0)
    lacunar: float = Field(default=0.0, ge=0.0, le=100.0)
    most_likely: Optional[str] = None


class SpeechLanguageFindings(BaseModel):
    dysarthria: Severity = Severity.NONE
    aphasia: Severity = Severity.NONE
    apraxia: Severity = Severity.NONE
    details: str = ""


class FacialFunctionFindings(BaseModel):
    asymmetry: Severity = Severity.NONE
    weakness: Severity = Severity.NONE
    details: str = ""


class MotorFunctionFindings(BaseModel):
    coordination: Severity = Severity.NONE
    balance: Severity = Severity.NONE
    details: str = ""


class ClinicalFindings(BaseModel):
    speech_language: SpeechLanguageFindings = Field(default_factory=SpeechLanguageFindings)
    facial_function: FacialFunctionFindings = Field(default_factory=FacialFunctionFindings)
    motor_function: MotorFunctionFindings = Field(default_factory=MotorFunctionFindings)


class Recommendations(BaseModel):
    urgency: UrgencyLevel = UrgencyLevel.ROUTINE
    next_steps: List[str] = Field(default_factory=list)
    follow_up: str = ""
    red_flags: List[str] = Field(default_factory=list)


class MedicalAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_level: RiskLevel
    risk_score: float = Field(ge=0.0, le=100.0)
    confidence: float = Field(ge=0.0, le=100.0)
    urgency_level: UrgencyLevel = UrgencyLevel.ROUTINE
    nihss_equivalent: Optional[float] = Field(default=None, ge=0.0, le=42.0)
    territorial_likelihoods: TerritorialLikelihoods = Field(default_factory=TerritorialLikelihoods)
    clinical_findings: ClinicalFindings = Field(default_factory=ClinicalFindings)
    recommendations: Recommendations = Field(default_factory=Recommendations)
    key_findings: List[str] = Field(default_factory=list)
    multimodal_correlation: str = ""
    medical_summary: str = ""
    patient_summary: str = ""
    source: AssessmentSource = AssessmentSource.REASONING


class ValidationCritique(BaseModel):
    agreement: ValidationAgreement
    validation_score: float = Field(ge=0.0, le=100.0)
    suggested_risk_level: Optional[RiskLevel] = None
    missed_indicators: List[str] = Field(default_factory=list)
    recommendation_issues: List[str] = Field(default_factory=list)
    notes: str = ""


class ValidationDelta(BaseModel):
    agreement: ValidationAgreement
    confidence_adjustment: float
    critique: ValidationCritique


# =============================================================================
# AGGREGATION + DIAGNOSTICS
# =============================================================================


class AggregatedAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    assessment_id: str = Field(default_factory=new_assessment_id)
    created_at: datetime = Field(default_factory=utc_now)
    transcript: Optional[str] = None
    speech_features: Optional[SpeechFeatures] = None
    medical_assessment: Optional[MedicalAssessment] = None
    validation: Optional[ValidationDelta] = None
    overall_confidence: float = Field(ge=0.0, le=100.0)
    urgency_level: UrgencyLevel = UrgencyLevel.ROUTINE
    degraded: bool = False
    contributing_adapters: List[str] = Field(default_factory=list)
    assessment_source: AssessmentSource = AssessmentSource.NONE


class SkippedAdapter(BaseModel):
    adapter: str
    reason: str


class DiagnosticError(BaseModel):
    source: str
    kind: str
    message: str


class Diagnostics(BaseModel):
    adapters_run: List[str] = Field(default_factory=list)
    adapters_skipped: List[SkippedAdapter] = Field(default_factory=list)
    errors: List[DiagnosticError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    elapsed_ms: float = 0.0
    timed_out: bool = False


# =============================================================================
# API REQUEST/RESPONSE MODELS
# =============================================================================


class AssessmentRequest(BaseModel):
    audio_base64: Optional[str] = None
    audio_url: Optional[str] = None
    transcript: Optional[str] = None
    speech_metrics: Optional[SpeechFeatures] = None
    facial_metrics: Optional[FacialMetrics] = None
    posture_metrics: Optional[PostureMetrics] = None
    patient_context: Optional[PatientContext] = None
    language_code: str = "en"
    boosted_vocabulary: List[str] = Field(default_factory=list, max_length=200)
    deadline_seconds: Optional[float] = Field(default=None, gt=0.0)

    def has_audio(self) -> bool:
        return bool(self.audio_base64 or self.audio_url)

    def has_any_input(self) -> bool:
        return any(
            [
                self.has_audio(),
                bool((self.transcript or "").strip()),
                self.speech_metrics is not None,
                self.facial_metrics is not None,
                self.posture_metrics is not None,
            ]
        )

    def decoded_audio(self) -> Optional[bytes]:
        """
        Decodes `audio_base64`; raises ValueError for malformed payloads.
        """
        if not self.audio_base64:
            return None
        try:
            return base64.b64decode(self.audio_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("audio_base64 is not valid base64 data.") from exc


class AssessmentResponse(BaseModel):
    success: bool
    assessment: AggregatedAssessment
    diagnostics: Diagnostics


class HealthResponse(BaseModel):
    status: str
    service: str
    store_backend: str
    capabilities: Dict[str, ProviderCapability] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class AudioUploadResponse(BaseModel):
    success: bool
    audio_url: str
    file_name: str
    size_bytes: int


class AssessmentHistoryItem(BaseModel):
    assessment_id: str
    created_at: datetime
    risk_level: Optional[RiskLevel] = None
    urgency_level: UrgencyLevel
    overall_confidence: float
    degraded: bool
    assessment_source: AssessmentSource


class RecentAssessmentsResponse(BaseModel):
    success: bool
    items: List[AssessmentHistoryItem] = Field(default_factory=list)


class AssessmentStatsResponse(BaseModel):
    success: bool
    total: int
    degraded: int
    by_risk_level: Dict[str, int] = Field(default_factory=dict)
    by_urgency: Dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0
