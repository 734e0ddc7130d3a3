"""
Neuro Assessment Service - Orchestrator

Runs one assessment end to end:
  1. capability matrix (cached health probes)
  2. transcription -> speech features (or caller metrics / empty placeholder)
  3. prompt -> reasoning -> normalization (or rule-based fallback)
  4. optional validation critique (confidence only)
  5. weighted confidence aggregation, background persistence

Provider failures never escape `assess`; they are folded into Diagnostics.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from adapters import (
    AdapterOutcome,
    AssemblyAITranscriptionAdapter,
    GeminiReasoningAdapter,
    OpenAIValidationAdapter,
    ProviderAdapter,
)
from assessment_repository import AssessmentRepository, build_assessment_repository
from env_loader import env_float, env_int, load_service_env
from health_monitor import HealthMonitor
from models import (
    AdapterErrorKind,
    AggregatedAssessment,
    AssessmentRequest,
    AssessmentSource,
    CapabilityMatrix,
    CapabilityStatus,
    DiagnosticError,
    Diagnostics,
    MedicalAssessment,
    ProviderCapability,
    ReasoningRequest,
    SkippedAdapter,
    SpeechFeatures,
    TranscriptionRequest,
    TranscriptionResult,
    UrgencyLevel,
    ValidationAgreement,
    ValidationDelta,
)
from prompt_builder import ClinicalPromptBuilder
from response_normalizer import (
    NormalizationFailure,
    normalize_medical_assessment,
    normalize_validation_critique,
)
from risk_rules import build_fallback_assessment
from speech_features import SpeechFeatureThresholds, extract_speech_features

logger = logging.getLogger(__name__)

# Load `.env` / `.env.local` for this service before reading os.environ.
load_service_env()

BASE_DIR = Path(__file__).parent

TRANSCRIPTION = "transcription"
REASONING = "reasoning"
VALIDATION = "validation"
NORMALIZATION_FAILURE = "normalization_failure"


class InvalidAssessmentRequest(ValueError):
    pass


@dataclass(frozen=True)
class OrchestratorSettings:
    weights: Dict[str, float] = field(
        default_factory=lambda: {TRANSCRIPTION: 0.3, REASONING: 0.5, VALIDATION: 0.2}
    )
    confidence_floor: float = 20.0
    validation_bonus: float = 10.0
    validation_penalty: float = 15.0
    default_deadline_seconds: float = 120.0
    reasoning_temperature: float = 0.1
    reasoning_max_output_tokens: int = 2048
    validation_temperature: float = 0.2
    validation_max_output_tokens: int = 1000

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        defaults = cls()
        return cls(
            weights={
                TRANSCRIPTION: env_float("NEURO_WEIGHT_TRANSCRIPTION", defaults.weights[TRANSCRIPTION]),
                REASONING: env_float("NEURO_WEIGHT_REASONING", defaults.weights[REASONING]),
                VALIDATION: env_float("NEURO_WEIGHT_VALIDATION", defaults.weights[VALIDATION]),
            },
            confidence_floor=env_float("NEURO_CONFIDENCE_FLOOR", defaults.confidence_floor),
            validation_bonus=env_float("NEURO_VALIDATION_BONUS", defaults.validation_bonus),
            validation_penalty=env_float("NEURO_VALIDATION_PENALTY", defaults.validation_penalty),
            default_deadline_seconds=env_float(
                "NEURO_ASSESS_TIMEOUT_SECONDS", defaults.default_deadline_seconds
            ),
            reasoning_temperature=env_float("NEURO_REASONING_TEMPERATURE", defaults.reasoning_temperature),
            reasoning_max_output_tokens=env_int(
                "NEURO_REASONING_MAX_OUTPUT_TOKENS", defaults.reasoning_max_output_tokens
            ),
            validation_temperature=env_float("NEURO_VALIDATION_TEMPERATURE", defaults.validation_temperature),
            validation_max_output_tokens=env_int(
                "NEURO_VALIDATION_MAX_OUTPUT_TOKENS", defaults.validation_max_output_tokens
            ),
        )


class _AssessmentRun:
    """
    Per-request bookkeeping. Never shared between requests.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, deadline_seconds: float) -> None:
        self.loop = loop
        self.started_at = loop.time()
        self.deadline = self.started_at + deadline_seconds
        self.adapters_run: List[str] = []
        self.skipped: List[SkippedAdapter] = []
        self.errors: List[DiagnosticError] = []
        self.warnings: List[str] = []
        self.confidences: Dict[str, float] = {}
        self.timed_out = False

    def remaining(self) -> float:
        return self.deadline - self.loop.time()

    def skip(self, adapter: str, reason: str) -> None:
        self.skipped.append(SkippedAdapter(adapter=adapter, reason=reason))

    def error(self, source: str, kind: str, message: str) -> None:
        self.errors.append(DiagnosticError(source=source, kind=kind, message=message))

    def contribute(self, adapter: str, confidence: float) -> None:
        self.confidences[adapter] = max(0.0, min(100.0, confidence))

    def diagnostics(self) -> Diagnostics:
        return Diagnostics(
            adapters_run=list(self.adapters_run),
            adapters_skipped=list(self.skipped),
            errors=list(self.errors),
            warnings=list(self.warnings),
            elapsed_ms=round((self.loop.time() - self.started_at) * 1000.0, 2),
            timed_out=self.timed_out,
        )


class NeuroAssessmentOrchestrator:
    def __init__(
        self,
        *,
        transcription: Optional[ProviderAdapter] = None,
        reasoning: Optional[ProviderAdapter] = None,
        validation: Optional[ProviderAdapter] = None,
        health_monitor: Optional[HealthMonitor] = None,
        repository: Optional[AssessmentRepository] = None,
        prompt_builder: Optional[ClinicalPromptBuilder] = None,
        feature_thresholds: Optional[SpeechFeatureThresholds] = None,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        self.adapters: Dict[str, ProviderAdapter] = {
            name: adapter
            for name, adapter in (
                (TRANSCRIPTION, transcription),
                (REASONING, reasoning),
                (VALIDATION, validation),
            )
            if adapter is not None
        }
        self.health_monitor = health_monitor or HealthMonitor(self.adapters)
        self.repository = repository
        self.prompt_builder = prompt_builder or ClinicalPromptBuilder()
        self.feature_thresholds = feature_thresholds or SpeechFeatureThresholds()
        self.settings = settings or OrchestratorSettings()
        self._background: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def validate_request(self, request: AssessmentRequest) -> Optional[bytes]:
        if not request.has_any_input():
            raise InvalidAssessmentRequest(
                "Assessment request carries no audio, transcript, speech, facial or posture data."
            )
        try:
            return request.decoded_audio()
        except ValueError as exc:
            raise InvalidAssessmentRequest(str(exc)) from exc

    async def assess(self, request: AssessmentRequest) -> Tuple[AggregatedAssessment, Diagnostics]:
        """
        Builds one AggregatedAssessment. Only InvalidAssessmentRequest (before any
        provider call) and cancellation propagate to the caller.
        """
        audio = self.validate_request(request)
        loop = asyncio.get_running_loop()
        run = _AssessmentRun(loop, request.deadline_seconds or self.settings.default_deadline_seconds)

        try:
            assessment = await self._run(request, audio, run)
        except asyncio.CancelledError:
            logger.info("Assessment cancelled after %.0fms.", (loop.time() - run.started_at) * 1000.0)
            raise
        except Exception as exc:
            logger.exception("Assessment orchestration failed: %s", exc)
            run.error("orchestrator", AdapterErrorKind.UNKNOWN.value, "Internal orchestration error.")
            assessment = self._aggregate(run, transcript=None, features=None, medical=None, validation=None)

        diagnostics = run.diagnostics()
        self._persist_in_background(assessment, diagnostics)
        logger.info(
            "Assessment %s finished in %.0fms (source=%s, confidence=%.1f, degraded=%s, errors=%s).",
            assessment.assessment_id,
            diagnostics.elapsed_ms,
            assessment.assessment_source.value,
            assessment.overall_confidence,
            assessment.degraded,
            len(diagnostics.errors),
        )
        return assessment, diagnostics

    async def capabilities(self) -> CapabilityMatrix:
        return await self.health_monitor.check()

    async def upload_audio(self, audio: bytes) -> AdapterOutcome[str]:
        adapter = self.adapters.get(TRANSCRIPTION)
        if adapter is None:
            return AdapterOutcome.failure(AdapterErrorKind.UNCONFIGURED, "No transcription adapter is configured.")
        return await adapter.upload(audio)

    async def drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def _run(
        self, request: AssessmentRequest, audio: Optional[bytes], run: _AssessmentRun
    ) -> AggregatedAssessment:
        matrix = await self._capability_matrix(run)
        transcript = (request.transcript or "").strip() or None

        features: Optional[SpeechFeatures] = None
        if request.has_audio():
            result = await self._transcribe(request, audio, matrix, run)
            if result is not None:
                features = extract_speech_features(result, self.feature_thresholds)
                transcript = result.text or transcript
        else:
            run.skip(TRANSCRIPTION, "no audio input")
        if features is None:
            if request.speech_metrics is not None:
                features = request.speech_metrics.model_copy(update={"source": "caller"})
            else:
                features = SpeechFeatures()

        evidence = self.prompt_builder.build_evidence(
            transcript=transcript,
            speech_features=features,
            facial=request.facial_metrics,
            posture=request.posture_metrics,
            context=request.patient_context,
        )

        primary = await self._reason(evidence, matrix, run)
        medical = primary
        if medical is None:
            medical = build_fallback_assessment(features, request.facial_metrics, request.posture_metrics)
            run.warnings.append("Rule-based fallback assessment used; no validated reasoning output.")

        validation: Optional[ValidationDelta] = None
        if primary is not None:
            validation = await self._validate(primary, evidence, matrix, run)
        elif run.timed_out:
            run.skip(VALIDATION, "request deadline reached")
        else:
            run.skip(VALIDATION, "no primary reasoning assessment to validate")

        return self._aggregate(
            run,
            transcript=transcript,
            features=None if features.is_empty else features,
            medical=medical,
            validation=validation,
        )

    async def _capability_matrix(self, run: _AssessmentRun) -> CapabilityMatrix:
        try:
            return await asyncio.wait_for(self.health_monitor.check(), timeout=max(0.01, run.remaining()))
        except asyncio.TimeoutError:
            run.warnings.append("Capability check exceeded the request deadline; using configured adapters.")
            return CapabilityMatrix(
                capabilities={
                    name: ProviderCapability(
                        name=name,
                        status=CapabilityStatus.HEALTHY if adapter.configured else CapabilityStatus.UNAVAILABLE,
                        available=adapter.configured,
                    )
                    for name, adapter in self.adapters.items()
                }
            )

    def _dispatchable(self, name: str, matrix: CapabilityMatrix, run: _AssessmentRun) -> Optional[ProviderAdapter]:
        adapter = self.adapters.get(name)
        if adapter is None:
            run.skip(name, "no adapter configured")
            return None
        capability = matrix.capabilities.get(name)
        if capability is None or not capability.available:
            reason = capability.status.value if capability else "unknown"
            if capability and capability.last_error:
                reason = f"{reason}: {capability.last_error}"
            run.skip(name, reason)
            return None
        return adapter

    async def _invoke(
        self,
        name: str,
        adapter: ProviderAdapter,
        run: _AssessmentRun,
        call: Callable[[float], Awaitable[AdapterOutcome]],
    ) -> Optional[AdapterOutcome]:
        remaining = run.remaining()
        if remaining <= 0:
            run.timed_out = True
            run.error(name, AdapterErrorKind.TIMEOUT.value, "Request deadline reached before the call started.")
            return None

        run.adapters_run.append(name)
        try:
            outcome = await asyncio.wait_for(call(remaining), timeout=remaining)
        except asyncio.TimeoutError:
            run.timed_out = True
            outcome = AdapterOutcome.failure(
                AdapterErrorKind.TIMEOUT, f"{name} exceeded the request deadline ({remaining:.1f}s)."
            )
        except Exception as exc:
            logger.warning("Adapter %s raised past its boundary: %s", name, type(exc).__name__)
            outcome = AdapterOutcome.failure(AdapterErrorKind.UNKNOWN, f"{name} failed ({type(exc).__name__}).")

        if outcome.error is not None:
            run.error(name, outcome.error.kind.value, outcome.error.message)
            # The adapter ran on the request budget, so its own timeout is the deadline.
            if outcome.error.kind == AdapterErrorKind.TIMEOUT and remaining <= adapter.timeout_seconds:
                run.timed_out = True
        return outcome

    async def _transcribe(
        self,
        request: AssessmentRequest,
        audio: Optional[bytes],
        matrix: CapabilityMatrix,
        run: _AssessmentRun,
    ) -> Optional[TranscriptionResult]:
        adapter = self._dispatchable(TRANSCRIPTION, matrix, run)
        if adapter is None:
            return None
        context = request.patient_context
        transcription_request = TranscriptionRequest(
            audio=audio,
            audio_url=request.audio_url,
            language_code=request.language_code,
            boosted_vocabulary=request.boosted_vocabulary,
            expected_duration_hint=context.duration_seconds if context else None,
        )
        outcome = await self._invoke(
            TRANSCRIPTION, adapter, run, lambda budget: adapter.call(transcription_request, timeout=budget)
        )
        if outcome is None:
            return None
        if outcome.status == outcome.EMPTY:
            run.warnings.append("Transcription returned no speech.")
            return None
        if not outcome.ok:
            return None
        run.contribute(TRANSCRIPTION, outcome.value.overall_confidence * 100.0)
        return outcome.value

    async def _reason(
        self, evidence: str, matrix: CapabilityMatrix, run: _AssessmentRun
    ) -> Optional[MedicalAssessment]:
        adapter = self._dispatchable(REASONING, matrix, run)
        if adapter is None:
            return None
        reasoning_request = ReasoningRequest(
            prompt=self.prompt_builder.build_reasoning_prompt(evidence),
            temperature=self.settings.reasoning_temperature,
            max_output_tokens=self.settings.reasoning_max_output_tokens,
        )
        outcome = await self._invoke(
            REASONING, adapter, run, lambda budget: adapter.call(reasoning_request, timeout=budget)
        )
        if outcome is None or outcome.error is not None:
            return None
        if outcome.status == outcome.EMPTY:
            run.warnings.append("Reasoning returned an empty response.")
            return None

        normalized = normalize_medical_assessment(outcome.value)
        if isinstance(normalized, NormalizationFailure):
            run.error(REASONING, NORMALIZATION_FAILURE, normalized.describe())
            return None
        run.contribute(REASONING, normalized.confidence)
        return normalized

    async def _validate(
        self, primary: MedicalAssessment, evidence: str, matrix: CapabilityMatrix, run: _AssessmentRun
    ) -> Optional[ValidationDelta]:
        adapter = self._dispatchable(VALIDATION, matrix, run)
        if adapter is None:
            return None
        validation_request = ReasoningRequest(
            prompt=self.prompt_builder.build_validation_prompt(primary, evidence),
            temperature=self.settings.validation_temperature,
            max_output_tokens=self.settings.validation_max_output_tokens,
        )
        outcome = await self._invoke(
            VALIDATION, adapter, run, lambda budget: adapter.call(validation_request, timeout=budget)
        )
        if outcome is None or not outcome.ok:
            return None

        critique = normalize_validation_critique(outcome.value)
        if isinstance(critique, NormalizationFailure):
            run.error(VALIDATION, NORMALIZATION_FAILURE, critique.describe())
            return None
        run.contribute(VALIDATION, critique.validation_score)
        adjustment = 0.0
        if critique.agreement == ValidationAgreement.CORROBORATES:
            adjustment = self.settings.validation_bonus
        elif critique.agreement == ValidationAgreement.CONTRADICTS:
            adjustment = -self.settings.validation_penalty
        return ValidationDelta(agreement=critique.agreement, confidence_adjustment=adjustment, critique=critique)

    # -------------------------------------------------------------------------
    # Aggregation + persistence
    # -------------------------------------------------------------------------

    def _aggregate(
        self,
        run: _AssessmentRun,
        *,
        transcript: Optional[str],
        features: Optional[SpeechFeatures],
        medical: Optional[MedicalAssessment],
        validation: Optional[ValidationDelta],
    ) -> AggregatedAssessment:
        weights = self.settings.weights
        weighted = {name: value for name, value in run.confidences.items() if weights.get(name, 0.0) > 0}
        total_weight = sum(weights[name] for name in weighted)

        if total_weight <= 0:
            overall = self.settings.confidence_floor
            urgency = UrgencyLevel.ROUTINE
            degraded = True
        else:
            overall = sum(weights[name] * value for name, value in weighted.items()) / total_weight
            if validation is not None:
                overall += validation.confidence_adjustment
            urgency = medical.urgency_level if medical is not None else UrgencyLevel.ROUTINE
            degraded = False

        if medical is None:
            source = AssessmentSource.NONE
        else:
            source = medical.source
        return AggregatedAssessment(
            transcript=transcript,
            speech_features=features,
            medical_assessment=medical,
            validation=validation,
            overall_confidence=round(max(0.0, min(100.0, overall)), 2),
            urgency_level=urgency,
            degraded=degraded,
            contributing_adapters=sorted(weighted),
            assessment_source=source,
        )

    def _persist_in_background(self, assessment: AggregatedAssessment, diagnostics: Diagnostics) -> None:
        if self.repository is None:
            diagnostics.warnings.append("Assessment persistence is disabled; result was not stored.")
            return
        task = asyncio.create_task(self._save(assessment))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _save(self, assessment: AggregatedAssessment) -> bool:
        try:
            saved = await asyncio.to_thread(self.repository.save, assessment)
        except Exception as exc:
            logger.warning("Assessment %s was not persisted: %s", assessment.assessment_id, exc)
            return False
        if not saved:
            logger.warning("Assessment %s was not persisted: store reported failure.", assessment.assessment_id)
        return bool(saved)


def _default_sqlite_path() -> str:
    explicit = (os.getenv("NEURO_SQLITE_DB_PATH") or "").strip()
    if explicit:
        return explicit
    data_dir = (os.getenv("NEURO_LOCAL_DATA_DIR") or "").strip()
    base = Path(data_dir).expanduser() if data_dir else BASE_DIR / "local_data"
    return str(base / "neuro_assessments.sqlite3")


def build_orchestrator_from_env() -> NeuroAssessmentOrchestrator:
    """
    Process-start wiring: adapters, health monitor and store are built once here
    and injected into the orchestrator.
    """
    backend = (os.getenv("NEURO_STORE_BACKEND", "sqlite") or "sqlite").strip().lower()
    repository = None
    if backend != "off":
        repository = build_assessment_repository(backend, _default_sqlite_path())

    transcription = AssemblyAITranscriptionAdapter()
    reasoning = GeminiReasoningAdapter()
    validation = OpenAIValidationAdapter()
    for adapter in (transcription, reasoning, validation):
        logger.info(
            "Adapter %s (%s) configured=%s.", adapter.name, adapter.provider, adapter.configured
        )
    return NeuroAssessmentOrchestrator(
        transcription=transcription,
        reasoning=reasoning,
        validation=validation,
        health_monitor=HealthMonitor(
            {TRANSCRIPTION: transcription, REASONING: reasoning, VALIDATION: validation}
        ),
        repository=repository,
        feature_thresholds=SpeechFeatureThresholds.from_env(),
        settings=OrchestratorSettings.from_env(),
    )
