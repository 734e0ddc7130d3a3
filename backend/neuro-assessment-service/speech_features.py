"""
Neuro Assessment Service - Speech Feature Extraction

Derives timing, disfluency, pronunciation and rate metrics from a
TranscriptionResult. Pure functions: no I/O, no clock, no randomness.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Sequence, Tuple

from env_loader import env_float, env_int
from models import (
    DisfluencySeverity,
    DisfluencyStats,
    Hesitation,
    LongPause,
    PauseStats,
    PronunciationIssue,
    PronunciationStats,
    RateCategory,
    RateStats,
    Severity,
    SpeechFeatures,
    StrokeIndicatorSummary,
    TranscriptionResult,
    TranscriptionToken,
)

FILLER_WORDS: FrozenSet[str] = frozenset({"um", "uh", "er", "ah", "like"})
FILLER_PHRASES: Tuple[Tuple[str, ...], ...] = (("you", "know"),)

STROKE_SENSITIVE_WORDS: Dict[str, FrozenSet[str]] = {
    "r_sounds": frozenset({"right", "round", "red", "three", "tree"}),
    "l_sounds": frozenset({"left", "light", "blue", "slow"}),
    "th_sounds": frozenset({"think", "thought", "through", "the"}),
    "complex": frozenset({"articulation", "coordination", "concentration", "constitution"}),
}

_PUNCTUATION = re.compile(r"[^\w']+")
_VOWEL_GROUP = re.compile(r"[aeiouy]+")


@dataclass(frozen=True)
class SpeechFeatureThresholds:
    pause_min_ms: int = 500
    long_pause_ms: int = 1000
    severe_pause_ms: int = 3000
    hesitation_confidence: float = 0.7
    pronunciation_confidence: float = 0.8
    pronunciation_severe_confidence: float = 0.5
    pronunciation_moderate_confidence: float = 0.7
    disfluency_bands: Tuple[Tuple[float, DisfluencySeverity], ...] = field(
        default=(
            (0.15, DisfluencySeverity.SEVERE),
            (0.08, DisfluencySeverity.MODERATE),
            (0.03, DisfluencySeverity.MILD),
        )
    )
    rate_bands: Tuple[Tuple[float, RateCategory], ...] = field(
        default=(
            (100.0, RateCategory.VERY_SLOW),
            (140.0, RateCategory.SLOW),
            (180.0, RateCategory.NORMAL),
            (220.0, RateCategory.FAST),
        )
    )

    @classmethod
    def from_env(cls) -> "SpeechFeatureThresholds":
        defaults = cls()
        return cls(
            pause_min_ms=env_int("NEURO_PAUSE_MIN_MS", defaults.pause_min_ms),
            long_pause_ms=env_int("NEURO_LONG_PAUSE_MS", defaults.long_pause_ms),
            severe_pause_ms=env_int("NEURO_SEVERE_PAUSE_MS", defaults.severe_pause_ms),
            hesitation_confidence=env_float(
                "NEURO_HESITATION_CONFIDENCE", defaults.hesitation_confidence
            ),
            pronunciation_confidence=env_float(
                "NEURO_PRONUNCIATION_CONFIDENCE", defaults.pronunciation_confidence
            ),
            pronunciation_severe_confidence=defaults.pronunciation_severe_confidence,
            pronunciation_moderate_confidence=defaults.pronunciation_moderate_confidence,
            disfluency_bands=(
                (env_float("NEURO_DISFLUENCY_SEVERE_RATE", 0.15), DisfluencySeverity.SEVERE),
                (env_float("NEURO_DISFLUENCY_MODERATE_RATE", 0.08), DisfluencySeverity.MODERATE),
                (env_float("NEURO_DISFLUENCY_MILD_RATE", 0.03), DisfluencySeverity.MILD),
            ),
            rate_bands=defaults.rate_bands,
        )


DEFAULT_THRESHOLDS = SpeechFeatureThresholds()


def normalize_word(text: str) -> str:
    return _PUNCTUATION.sub("", (text or "").lower()).strip("'")


def classify_disfluency_rate(
    rate: float, thresholds: SpeechFeatureThresholds = DEFAULT_THRESHOLDS
) -> DisfluencySeverity:
    # Bands are strict lower bounds: a rate equal to a boundary falls in the band below.
    for lower_bound, severity in thresholds.disfluency_bands:
        if rate > lower_bound:
            return severity
    return DisfluencySeverity.NORMAL


def classify_speech_rate(
    words_per_minute: float, thresholds: SpeechFeatureThresholds = DEFAULT_THRESHOLDS
) -> RateCategory:
    for upper_bound, category in thresholds.rate_bands:
        if words_per_minute < upper_bound:
            return category
    return RateCategory.VERY_FAST


def analyze_pauses(
    tokens: Sequence[TranscriptionToken],
    thresholds: SpeechFeatureThresholds = DEFAULT_THRESHOLDS,
) -> PauseStats:
    pauses: List[int] = []
    long_pauses: List[LongPause] = []
    for previous, current in zip(tokens, tokens[1:]):
        gap = current.start_ms - previous.end_ms
        if gap <= thresholds.pause_min_ms:
            continue
        pauses.append(gap)
        if gap > thresholds.long_pause_ms:
            long_pauses.append(
                LongPause(
                    start_ms=previous.end_ms,
                    duration_ms=gap,
                    preceding_word=previous.text,
                    severity=Severity.SEVERE if gap > thresholds.severe_pause_ms else Severity.MODERATE,
                )
            )

    total = sum(pauses)
    return PauseStats(
        pause_count=len(pauses),
        long_pause_count=len(long_pauses),
        total_pause_ms=total,
        average_pause_ms=round(total / len(pauses), 2) if pauses else 0.0,
        max_pause_ms=max(pauses) if pauses else 0,
        pause_rate=round(len(pauses) / len(tokens), 4) if tokens else 0.0,
        long_pauses=long_pauses,
    )


def analyze_disfluencies(
    tokens: Sequence[TranscriptionToken],
    thresholds: SpeechFeatureThresholds = DEFAULT_THRESHOLDS,
) -> DisfluencyStats:
    words = [normalize_word(token.text) for token in tokens]
    fillers: List[str] = []
    repetitions: List[str] = []
    hesitations: List[Hesitation] = []

    idx = 0
    while idx < len(words):
        phrase = next(
            (p for p in FILLER_PHRASES if tuple(words[idx : idx + len(p)]) == p),
            None,
        )
        if phrase is not None:
            fillers.append(" ".join(phrase))
            idx += len(phrase)
            continue
        if words[idx] in FILLER_WORDS:
            fillers.append(words[idx])
        idx += 1

    for idx in range(1, len(words)):
        if words[idx] and words[idx] == words[idx - 1]:
            repetitions.append(words[idx])

    for idx, token in enumerate(tokens):
        if token.confidence < thresholds.hesitation_confidence:
            hesitations.append(Hesitation(index=idx, word=token.text, confidence=token.confidence))

    total = len(tokens)
    rate = (len(fillers) + len(repetitions)) / total if total else 0.0
    return DisfluencyStats(
        total_tokens=total,
        filler_count=len(fillers),
        repetition_count=len(repetitions),
        hesitation_count=len(hesitations),
        disfluency_rate=rate,
        severity=classify_disfluency_rate(rate, thresholds),
        fillers=fillers,
        repetitions=repetitions,
        hesitations=hesitations,
    )


def _stroke_sensitive_category(word: str) -> str:
    for category, words in STROKE_SENSITIVE_WORDS.items():
        if word in words:
            return category
    return ""


def analyze_pronunciation(
    tokens: Sequence[TranscriptionToken],
    thresholds: SpeechFeatureThresholds = DEFAULT_THRESHOLDS,
) -> PronunciationStats:
    if not tokens:
        return PronunciationStats()

    issues: List[PronunciationIssue] = []
    for token in tokens:
        if token.confidence >= thresholds.pronunciation_confidence:
            continue
        category = _stroke_sensitive_category(normalize_word(token.text))
        if not category:
            continue
        if token.confidence < thresholds.pronunciation_severe_confidence:
            severity = Severity.SEVERE
        elif token.confidence < thresholds.pronunciation_moderate_confidence:
            severity = Severity.MODERATE
        else:
            severity = Severity.MILD
        issues.append(
            PronunciationIssue(
                word=token.text,
                category=category,
                confidence=token.confidence,
                severity=severity,
            )
        )

    accuracy = sum(token.confidence for token in tokens) / len(tokens)
    difficult = sum(issue.confidence for issue in issues) / len(issues) if issues else 1.0
    return PronunciationStats(
        accuracy=round(accuracy, 4),
        difficult_word_accuracy=round(difficult, 4),
        issues=issues,
    )


def _estimate_syllables(word: str) -> int:
    return max(1, len(_VOWEL_GROUP.findall(word.lower())))


def analyze_speech_rate(
    tokens: Sequence[TranscriptionToken],
    thresholds: SpeechFeatureThresholds = DEFAULT_THRESHOLDS,
) -> RateStats:
    if not tokens:
        return RateStats()
    duration_seconds = (tokens[-1].end_ms - tokens[0].start_ms) / 1000.0
    if duration_seconds <= 0:
        return RateStats(token_count=len(tokens))

    words_per_minute = len(tokens) / duration_seconds * 60.0
    syllables = sum(_estimate_syllables(token.text) for token in tokens)
    return RateStats(
        token_count=len(tokens),
        duration_seconds=round(duration_seconds, 3),
        words_per_minute=round(words_per_minute, 2),
        syllables_per_minute=round(syllables / duration_seconds * 60.0, 2),
        category=classify_speech_rate(words_per_minute, thresholds),
    )


def extract_speech_features(
    result: TranscriptionResult,
    thresholds: SpeechFeatureThresholds = DEFAULT_THRESHOLDS,
) -> SpeechFeatures:
    """
    Full feature pass over one transcription. Identical input yields identical output.
    """
    tokens = list(result.tokens)
    pauses = analyze_pauses(tokens, thresholds)
    disfluency = analyze_disfluencies(tokens, thresholds)
    pronunciation = analyze_pronunciation(tokens, thresholds)
    rate = analyze_speech_rate(tokens, thresholds)

    summary = StrokeIndicatorSummary(
        long_pause_count=pauses.long_pause_count,
        words_per_minute=rate.words_per_minute,
        disfluency_rate=round(disfluency.disfluency_rate, 4),
        hesitation_count=disfluency.hesitation_count,
        repetition_count=disfluency.repetition_count,
        pronunciation_accuracy=pronunciation.accuracy,
        low_confidence_ratio=round(disfluency.hesitation_count / len(tokens), 4) if tokens else 0.0,
    )
    return SpeechFeatures(
        source="transcription",
        pause_stats=pauses,
        disfluency_stats=disfluency,
        pronunciation_stats=pronunciation,
        rate_stats=rate,
        stroke_indicator_summary=summary,
    )
