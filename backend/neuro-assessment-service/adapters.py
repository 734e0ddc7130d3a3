"""
Neuro Assessment Service - Provider Adapters

One adapter per external capability:
- AssemblyAITranscriptionAdapter: audio -> TranscriptionResult
- GeminiReasoningAdapter: clinical prompt -> raw model text
- OpenAIValidationAdapter: critique prompt -> raw model text

Adapters never raise past `call`/`probe` callers except for cancellation:
failures come back as AdapterOutcome with a closed AdapterErrorKind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar

import httpx
from pydantic import ValidationError

from env_loader import env_float, env_int, env_str, load_service_env
from models import (
    AdapterErrorKind,
    ReasoningRequest,
    TranscriptionRequest,
    TranscriptionResult,
    TranscriptionToken,
)

logger = logging.getLogger(__name__)

# Load `.env` / `.env.local` for this service before reading os.environ.
load_service_env()

T = TypeVar("T")

STROKE_VOCABULARY = [
    "dysarthria",
    "aphasia",
    "articulation",
    "fluency",
    "speech clarity",
    "word finding",
    "slurred speech",
    "stroke",
    "neurological",
    "assessment",
]

LANGUAGE_VOCABULARY: Dict[str, List[str]] = {
    "en": STROKE_VOCABULARY,
    "es": ["disartria", "afasia", "articulación", "fluidez", "claridad del habla", "ictus", "neurológico"],
    "fr": ["dysarthrie", "aphasie", "articulation", "fluidité", "clarté de la parole", "AVC", "neurologique"],
    "de": ["Dysarthrie", "Aphasie", "Artikulation", "Sprachfluss", "Sprachklarheit", "Schlaganfall", "neurologisch"],
}


class AdapterError(RuntimeError):
    def __init__(self, kind: AdapterErrorKind, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = retryable


@dataclass(frozen=True)
class AdapterOutcome(Generic[T]):
    status: str
    value: Optional[T] = None
    error: Optional[AdapterError] = None
    elapsed_ms: float = 0.0

    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"

    @property
    def ok(self) -> bool:
        return self.status == self.SUCCESS

    @classmethod
    def success(cls, value: T, elapsed_ms: float = 0.0) -> "AdapterOutcome[T]":
        return cls(status=cls.SUCCESS, value=value, elapsed_ms=elapsed_ms)

    @classmethod
    def empty(cls, elapsed_ms: float = 0.0) -> "AdapterOutcome[T]":
        return cls(status=cls.EMPTY, elapsed_ms=elapsed_ms)

    @classmethod
    def failure(
        cls, kind: AdapterErrorKind, message: str, elapsed_ms: float = 0.0
    ) -> "AdapterOutcome[T]":
        return cls(status=cls.ERROR, error=AdapterError(kind, message), elapsed_ms=elapsed_ms)


def redact(text: str, secrets: List[str]) -> str:
    cleaned = text or ""
    for secret in secrets:
        if secret:
            cleaned = cleaned.replace(secret, "***")
    return cleaned


class ProviderAdapter:
    """
    Shared httpx plumbing: credential gate, per-call deadline, status mapping,
    idempotent retry for side-effect free requests.
    """

    name = "provider"
    provider = "unknown"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        timeout_seconds: float,
        max_retries: int = 0,
        retry_backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.configured = bool(self.api_key)
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = max(0.1, timeout_seconds)
        self.max_retries = max(0, max_retries)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self._transport = transport

    def secrets(self) -> List[str]:
        return [self.api_key] if self.api_key else []

    def _headers(self) -> Dict[str, str]:
        return {}

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=timeout,
            transport=self._transport,
        )

    def _unconfigured(self) -> AdapterOutcome[Any]:
        return AdapterOutcome.failure(
            AdapterErrorKind.UNCONFIGURED,
            f"{self.provider} has no API credential configured.",
        )

    async def _guard(self, operation: str, coro_factory, timeout: Optional[float]) -> AdapterOutcome[Any]:
        budget = max(0.01, min(timeout or self.timeout_seconds, self.timeout_seconds))
        started = time.perf_counter()

        def _elapsed() -> float:
            return round((time.perf_counter() - started) * 1000.0, 2)

        try:
            value = await asyncio.wait_for(coro_factory(budget), timeout=budget)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.error("%s %s timed out after %.1fs.", self.provider, operation, budget)
            return AdapterOutcome.failure(
                AdapterErrorKind.TIMEOUT,
                f"{self.provider} {operation} timed out after {budget:.1f}s.",
                _elapsed(),
            )
        except AdapterError as exc:
            logger.warning("%s %s failed (%s).", self.provider, operation, exc.kind.value)
            return AdapterOutcome.failure(exc.kind, redact(exc.message, self.secrets()), _elapsed())
        except httpx.TransportError as exc:
            logger.warning("%s %s transport error: %s", self.provider, operation, type(exc).__name__)
            return AdapterOutcome.failure(
                AdapterErrorKind.UNAVAILABLE,
                f"{self.provider} {operation} could not reach the provider ({type(exc).__name__}).",
                _elapsed(),
            )
        except Exception as exc:
            logger.warning("%s %s failed unexpectedly: %s", self.provider, operation, type(exc).__name__)
            return AdapterOutcome.failure(
                AdapterErrorKind.UNKNOWN,
                f"{self.provider} {operation} failed ({type(exc).__name__}).",
                _elapsed(),
            )

        if value is None:
            return AdapterOutcome.empty(_elapsed())
        return AdapterOutcome.success(value, _elapsed())

    def _raise_for_status(self, response: httpx.Response) -> None:
        code = response.status_code
        if code < 400:
            return
        if code == 429:
            raise AdapterError(AdapterErrorKind.RATE_LIMITED, f"{self.provider} rate limit reached (HTTP 429).")
        if code in {401, 403}:
            raise AdapterError(
                AdapterErrorKind.UNAVAILABLE,
                f"{self.provider} rejected the configured credential (HTTP {code}).",
            )
        if code >= 500:
            raise AdapterError(
                AdapterErrorKind.UNAVAILABLE,
                f"{self.provider} returned HTTP {code}.",
                retryable=True,
            )
        raise AdapterError(AdapterErrorKind.UNKNOWN, f"{self.provider} rejected the request (HTTP {code}).")

    @staticmethod
    def _json_body(response: httpx.Response, provider: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise AdapterError(AdapterErrorKind.INVALID_RESPONSE, f"{provider} returned non-JSON content.") from exc
        if not isinstance(body, dict):
            raise AdapterError(AdapterErrorKind.INVALID_RESPONSE, f"{provider} returned an unexpected payload shape.")
        return body

    async def _send_idempotent(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                response = await client.request(method, url, **kwargs)
                self._raise_for_status(response)
                return self._json_body(response, self.provider)
            except (httpx.TransportError, AdapterError) as exc:
                if isinstance(exc, httpx.TimeoutException):
                    raise
                retryable = isinstance(exc, httpx.TransportError) or exc.retryable
                if not retryable or attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.info("Retrying %s request (attempt %s/%s).", self.provider, attempt, self.max_retries)
                await asyncio.sleep(self.retry_backoff_seconds * attempt)

    async def probe(self, timeout: Optional[float] = None) -> AdapterOutcome[bool]:
        if not self.configured:
            return self._unconfigured()
        return await self._guard("health probe", self._probe, timeout)

    async def _probe(self, budget: float) -> bool:
        raise NotImplementedError


# =============================================================================
# TRANSCRIPTION
# =============================================================================


class AssemblyAITranscriptionAdapter(ProviderAdapter):
    name = "transcription"
    provider = "assemblyai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            api_key=api_key if api_key is not None else env_str("ASSEMBLYAI_API_KEY"),
            base_url=base_url or env_str("NEURO_ASSEMBLYAI_BASE_URL", default="https://api.assemblyai.com"),
            timeout_seconds=timeout_seconds or env_float("NEURO_TRANSCRIPTION_TIMEOUT_SECONDS", 90.0),
            transport=transport,
        )
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else env_float("NEURO_ASSEMBLYAI_POLL_SECONDS", 1.0)
        )

    def _headers(self) -> Dict[str, str]:
        return {"authorization": self.api_key}

    async def upload(self, audio: bytes, *, timeout: Optional[float] = None) -> AdapterOutcome[str]:
        if not self.configured:
            return self._unconfigured()

        async def _run(budget: float) -> str:
            async with self._client(budget) as client:
                return await self._upload(client, audio)

        return await self._guard("upload", _run, timeout)

    async def call(
        self, request: TranscriptionRequest, *, timeout: Optional[float] = None
    ) -> AdapterOutcome[TranscriptionResult]:
        if not self.configured:
            return self._unconfigured()

        async def _run(budget: float) -> Optional[TranscriptionResult]:
            return await self._transcribe(request, budget)

        return await self._guard("transcription", _run, timeout)

    async def _upload(self, client: httpx.AsyncClient, audio: bytes) -> str:
        if not audio:
            raise AdapterError(AdapterErrorKind.UNKNOWN, "No audio bytes supplied for upload.")
        response = await client.post(
            "/v2/upload",
            content=audio,
            headers={"content-type": "application/octet-stream"},
        )
        self._raise_for_status(response)
        upload_url = self._json_body(response, self.provider).get("upload_url")
        if not upload_url:
            raise AdapterError(AdapterErrorKind.INVALID_RESPONSE, "assemblyai upload returned no upload_url.")
        return str(upload_url)

    def transcript_options(self, request: TranscriptionRequest, audio_url: str) -> Dict[str, Any]:
        language = (request.language_code or "en").split("_")[0].lower()
        vocabulary = request.boosted_vocabulary or LANGUAGE_VOCABULARY.get(language, STROKE_VOCABULARY)
        hint = request.expected_duration_hint
        return {
            "audio_url": audio_url,
            "language_code": language,
            "punctuate": True,
            "format_text": True,
            "disfluencies": True,
            "word_boost": list(vocabulary),
            "boost_param": "high",
            "speech_threshold": 0.2 if hint is not None and hint > 30 else 0.4,
        }

    async def _transcribe(self, request: TranscriptionRequest, budget: float) -> Optional[TranscriptionResult]:
        async with self._client(budget) as client:
            audio_url = request.audio_url
            if not audio_url:
                audio_url = await self._upload(client, request.audio or b"")

            response = await client.post("/v2/transcript", json=self.transcript_options(request, audio_url))
            self._raise_for_status(response)
            transcript_id = self._json_body(response, self.provider).get("id")
            if not transcript_id:
                raise AdapterError(AdapterErrorKind.INVALID_RESPONSE, "assemblyai returned no transcript id.")

            try:
                body = await self._poll(client, str(transcript_id))
            except asyncio.CancelledError:
                # Stop the provider-side job so a dropped request does not keep billing.
                with suppress(Exception):
                    await asyncio.wait_for(client.delete(f"/v2/transcript/{transcript_id}"), timeout=2.0)
                raise
        return self._to_result(body)

    async def _poll(self, client: httpx.AsyncClient, transcript_id: str) -> Dict[str, Any]:
        while True:
            body = await self._send_idempotent(client, "GET", f"/v2/transcript/{transcript_id}")
            status = str(body.get("status") or "").lower()
            if status == "completed":
                return body
            if status == "error":
                raise AdapterError(
                    AdapterErrorKind.INVALID_RESPONSE,
                    f"assemblyai transcription failed: {str(body.get('error') or 'unknown error')[:200]}",
                )
            await asyncio.sleep(self.poll_interval_seconds)

    def _to_result(self, body: Dict[str, Any]) -> Optional[TranscriptionResult]:
        words = body.get("words") or []
        text = str(body.get("text") or "").strip()
        if not text and not words:
            return None
        try:
            tokens = [
                TranscriptionToken(
                    text=str(word.get("text") or ""),
                    start_ms=int(word.get("start") or 0),
                    end_ms=int(word.get("end") or 0),
                    confidence=float(word.get("confidence") or 0.0),
                )
                for word in words
            ]
            confidence = body.get("confidence")
            if confidence is None:
                confidence = sum(t.confidence for t in tokens) / len(tokens) if tokens else 0.0
            return TranscriptionResult(
                text=text,
                overall_confidence=float(confidence),
                tokens=tokens,
                language_code=body.get("language_code"),
                audio_duration_seconds=body.get("audio_duration"),
                provider_transcript_id=body.get("id"),
            )
        except (ValidationError, TypeError, ValueError, AttributeError) as exc:
            raise AdapterError(
                AdapterErrorKind.INVALID_RESPONSE,
                f"assemblyai transcript failed validation ({type(exc).__name__}).",
            ) from exc

    async def _probe(self, budget: float) -> bool:
        async with self._client(budget) as client:
            await self._send_idempotent(client, "GET", "/v2/transcript", params={"limit": 1})
        return True


# =============================================================================
# REASONING + VALIDATION
# =============================================================================


class _TextGenerationAdapter(ProviderAdapter):
    async def call(self, request: ReasoningRequest, *, timeout: Optional[float] = None) -> AdapterOutcome[str]:
        if not self.configured:
            return self._unconfigured()

        async def _run(budget: float) -> Optional[str]:
            async with self._client(budget) as client:
                text = await self._generate(client, request)
            return text.strip() or None

        return await self._guard("generation", _run, timeout)

    async def _generate(self, client: httpx.AsyncClient, request: ReasoningRequest) -> str:
        raise NotImplementedError


class GeminiReasoningAdapter(_TextGenerationAdapter):
    name = "reasoning"
    provider = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            api_key=api_key if api_key is not None else env_str("GOOGLE_AI_API_KEY", "GEMINI_API_KEY"),
            base_url=base_url
            or env_str("NEURO_GEMINI_BASE_URL", default="https://generativelanguage.googleapis.com"),
            timeout_seconds=timeout_seconds or env_float("NEURO_REASONING_TIMEOUT_SECONDS", 45.0),
            max_retries=max_retries if max_retries is not None else env_int("NEURO_PROVIDER_MAX_RETRIES", 1),
            transport=transport,
        )
        self.model = model or env_str("NEURO_GEMINI_MODEL", default="gemini-1.5-pro")

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    def _body(self, request: ReasoningRequest, *, json_mode: bool = True) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_output_tokens,
            "topP": 0.8,
            "topK": 1,
        }
        if json_mode:
            generation_config["responseMimeType"] = "application/json"
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": generation_config,
        }
        if request.system_instruction:
            body["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
        return body

    async def _generate(self, client: httpx.AsyncClient, request: ReasoningRequest, *, json_mode: bool = True) -> str:
        body = await self._send_idempotent(
            client,
            "POST",
            f"/v1beta/models/{self.model}:generateContent",
            json=self._body(request, json_mode=json_mode),
        )
        block_reason = (body.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise AdapterError(AdapterErrorKind.INVALID_RESPONSE, f"gemini blocked the prompt ({block_reason}).")
        candidates = body.get("candidates")
        if not isinstance(candidates, list):
            raise AdapterError(AdapterErrorKind.INVALID_RESPONSE, "gemini response has no candidates.")
        if not candidates:
            return ""
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        return "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict))

    async def _probe(self, budget: float) -> bool:
        async with self._client(budget) as client:
            await self._generate(
                client,
                ReasoningRequest(prompt="Test connection", temperature=0.0, max_output_tokens=8),
                json_mode=False,
            )
        return True


class OpenAIValidationAdapter(_TextGenerationAdapter):
    name = "validation"
    provider = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            api_key=api_key if api_key is not None else env_str("OPENAI_API_KEY"),
            base_url=base_url or env_str("NEURO_OPENAI_BASE_URL", default="https://api.openai.com"),
            timeout_seconds=timeout_seconds or env_float("NEURO_VALIDATION_TIMEOUT_SECONDS", 30.0),
            max_retries=max_retries if max_retries is not None else env_int("NEURO_PROVIDER_MAX_RETRIES", 1),
            transport=transport,
        )
        self.model = model or env_str("NEURO_OPENAI_MODEL", default="gpt-4o")

    def _headers(self) -> Dict[str, str]:
        return {"authorization": f"Bearer {self.api_key}"}

    async def _generate(self, client: httpx.AsyncClient, request: ReasoningRequest) -> str:
        messages = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        messages.append({"role": "user", "content": request.prompt})
        body = await self._send_idempotent(
            client,
            "POST",
            "/v1/chat/completions",
            json={
                "model": self.model,
                "messages": messages,
                "temperature": request.temperature,
                "max_tokens": request.max_output_tokens,
                "response_format": {"type": "json_object"},
            },
        )
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            raise AdapterError(AdapterErrorKind.INVALID_RESPONSE, "openai response has no choices.")
        message = (choices[0] or {}).get("message") or {}
        return str(message.get("content") or "")

    async def _probe(self, budget: float) -> bool:
        async with self._client(budget) as client:
            await self._send_idempotent(client, "GET", "/v1/models")
        return True
