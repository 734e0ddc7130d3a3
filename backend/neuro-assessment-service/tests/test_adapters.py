import asyncio
import json

import httpx
import pytest

from adapters import (
    STROKE_VOCABULARY,
    AdapterOutcome,
    AssemblyAITranscriptionAdapter,
    GeminiReasoningAdapter,
    OpenAIValidationAdapter,
    redact,
)
from models import AdapterErrorKind, ReasoningRequest, TranscriptionRequest


API_KEY = "sk-test-1234567890"


def _gemini(handler, **kwargs):
    adapter = GeminiReasoningAdapter(
        API_KEY,
        model="gemini-test",
        base_url="https://gemini.test",
        max_retries=kwargs.pop("max_retries", 0),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    adapter.retry_backoff_seconds = 0.0
    return adapter


def _gemini_reply(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def test_assemblyai_uploads_creates_and_polls_until_completed():
    calls = []
    polls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        assert request.headers["authorization"] == API_KEY
        if request.url.path == "/v2/upload":
            assert request.content == b"RIFFFAKEAUDIO"
            return httpx.Response(200, json={"upload_url": "https://cdn.assemblyai.test/u/1"})
        if request.method == "POST" and request.url.path == "/v2/transcript":
            body = json.loads(request.content)
            assert body["audio_url"] == "https://cdn.assemblyai.test/u/1"
            assert body["disfluencies"] is True
            assert body["speech_threshold"] == 0.2
            assert body["word_boost"] == STROKE_VOCABULARY
            return httpx.Response(200, json={"id": "tx-1", "status": "queued"})
        polls["count"] += 1
        if polls["count"] == 1:
            return httpx.Response(200, json={"id": "tx-1", "status": "processing"})
        return httpx.Response(
            200,
            json={
                "id": "tx-1",
                "status": "completed",
                "text": "I feel dizzy",
                "confidence": 0.91,
                "audio_duration": 2.1,
                "words": [
                    {"text": "I", "start": 0, "end": 200, "confidence": 0.99},
                    {"text": "feel", "start": 300, "end": 600, "confidence": 0.9},
                    {"text": "dizzy", "start": 1800, "end": 2100, "confidence": 0.6},
                ],
            },
        )

    adapter = AssemblyAITranscriptionAdapter(
        API_KEY,
        base_url="https://assemblyai.test",
        poll_interval_seconds=0.0,
        transport=httpx.MockTransport(handler),
    )
    outcome = asyncio.run(
        adapter.call(TranscriptionRequest(audio=b"RIFFFAKEAUDIO", expected_duration_hint=45), timeout=5)
    )

    assert outcome.ok
    assert outcome.value.text == "I feel dizzy"
    assert outcome.value.overall_confidence == 0.91
    assert [t.text for t in outcome.value.tokens] == ["I", "feel", "dizzy"]
    assert outcome.value.provider_transcript_id == "tx-1"
    assert calls[0] == ("POST", "/v2/upload")
    assert calls[1] == ("POST", "/v2/transcript")
    assert calls[2:] == [("GET", "/v2/transcript/tx-1")] * 2


def test_assemblyai_provider_error_status_is_invalid_response():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"id": "tx-2"})
        return httpx.Response(200, json={"id": "tx-2", "status": "error", "error": "audio too short"})

    adapter = AssemblyAITranscriptionAdapter(
        API_KEY,
        base_url="https://assemblyai.test",
        poll_interval_seconds=0.0,
        transport=httpx.MockTransport(handler),
    )
    outcome = asyncio.run(adapter.call(TranscriptionRequest(audio_url="https://example.org/a.wav")))

    assert outcome.status == AdapterOutcome.ERROR
    assert outcome.error.kind == AdapterErrorKind.INVALID_RESPONSE
    assert "audio too short" in outcome.error.message


def test_assemblyai_cancel_mid_poll_deletes_the_job():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(200, json={"id": "tx-9", "status": "queued"})
        if request.method == "DELETE":
            return httpx.Response(200, json={"id": "tx-9", "status": "error"})
        return httpx.Response(200, json={"id": "tx-9", "status": "processing"})

    adapter = AssemblyAITranscriptionAdapter(
        API_KEY,
        base_url="https://assemblyai.test",
        poll_interval_seconds=0.01,
        transport=httpx.MockTransport(handler),
    )

    async def scenario():
        task = asyncio.create_task(
            adapter.call(TranscriptionRequest(audio_url="https://example.org/a.wav"), timeout=5)
        )
        while ("GET", "/v2/transcript/tx-9") not in calls:
            await asyncio.sleep(0.005)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert calls[-1] == ("DELETE", "/v2/transcript/tx-9")


def test_assemblyai_caller_vocabulary_overrides_language_default():
    adapter = AssemblyAITranscriptionAdapter(API_KEY)
    options = adapter.transcript_options(
        TranscriptionRequest(language_code="en", boosted_vocabulary=["aphasia", "ptosis"]),
        "https://example.org/a.wav",
    )

    assert options["word_boost"] == ["aphasia", "ptosis"]


def test_assemblyai_language_vocabulary_and_short_audio_threshold():
    adapter = AssemblyAITranscriptionAdapter(API_KEY)
    options = adapter.transcript_options(
        TranscriptionRequest(language_code="es_MX", expected_duration_hint=10), "https://example.org/a.wav"
    )

    assert options["language_code"] == "es"
    assert "afasia" in options["word_boost"]
    assert options["speech_threshold"] == 0.4


def test_unconfigured_adapters_never_touch_the_network():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("network must not be used without credentials")

    transport = httpx.MockTransport(handler)
    adapters = [
        AssemblyAITranscriptionAdapter("", transport=transport),
        GeminiReasoningAdapter("", transport=transport),
        OpenAIValidationAdapter("", transport=transport),
    ]

    for adapter in adapters:
        assert adapter.configured is False
        probe = asyncio.run(adapter.probe())
        assert probe.error.kind == AdapterErrorKind.UNCONFIGURED

    outcome = asyncio.run(adapters[1].call(ReasoningRequest(prompt="x")))
    assert outcome.error.kind == AdapterErrorKind.UNCONFIGURED


def test_gemini_returns_raw_text_and_sends_json_mode():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["key"] = request.headers["x-goog-api-key"]
        captured["body"] = json.loads(request.content)
        return _gemini_reply('{"ok": true}')

    outcome = asyncio.run(_gemini(handler).call(ReasoningRequest(prompt="assess", temperature=0.1)))

    assert outcome.ok
    assert outcome.value == '{"ok": true}'
    assert captured["path"] == "/v1beta/models/gemini-test:generateContent"
    assert captured["key"] == API_KEY
    assert captured["body"]["generationConfig"]["responseMimeType"] == "application/json"
    assert captured["body"]["contents"][0]["parts"][0]["text"] == "assess"


def test_gemini_rate_limit_is_classified_and_redacted():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": f"quota for key {API_KEY}"}})

    outcome = asyncio.run(_gemini(handler).call(ReasoningRequest(prompt="assess")))

    assert outcome.error.kind == AdapterErrorKind.RATE_LIMITED
    assert API_KEY not in outcome.error.message


def test_gemini_retries_server_errors_once():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return httpx.Response(503, text="overloaded")
        return _gemini_reply("ok")

    outcome = asyncio.run(_gemini(handler, max_retries=1).call(ReasoningRequest(prompt="assess")))

    assert outcome.ok
    assert attempts["count"] == 2


def test_gemini_server_error_without_retries_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    outcome = asyncio.run(_gemini(handler).call(ReasoningRequest(prompt="assess")))

    assert outcome.error.kind == AdapterErrorKind.UNAVAILABLE


def test_gemini_blocked_prompt_and_empty_candidates():
    def blocked(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    def empty(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": []})

    blocked_outcome = asyncio.run(_gemini(blocked).call(ReasoningRequest(prompt="assess")))
    empty_outcome = asyncio.run(_gemini(empty).call(ReasoningRequest(prompt="assess")))

    assert blocked_outcome.error.kind == AdapterErrorKind.INVALID_RESPONSE
    assert empty_outcome.status == AdapterOutcome.EMPTY
    assert empty_outcome.error is None


def test_transport_failure_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    outcome = asyncio.run(_gemini(handler).call(ReasoningRequest(prompt="assess")))

    assert outcome.error.kind == AdapterErrorKind.UNAVAILABLE


def test_slow_provider_times_out():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(2)
        return _gemini_reply("late")

    outcome = asyncio.run(_gemini(handler).call(ReasoningRequest(prompt="assess"), timeout=0.05))

    assert outcome.error.kind == AdapterErrorKind.TIMEOUT


def test_openai_validation_call_and_probe():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.headers["authorization"]))
        if request.url.path == "/v1/models":
            return httpx.Response(200, json={"data": []})
        body = json.loads(request.content)
        assert body["model"] == "gpt-test"
        assert body["response_format"] == {"type": "json_object"}
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"agreement": "partial"}'}}]})

    adapter = OpenAIValidationAdapter(
        API_KEY,
        model="gpt-test",
        base_url="https://openai.test",
        max_retries=0,
        transport=httpx.MockTransport(handler),
    )
    outcome = asyncio.run(adapter.call(ReasoningRequest(prompt="critique")))
    probe = asyncio.run(adapter.probe(timeout=1))

    assert outcome.value == '{"agreement": "partial"}'
    assert probe.ok and probe.value is True
    assert seen[0] == ("POST", "/v1/chat/completions", f"Bearer {API_KEY}")
    assert seen[1][:2] == ("GET", "/v1/models")


def test_openai_non_json_body_and_rejected_key():
    def not_json(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "bad key"})

    def _adapter(handler):
        return OpenAIValidationAdapter(
            API_KEY, base_url="https://openai.test", max_retries=0, transport=httpx.MockTransport(handler)
        )

    invalid = asyncio.run(_adapter(not_json).call(ReasoningRequest(prompt="critique")))
    unauthorized = asyncio.run(_adapter(rejected).probe())

    assert invalid.error.kind == AdapterErrorKind.INVALID_RESPONSE
    assert unauthorized.error.kind == AdapterErrorKind.UNAVAILABLE


def test_redact_masks_every_secret():
    assert redact("key=abc and abc again", ["abc", ""]) == "key=*** and *** again"
