#!/usr/bin/env python3
"""
Test Suite for Transcription Providers and Dispatch

Tests response normalization for Deepgram and Whisper, the submit/poll loop,
and sequential and fan-out dispatch with fallback.
"""

import asyncio
import json

import httpx
import pytest

from core.dispatcher import AllProvidersFailed, DispatchSuccess, ProviderDispatcher
from core.error_handling import ProviderFailure, ProviderTimeout
from core.models import AudioAsset, Segment, SourceKind, Tier, TranscriptionResult
from core.providers import (
    DeepgramProvider,
    ProviderJobRef,
    ProviderOptions,
    TranscriptionProvider,
    WhisperReplicateProvider,
    clean_cjk_spacing,
    normalize_segments,
)

ASSET = AudioAsset(url="https://cdn.example.com/blobs/a.wav", source_kind=SourceKind.STORED,
                   job_id="0123456789abcdef0123456789abcdef")

DEEPGRAM_BODY = {
    "metadata": {"request_id": "req-1", "duration": 4.2},
    "results": {
        "channels": [{
            "detected_language": "zh",
            "alternatives": [{
                "transcript": "你 好 我 是 Deepgram 用户",
                "words": [
                    {"word": "你", "start": 0.0, "end": 0.3, "confidence": 0.99, "speaker": 0},
                    {"word": "好", "start": 0.3, "end": 0.6, "confidence": 0.98, "speaker": 0},
                ],
                "paragraphs": {"paragraphs": [{
                    "speaker": 0,
                    "sentences": [
                        {"text": "你 好", "start": 0.0, "end": 0.6},
                        {"text": "我 是 Deepgram 用户", "start": 0.5, "end": 4.2},
                    ],
                }]},
            }],
        }],
        "utterances": [
            {"start": 0.0, "end": 0.6, "speaker": 0},
            {"start": 0.6, "end": 4.2, "speaker": 1},
        ],
    },
}


def whisper_output(status="succeeded"):
    return {
        "id": "pred-1",
        "status": status,
        "urls": {"get": "https://api.replicate.com/v1/predictions/pred-1"},
        "output": {
            "detected_language": "english",
            "transcription": " Hello there. General Kenobi.",
            "segments": [
                {"start": 0.0, "end": 1.5, "text": " Hello there.", "avg_logprob": -0.2,
                 "words": [{"word": " Hello", "start": 0.0, "end": 0.6, "probability": 0.9}]},
                {"start": 1.5, "end": 3.0, "text": " General Kenobi.", "avg_logprob": -0.3},
            ],
        },
    }


class FakeProvider(TranscriptionProvider):
    """In-process provider with scripted behavior."""

    def __init__(self, provider_id, text="hello world", error=None, delay=0.0, configured=True, segments=None):
        super().__init__(poll_interval=0, max_polls=1)
        self.provider_id = provider_id
        self.text = text
        self.error = error
        self.delay = delay
        self.configured = configured
        self.segments = segments
        self.calls = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def submit(self, asset, options):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        segments = self.segments if self.segments is not None else [Segment(0.0, 2.0, self.text)]
        return ProviderJobRef(self.provider_id, "ref", result=TranscriptionResult(self.text, segments))

    async def poll(self, ref):
        return ref.result


class TestNormalization:

    def test_clean_cjk_spacing(self):
        assert clean_cjk_spacing("你 好 我 是 Deepgram 用户") == "你好我是 Deepgram 用户"
        assert clean_cjk_spacing(" 第3章 讲 到 ") == "第3章讲到"

    def test_normalize_segments_removes_overlap_and_empties(self):
        segments = normalize_segments([
            Segment(2.0, 3.0, "b"),
            Segment(0.0, 2.5, "a"),
            Segment(3.0, 3.5, "   "),
        ])
        assert [(s.start, s.end, s.text) for s in segments] == [(0.0, 2.5, "a"), (2.5, 3.0, "b")]


class TestDeepgramProvider:

    def test_parse_chinese_response(self):
        result = DeepgramProvider("key").parse_response(DEEPGRAM_BODY)
        assert result.text == "你好我是 Deepgram 用户"
        assert result.language == "zh"
        assert result.duration == 4.2
        assert [s.text for s in result.segments] == ["你好", "我是 Deepgram 用户"]
        assert result.segments[1].start == pytest.approx(0.6)
        assert result.segments[1].speaker == 1
        assert len(result.words) == 2
        assert result.is_well_formed()

    def test_submit_request(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(200, json=DEEPGRAM_BODY)

        provider = DeepgramProvider("secret", transport=httpx.MockTransport(handler))
        result = asyncio.run(provider.transcribe(ASSET, ProviderOptions(language="zh", diarize=True)))

        request = captured["request"]
        assert request.url.path == "/v1/listen"
        assert request.url.params["language"] == "zh"
        assert request.url.params["diarize"] == "true"
        assert request.headers["authorization"] == "Token secret"
        assert json.loads(request.content) == {"url": ASSET.url}
        assert result.provider == "deepgram"

    def test_language_detection_params(self):
        provider = DeepgramProvider("key")
        assert provider.build_params(ProviderOptions())["detect_language"] == "true"
        multi = provider.build_params(ProviderOptions(language="multi"))
        assert multi["language"] == "multi"
        assert multi["endpointing"] == "100"

    def test_http_error_becomes_provider_failure(self):
        provider = DeepgramProvider("key", transport=httpx.MockTransport(
            lambda r: httpx.Response(500, text="upstream exploded")
        ))
        with pytest.raises(ProviderFailure, match="HTTP 500"):
            asyncio.run(provider.transcribe(ASSET, ProviderOptions()))

    def test_unconfigured(self):
        provider = DeepgramProvider(None)
        assert not provider.is_configured
        with pytest.raises(ProviderFailure, match="not configured"):
            asyncio.run(provider.transcribe(ASSET, ProviderOptions()))


class TestWhisperReplicateProvider:

    def test_submit_then_poll(self):
        statuses = iter(["processing", "succeeded"])
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "POST":
                return httpx.Response(201, json=whisper_output(status="starting"))
            return httpx.Response(200, json=whisper_output(status=next(statuses)))

        provider = WhisperReplicateProvider("token", poll_interval=0, transport=httpx.MockTransport(handler))
        result = asyncio.run(provider.transcribe(ASSET, ProviderOptions(language="en")))

        assert [r.method for r in requests] == ["POST", "GET", "GET"]
        body = json.loads(requests[0].content)
        assert body["input"]["audio"] == ASSET.url
        assert body["input"]["language"] == "en"
        assert requests[0].headers["authorization"] == "Bearer token"
        assert result.text == "Hello there. General Kenobi."
        assert [s.text for s in result.segments] == ["Hello there.", "General Kenobi."]
        assert result.words[0].text == "Hello"
        assert result.duration == 3.0

    def test_failed_prediction(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(201, json=whisper_output(status="starting"))
            data = whisper_output(status="failed")
            data["error"] = "CUDA out of memory"
            return httpx.Response(200, json=data)

        provider = WhisperReplicateProvider("token", poll_interval=0, transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderFailure, match="CUDA out of memory"):
            asyncio.run(provider.transcribe(ASSET, ProviderOptions()))

    def test_poll_budget_exhausted(self):
        provider = WhisperReplicateProvider(
            "token", poll_interval=0, max_polls=3,
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json=whisper_output(status="processing"))),
        )
        with pytest.raises(ProviderTimeout, match="3 polls"):
            asyncio.run(provider.transcribe(ASSET, ProviderOptions()))

    def test_parse_nested_chinese_output(self):
        output = {"output": {
            "detected_language": "zh",
            "segments": [{"start": 0, "end": 2, "text": " 你 好 世 界 "}],
        }}
        result = WhisperReplicateProvider("token").parse_output(output)
        assert result.text == "你好世界"
        assert result.segments[0].text == "你好世界"

    def test_parse_rejects_non_dict(self):
        with pytest.raises(ValueError):
            WhisperReplicateProvider("token").parse_output("plain string")


class TestProviderDispatcher:

    def test_timeout_falls_back_to_second_provider(self):
        """Provider 1 exceeds its budget; the job completes from provider 2 only."""
        slow = FakeProvider("deepgram", text="from deepgram", delay=1.0)
        fast = FakeProvider("whisper", text="from whisper")
        dispatcher = ProviderDispatcher([slow, fast], slo_timeouts={Tier.FREE: 0.05})

        outcome = asyncio.run(dispatcher.dispatch(ASSET, ProviderOptions(language="en"), Tier.FREE))

        assert isinstance(outcome, DispatchSuccess)
        assert outcome.provider_id == "whisper"
        assert outcome.result.text == "from whisper"
        assert outcome.result.provider == "whisper"
        assert len(outcome.errors) == 1
        assert isinstance(outcome.errors[0], ProviderTimeout)
        assert outcome.errors[0].provider_id == "deepgram"

    def test_all_providers_failed(self):
        dispatcher = ProviderDispatcher([
            FakeProvider("deepgram", error=ProviderFailure("deepgram", "HTTP 401")),
            FakeProvider("whisper", error=RuntimeError("boom")),
        ])
        outcome = asyncio.run(dispatcher.dispatch(ASSET, ProviderOptions()))

        assert isinstance(outcome, AllProvidersFailed)
        assert [e.provider_id for e in outcome.errors] == ["deepgram", "whisper"]
        assert "HTTP 401" in outcome.message
        assert "unexpected error: boom" in outcome.message

    def test_malformed_result_is_a_failure(self):
        broken = FakeProvider("deepgram", segments=[Segment(2.0, 1.0, "backwards")])
        fallback = FakeProvider("whisper", text="fine")
        outcome = asyncio.run(ProviderDispatcher([broken, fallback]).dispatch(ASSET, ProviderOptions()))
        assert outcome.provider_id == "whisper"
        assert "malformed" in str(outcome.errors[0])

    def test_language_ordering_and_unconfigured_providers(self):
        deepgram = FakeProvider("deepgram")
        whisper = FakeProvider("whisper")
        offline = FakeProvider("other", configured=False)
        dispatcher = ProviderDispatcher([deepgram, whisper, offline])

        assert [p.provider_id for p in dispatcher.order_providers("zh-CN")] == ["whisper", "deepgram"]
        assert [p.provider_id for p in dispatcher.order_providers("en")] == ["deepgram", "whisper"]

    def test_no_configured_providers(self):
        dispatcher = ProviderDispatcher([FakeProvider("deepgram", configured=False)])
        outcome = asyncio.run(dispatcher.dispatch(ASSET, ProviderOptions()))
        assert isinstance(outcome, AllProvidersFailed)
        assert outcome.message == "no providers configured"

    def test_fan_out_first_success_wins(self):
        slow = FakeProvider("deepgram", text="slow", delay=0.5)
        failing = FakeProvider("whisper", error=ProviderFailure("whisper", "HTTP 503"))
        quick = FakeProvider("other", text="quick", delay=0.01)
        dispatcher = ProviderDispatcher([slow, failing, quick], mode="fan_out")

        outcome = asyncio.run(dispatcher.dispatch(ASSET, ProviderOptions()))

        assert outcome.provider_id == "other"
        assert outcome.result.text == "quick"
        assert [e.provider_id for e in outcome.errors] == ["whisper"]

    def test_last_provider_has_fallback_ceiling(self):
        slow = FakeProvider("deepgram", delay=1.0)
        dispatcher = ProviderDispatcher([slow], fallback_timeout=0.05)

        outcome = asyncio.run(dispatcher.dispatch(ASSET, ProviderOptions(language="en"), Tier.BASIC))

        assert isinstance(outcome, AllProvidersFailed)
        assert isinstance(outcome.errors[0], ProviderTimeout)

    def test_fan_out_awaits_cancelled_branches(self):
        slow = FakeProvider("deepgram", text="slow", delay=5.0)
        quick = FakeProvider("whisper", text="quick")
        dispatcher = ProviderDispatcher([slow, quick], mode="fan_out")

        async def run():
            outcome = await dispatcher.dispatch(ASSET, ProviderOptions())
            leftover = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            return outcome, leftover

        outcome, leftover = asyncio.run(run())

        assert outcome.provider_id == "whisper"
        assert leftover == []

    def test_fan_out_collects_errors_finished_with_the_winner(self):
        failing = FakeProvider("deepgram", error=ProviderFailure("deepgram", "HTTP 500"))
        winner = FakeProvider("whisper", text="done")
        dispatcher = ProviderDispatcher([failing, winner], mode="fan_out")

        outcome = asyncio.run(dispatcher.dispatch(ASSET, ProviderOptions()))

        assert outcome.provider_id == "whisper"
        assert [e.provider_id for e in outcome.errors] == ["deepgram"]

    def test_timeouts(self):
        dispatcher = ProviderDispatcher([])
        assert dispatcher.timeout_for(Tier.BASIC) == 60
        assert dispatcher.timeout_for(Tier.BASIC, is_preview=True) == 15

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            ProviderDispatcher([], mode="round_robin")
