#!/usr/bin/env python3
"""
Test Suite for Refinement and Realignment

Tests sentence splitting, greedy realignment to word anchors, the LLM
punctuation restorer against a mocked chat-completions endpoint, and the
ordered refinement engine.
"""

import asyncio
import json
import random

import httpx
import pytest

from config.settings import Settings
from core.error_handling import RealignmentFailure
from core.models import Segment, Word
from core.punctuation_restorer import LLMPunctuationRestorer, chunk_text, is_sparse_chinese
from core.refinement import RefinementEngine
from core.sentence_align import align_sentences_with_anchors, split_into_sentences

LLM_BASE = "https://llm.example.com/v1"


def char_anchors(segment: Segment):
    """One anchor per character, spread evenly over the segment."""
    step = (segment.end - segment.start) / len(segment.text)
    return [
        Word(ch, round(segment.start + i * step, 3), round(segment.start + (i + 1) * step, 3))
        for i, ch in enumerate(segment.text)
    ]


def llm_transport(rewrite, calls=None):
    """Chat-completions endpoint that applies ``rewrite`` to the submitted text."""
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        text = body["messages"][1]["content"].split("Text:\n", 1)[1]
        if calls is not None:
            calls.append(text)
        return httpx.Response(200, json={"choices": [{"message": {"content": rewrite(text)}}]})

    return httpx.MockTransport(handler)


class TestSentenceSplitting:

    def test_chinese_sentences_keep_punctuation(self):
        assert split_into_sentences("你好。我是小明！今天天气很好", True) == ["你好。", "我是小明！", "今天天气很好"]
        assert split_into_sentences("他说：“走吧。”然后走了。", True) == ["他说：“走吧。”", "然后走了。"]

    def test_latin_sentences(self):
        assert split_into_sentences("Hello there. How are you? Fine", False) == [
            "Hello there.", "How are you?", "Fine",
        ]

    def test_empty(self):
        assert split_into_sentences("   ", True) == []

    @pytest.mark.parametrize("seed", [0, 5, 17, 123])
    def test_sentences_rejoin_to_source(self, seed):
        rng = random.Random(seed)
        alphabet = "你好我是小明天气很。！？；”，"
        text = "".join(rng.choice(alphabet) for _ in range(200))
        assert "".join(split_into_sentences(text, True)) == text


class TestAlignment:

    def test_sentences_take_anchor_timings(self):
        anchors = [
            Word("你", 0.0, 0.3, speaker=0),
            Word("好", 0.3, 0.6, speaker=0),
            Word("我", 0.8, 1.0, speaker=1),
            Word("是", 1.0, 1.2, speaker=1),
            Word("小", 1.2, 1.6, speaker=1),
            Word("明", 1.6, 2.0, speaker=0),
        ]
        segments = align_sentences_with_anchors("你好。我是小明。", anchors, is_zh=True)

        assert [s.text for s in segments] == ["你好。", "我是小明。"]
        assert [(s.start, s.end) for s in segments] == [(0.0, 0.6), (0.8, 2.0)]
        assert [s.speaker for s in segments] == [0, 1]

    def test_leftover_sentences_sit_at_tail(self):
        anchors = [Word("你好", 0.0, 0.6), Word("世界", 0.6, 1.4)]
        segments = align_sentences_with_anchors("你好世界。再见。", anchors, is_zh=True)
        assert segments[-1] == Segment(1.4, 1.4, "再见。")

    def test_latin_alignment(self):
        anchors = [
            Word("Hello", 0.0, 0.4),
            Word("there.", 0.5, 0.9),
            Word("How", 1.0, 1.4),
            Word("are", 1.5, 1.9),
            Word("you?", 2.0, 2.4),
        ]
        segments = align_sentences_with_anchors("Hello there. How are you?", anchors, is_zh=False)
        assert [(s.text, s.start, s.end) for s in segments] == [
            ("Hello there.", 0.0, 0.9),
            ("How are you?", 1.0, 2.4),
        ]

    @pytest.mark.parametrize("seed", [2, 8, 31])
    def test_output_is_ordered_and_round_trips(self, seed):
        rng = random.Random(seed)
        words, anchors, clock = [], [], 0.0
        for _ in range(60):
            word = "".join(rng.choice("天地人你我他好坏") for _ in range(rng.randint(1, 3)))
            duration = rng.uniform(0.1, 0.6)
            anchors.append(Word(word, round(clock, 3), round(clock + duration, 3)))
            clock += duration + rng.choice([0.0, 0.0, 0.4])
            words.append(word + rng.choice(["", "", "", "，", "。", "？"]))
        text = "".join(words)

        segments = align_sentences_with_anchors(text, anchors, is_zh=True)

        assert "".join(s.text for s in segments) == text
        for previous, current in zip(segments, segments[1:]):
            assert current.start >= previous.end
        assert all(s.end >= s.start for s in segments)

    @pytest.mark.parametrize("text,anchors", [
        ("你好。", []),
        ("   ", [Word("你", 0.0, 0.5)]),
        ("你好。", [Word("你", 0.5, 0.2)]),
        ("你好。", [Word("你", 1.0, 1.2), Word("好", 0.2, 0.4)]),
    ])
    def test_failures(self, text, anchors):
        with pytest.raises(RealignmentFailure):
            align_sentences_with_anchors(text, anchors, is_zh=True)


class TestLLMPunctuationRestorer:

    def test_chunk_text(self):
        plain = "字" * 3000
        chunks = chunk_text(plain, 1200)
        assert [len(c) for c in chunks] == [1440, 1440, 120]
        assert "".join(chunks) == plain

        sentences = ("好" * 1000 + "。") * 3
        assert [len(c) for c in chunk_text(sentences, 1200)] == [1001, 1001, 1001]

    def test_sparse_chinese(self):
        assert is_sparse_chinese("你好")
        assert not is_sparse_chinese("中文语音识别" * 6)

    def test_segments_are_punctuated_independently(self):
        calls = []
        restorer = LLMPunctuationRestorer(
            "key", api_base=LLM_BASE, batch_delay=0,
            transport=llm_transport(lambda t: t.replace("你好", "你好，"), calls),
        )
        segments = [
            Segment(0.0, 2.0, "你好我是小明。"),
            Segment(2.0, 2.5, "好的"),
            Segment(2.5, 4.0, "Hello world again"),
        ]
        result = asyncio.run(restorer.punctuate_segments(segments, "zh"))

        assert calls == ["你好我是小明。"]
        assert result[0] == Segment(0.0, 2.0, "你好，我是小明。")
        assert result[1:] == segments[1:]

    def test_failed_request_keeps_original(self):
        restorer = LLMPunctuationRestorer(
            "key", api_base=LLM_BASE, batch_delay=0,
            transport=httpx.MockTransport(lambda r: httpx.Response(500)),
        )
        segments = [Segment(0.0, 2.0, "你好我是小明。")]
        assert asyncio.run(restorer.punctuate_segments(segments, "zh")) == segments

        text = "中文语音识别" * 6
        assert asyncio.run(restorer.punctuate_text(text, "zh")) == text

    def test_not_applicable(self):
        restorer = LLMPunctuationRestorer(None)
        assert not restorer.is_configured
        assert asyncio.run(restorer.punctuate_text("中文语音识别" * 6, "zh")) is None

        configured = LLMPunctuationRestorer("key", api_base=LLM_BASE)
        assert asyncio.run(configured.punctuate_text("Hello world", "en")) is None


class TestRefinementEngine:

    SEGMENTS = [Segment(0.0, 2.0, "你好我是小明"), Segment(3.2, 6.0, "今天天气很好")]
    TEXT = "你好我是小明今天天气很好"

    def test_non_chinese_is_untouched(self):
        segments = [Segment(0.0, 1.0, "Hello world")]
        result = asyncio.run(RefinementEngine().refine("Hello world", segments, "en"))
        assert not result.applied
        assert result.text == "Hello world"
        assert result.segments == segments
        assert result.steps == []

    def test_full_pipeline_realigns_to_word_anchors(self):
        anchors = char_anchors(self.SEGMENTS[0]) + char_anchors(self.SEGMENTS[1])
        result = asyncio.run(RefinementEngine().refine(self.TEXT, self.SEGMENTS, "zh", anchors=anchors))

        assert result.applied
        assert result.realigned
        assert result.text == "你好我是小明。今天天气很好。"
        assert [s.text for s in result.segments] == ["你好我是小明。", "今天天气很好。"]
        assert [(s.start, s.end) for s in result.segments] == [(0.0, 2.0), (3.2, 6.0)]
        assert result.steps == [
            "normalize_punctuation", "terminal_punctuation", "latin_noise", "realign",
        ]

    def test_missing_anchors_keep_original_timings(self):
        result = asyncio.run(RefinementEngine().refine(self.TEXT, self.SEGMENTS, "zh"))

        assert not result.realigned
        assert [(s.start, s.end) for s in result.segments] == [(0.0, 2.0), (3.2, 6.0)]
        assert [s.text for s in result.segments] == ["你好我是小明。", "今天天气很好。"]

    def test_invalid_anchors_do_not_fail_refinement(self):
        anchors = [Word("你好", 2.0, 1.0)]
        result = asyncio.run(RefinementEngine().refine(self.TEXT, self.SEGMENTS, "zh", anchors=anchors))
        assert not result.realigned
        assert "realign" in result.steps

    def test_llm_segment_mode(self):
        restorer = LLMPunctuationRestorer(
            "key", api_base=LLM_BASE, batch_delay=0,
            transport=llm_transport(lambda t: t.replace("你好", "你好，")),
        )
        engine = RefinementEngine(RefinementEngine.default_steps(restorer, "segment"))
        result = asyncio.run(engine.refine(self.TEXT, self.SEGMENTS, "zh"))

        assert "llm_punctuation" in result.steps
        assert result.segments[0].text == "你好，我是小明。"
        assert result.text == "你好，我是小明。今天天气很好。"

    def test_llm_full_text_mode(self):
        calls = []
        text = "中文语音识别" * 6
        restorer = LLMPunctuationRestorer(
            "key", api_base=LLM_BASE, batch_delay=0,
            transport=llm_transport(lambda t: t.replace("别中", "别，中"), calls),
        )
        engine = RefinementEngine(RefinementEngine.default_steps(restorer, "full_text"))
        segment = Segment(0.0, 6.0, text)
        result = asyncio.run(engine.refine(text, [segment], "zh", anchors=char_anchors(segment)))

        assert len(calls) == 1
        assert result.text == "中文语音识别，" * 5 + "中文语音识别。"
        assert result.realigned
        assert "".join(s.text for s in result.segments) == result.text

    def test_unknown_llm_mode(self):
        restorer = LLMPunctuationRestorer("key")
        with pytest.raises(ValueError):
            RefinementEngine.default_steps(restorer, "paragraph")

    def test_from_settings(self):
        off = RefinementEngine.from_settings(Settings(punctuate_llm_mode="off"))
        assert [s.name for s in off.steps] == [
            "normalize_punctuation", "terminal_punctuation", "latin_noise", "realign",
        ]

        on = RefinementEngine.from_settings(Settings(punctuate_llm_mode="segment", punctuate_llm_key="k"))
        assert "llm_punctuation" in [s.name for s in on.steps]
