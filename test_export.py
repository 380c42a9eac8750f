#!/usr/bin/env python3
"""
Tests for the transcript output formats.
"""

import json

import pytest

from core.export import (
    format_srt_time,
    format_timestamp,
    format_vtt_time,
    render_outputs,
    to_markdown,
    to_srt,
    to_txt,
    to_vtt,
)
from core.models import Segment, TranscriptionResult


@pytest.fixture
def english():
    return TranscriptionResult(
        text="Hello there. General Kenobi.",
        segments=[Segment(0.0, 1.5, "Hello there."), Segment(1.5, 3.25, " General Kenobi. ")],
        language="en",
        duration=3.25,
        provider="whisper",
    )


@pytest.fixture
def chinese():
    return TranscriptionResult(
        text="你好，我是小明。今天天气很好！我们走吧？",
        segments=[Segment(0.0, 2.0, "你好，我是小明。"), Segment(2.0, 4.0, "今天天气很好！我们走吧？")],
        language="zh",
    )


class TestTimestamps:

    @pytest.mark.parametrize("seconds,expected", [
        (0, "00:00:00,000"),
        (1.5, "00:00:01,500"),
        (3661.0456, "01:01:01,046"),
        (-2, "00:00:00,000"),
        (None, "00:00:00,000"),
    ])
    def test_srt_time(self, seconds, expected):
        assert format_srt_time(seconds) == expected

    def test_vtt_time(self):
        assert format_vtt_time(62.25) == "00:01:02.250"

    def test_short_timestamp(self):
        assert format_timestamp(75) == "01:15"
        assert format_timestamp(3725) == "01:02:05"


class TestRenderers:

    def test_srt(self, english):
        assert to_srt(english) == (
            "1\n00:00:00,000 --> 00:00:01,500\nHello there.\n"
            "\n"
            "2\n00:00:01,500 --> 00:00:03,250\nGeneral Kenobi.\n"
        )

    def test_vtt(self, english):
        lines = to_vtt(english).split("\n")
        assert lines[0] == "WEBVTT"
        assert lines[2] == "00:00:00.000 --> 00:00:01.500"
        assert lines[6] == "General Kenobi."

    def test_txt_english_is_unchanged(self, english):
        assert to_txt(english) == "Hello there. General Kenobi."

    def test_txt_chinese_one_sentence_per_line(self, chinese):
        assert to_txt(chinese) == "你好，我是小明。\n今天天气很好！\n我们走吧？"

    def test_markdown(self, english):
        md = to_markdown(english, title="Interview")
        assert md.startswith("# Interview\n")
        assert "**Language:** en" in md
        assert "**Duration:** 3s" in md
        assert "**[00:01]** General Kenobi." in md

    def test_markdown_without_segments(self):
        md = to_markdown(TranscriptionResult(text="Just text"))
        assert "**Language:** unknown" in md
        assert md.endswith("Just text\n")

    def test_render_outputs(self, chinese):
        outputs = render_outputs(chinese, ["json", "srt"])
        assert set(outputs) == {"json", "srt"}
        data = json.loads(outputs["json"])
        assert data["text"] == chinese.text
        assert data["segments"][1]["start"] == 2.0
        assert "你好" in outputs["json"]

    def test_unknown_format(self, english):
        with pytest.raises(ValueError, match="Unsupported format"):
            render_outputs(english, ["txt", "docx"])
