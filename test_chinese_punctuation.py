#!/usr/bin/env python3
"""
Unit tests for deterministic Chinese punctuation.

Covers the logographic-dominance check, per-segment normalization and the
duration/pause heuristic for terminal punctuation.
"""

import pytest

from core.chinese_punctuation import (
    add_terminal_punctuation,
    count_scripts,
    heuristic_punctuate_chinese,
    is_chinese,
    local_chinese_punctuate,
    normalize_segments_punctuation,
    rebuild_text,
    terminal_mark,
)
from core.models import Segment


class TestChineseDetection:

    def test_count_scripts(self):
        assert count_scripts("你好 Deepgram") == (2, 8)
        assert count_scripts("") == (0, 0)
        assert count_scripts(None) == (0, 0)

    @pytest.mark.parametrize("language,text,expected", [
        ("zh", "你好世界", True),
        ("zh-CN", "我喜欢 Python 编程语言和中文", True),
        ("en", "你好世界", False),
        (None, "你好世界", False),
        ("zh", "Hello world, this is mostly English 你", False),
        ("zh", "", False),
        ("zh", "12345", False),
    ])
    def test_is_chinese(self, language, text, expected):
        assert is_chinese(language, text) is expected


class TestLocalPunctuation:

    def test_ascii_punctuation_becomes_native(self):
        assert local_chinese_punctuate("你好 , 世界 .") == "你好，世界。"
        assert local_chinese_punctuate("真的吗?") == "真的吗？"

    def test_script_boundary_spacing(self):
        assert local_chinese_punctuate("我喜欢Python编程") == "我喜欢 Python 编程"
        assert local_chinese_punctuate("你 好 世 界") == "你好世界"

    def test_duplicate_punctuation_collapses(self):
        assert local_chinese_punctuate("好。。。") == "好。"

    def test_quotes_and_brackets(self):
        assert local_chinese_punctuate('他说"你好"') == "他说“你好”"
        assert local_chinese_punctuate("北京(首都)") == "北京（首都）"

    def test_empty(self):
        assert local_chinese_punctuate("") == ""

    def test_heuristic_connectors_and_particles(self):
        assert heuristic_punctuate_chinese("我今天很累但是我还要工作") == "我今天很累，但是我还要工作"
        assert heuristic_punctuate_chinese("你吃饭了吗我们走吧") == "你吃饭了吗？我们走吧"


class TestTerminalPunctuation:

    @pytest.mark.parametrize("text,duration,gap,expected", [
        ("你好吗", 1.0, 0.1, "？"),
        ("我们走吧", 1.0, None, "？"),
        ("结束了", 1.0, None, "。"),
        ("很长的一句话", 3.5, 0.1, "。"),
        ("停顿很久", 1.0, 1.0, "。"),
        ("中等长度", 2.0, 0.1, "，"),
        ("短暂停顿", 1.0, 0.7, "，"),
        ("连着说", 1.0, 0.2, ""),
    ])
    def test_terminal_mark(self, text, duration, gap, expected):
        assert terminal_mark(text, duration, gap) == expected

    def test_pause_after_segment_ends_sentence(self):
        """A 2s segment followed by a 1.2s pause gets a full stop."""
        segments = [Segment(0.0, 2.0, "你好我是小明"), Segment(3.2, 4.0, "很高兴认识你。")]
        result = add_terminal_punctuation(segments)
        assert result[0].text == "你好我是小明。"
        assert (result[0].start, result[0].end) == (0.0, 2.0)
        assert result[1].text == "很高兴认识你。"

    def test_untouched_segments(self):
        segments = [
            Segment(0.0, 1.0, "Hello world"),
            Segment(1.0, 2.0, "已经有标点，"),
            Segment(2.0, 3.0, ""),
        ]
        assert [s.text for s in add_terminal_punctuation(segments)] == ["Hello world", "已经有标点，", ""]

    def test_input_is_not_mutated(self):
        segments = [Segment(0.0, 2.0, "你好我是小明")]
        add_terminal_punctuation(segments)
        assert segments[0].text == "你好我是小明"


class TestSegmentNormalization:

    def test_timings_and_speakers_preserved(self):
        segments = [Segment(0.5, 1.5, " 你 好 , 世 界 ", speaker=2), Segment(1.5, 2.0, "再见!")]
        result = normalize_segments_punctuation(segments)
        assert [s.text for s in result] == ["你好，世界", "再见！"]
        assert [(s.start, s.end, s.speaker) for s in result] == [(0.5, 1.5, 2), (1.5, 2.0, None)]

    def test_rebuild_text(self):
        assert rebuild_text([Segment(0, 1, " 你好。"), Segment(1, 2, "再见。 ")]) == "你好。再见。"
