#!/usr/bin/env python3
"""
Tests for Latin transliteration noise clean-up in Chinese transcripts.
"""

import pytest

from core.models import Segment
from core.transcript_cleaner import fix_latin_noise, fix_latin_noise_in_segments


@pytest.mark.parametrize("raw,expected", [
    ("我喜欢看Y0UTUBE视频", "我喜欢看YouTube视频"),
    ("他在读HARRY POTTER", "他在读Harry Potter"),
    ("harrypotter第一部", "Harry Potter第一部"),
    ("HAVIRP0T很好看", "Harry Potter很好看"),
    ("朗读者是STEVENFRY", "朗读者是Stephen Fry"),
    ("stephen fry的声音", "Stephen Fry的声音"),
    ("每天练习SHAT0IN", "每天练习shadowing"),
    ("这是INPUT-BASED LEARNING", "这是input-based learning"),
    ("imput baste learn的方法", "input-based learning的方法"),
    ("练习0OUTPUT BASED LEARNING", "练习output-based learning"),
])
def test_known_terms(raw, expected):
    assert fix_latin_noise(raw) == expected


def test_zero_inside_words_only():
    assert fix_latin_noise("B0B说了10次") == "BOB说了10次"
    assert fix_latin_noise("H2O和2024年") == "H2O和2024年"


def test_empty_text():
    assert fix_latin_noise("") == ""
    assert fix_latin_noise(None) is None


def test_segments_keep_timings():
    segments = [
        Segment(0.0, 1.5, "打开Y0UTUBE", speaker=1),
        Segment(1.5, 3.0, "没有英文"),
    ]
    cleaned, changed = fix_latin_noise_in_segments(segments)

    assert changed == 1
    assert cleaned[0] == Segment(0.0, 1.5, "打开YouTube", speaker=1)
    assert cleaned[1] is not segments[1]
    assert cleaned[1] == segments[1]
    assert segments[0].text == "打开Y0UTUBE"
