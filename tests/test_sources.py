"""Tests for core.sources and util.functions."""

import pytest

from core.sources import (
    MAX_NAME_CHARS,
    UNKNOWN_TITLE,
    normalize_source,
    output_file_name,
    sanitize_file_name,
)
from util.functions import clamp_percent, parse_byte_range


class TestNormalizeSource:
    @pytest.mark.parametrize(
        "raw",
        [
            "https://youtu.be/abc12345678",
            "https://youtu.be/abc12345678?t=30",
            "https://www.youtube.com/watch?v=abc12345678",
            "https://m.youtube.com/watch?v=abc12345678&list=PLx&index=3",
            "https://music.youtube.com/watch?v=abc12345678",
            "https://www.youtube.com/shorts/abc12345678",
            "https://www.youtube.com/embed/abc12345678?start=4",
            "youtube.com/live/abc12345678",
        ],
    )
    def test_recognized_forms(self, raw: str) -> None:
        ref = normalize_source(raw)

        assert ref is not None
        assert ref.video_id == "abc12345678"
        assert ref.url == "https://www.youtube.com/watch?v=abc12345678"
        assert ref.provisional_name == "youtube-abc12345678"

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "not-a-real-source",
            "https://vimeo.com/12345678901",
            "https://youtu.be/short",
            "https://www.youtube.com/watch?v=",
            "https://www.youtube.com/channel/UC1234567890",
            "ftp://youtu.be/abc12345678",
            "https://evil.example/watch?v=abc12345678",
        ],
    )
    def test_rejected_forms(self, raw: str) -> None:
        assert normalize_source(raw) is None


class TestFileNames:
    def test_sanitize_replaces_unsafe_characters(self) -> None:
        assert sanitize_file_name('AC/DC: "Live" <1979>?') == "AC_DC_ _Live_ _1979__"

    def test_sanitize_collapses_whitespace(self) -> None:
        assert sanitize_file_name("  a \t\n b  ") == "a b"

    def test_sanitize_empty(self) -> None:
        assert sanitize_file_name(None) == UNKNOWN_TITLE
        assert sanitize_file_name("   ") == UNKNOWN_TITLE

    def test_sanitize_caps_length(self) -> None:
        assert len(sanitize_file_name("x" * 500)) == MAX_NAME_CHARS

    def test_output_file_name(self) -> None:
        assert output_file_name("My Song", ".M4A") == "My Song.m4a"
        assert output_file_name("My Song", "") == "My Song.webm"


class TestFunctions:
    def test_clamp_percent(self) -> None:
        assert clamp_percent(42.9) == 42
        assert clamp_percent(150, 99) == 99
        assert clamp_percent(-5) == 0
        assert clamp_percent(float("nan")) == 0

    def test_parse_byte_range(self) -> None:
        assert parse_byte_range(None, 100) is None
        assert parse_byte_range("bytes=0-9", 100) == (0, 9)
        assert parse_byte_range("bytes=90-", 100) == (90, 99)
        assert parse_byte_range("bytes=-10", 100) == (90, 99)
        assert parse_byte_range("bytes=50-500", 100) == (50, 99)

    @pytest.mark.parametrize("header", ["bytes=100-", "bytes=5-2", "items=0-1", "bytes=-", "bytes=-0"])
    def test_parse_byte_range_unsatisfiable(self, header: str) -> None:
        with pytest.raises(ValueError):
            parse_byte_range(header, 100)
