"""Tests for the truncator and line-range helpers."""

import pytest

from context import truncate_context, validate_range, extract_lines, TRUNCATION_MARKER


def test_short_content_untouched():
    """Test that content within budget is returned as-is."""
    result = truncate_context("hello", 100)

    assert result.content == "hello"
    assert not result.truncated
    assert result.omitted == 0


def test_truncation_marker_counts_omitted_chars():
    """Test that the marker reports exactly how many characters were dropped."""
    result = truncate_context("a" * 100, 50)

    assert result.truncated
    assert len(result.content) <= 50
    assert result.omitted == 82
    assert result.content == "a" * 18 + "...[truncated, 82 chars omitted]"


def test_truncation_never_exceeds_budget():
    """Test that the result fits the budget even when the omitted count gains a digit."""
    for length in range(101, 400):
        result = truncate_context("x" * length, 100)

        assert len(result.content) <= 100, length
        assert result.omitted == length - result.content.index("...[truncated")

    assert truncate_context("x" * 168, 100).content == "x" * 67 + "...[truncated, 101 chars omitted]"


def test_truncation_is_deterministic():
    """Test that truncating the same input twice gives the same output."""
    text = "x" * 5000
    assert truncate_context(text, 1000) == truncate_context(text, 1000)


def test_budget_smaller_than_marker():
    """Test that a tiny budget yields only the marker."""
    result = truncate_context("abcdef" * 10, 5)

    assert result.truncated
    assert result.content == "...[truncated, 60 chars omitted]"
    assert result.omitted == 60


def test_marker_template():
    assert "N chars omitted" in TRUNCATION_MARKER


@pytest.mark.parametrize("content,max_chars", [(None, 10), ("abc", 0), ("abc", "10")])
def test_truncate_rejects_bad_arguments(content, max_chars):
    with pytest.raises(TypeError):
        truncate_context(content, max_chars)


def test_validate_range_ok():
    assert validate_range(1, 3, 3).valid


@pytest.mark.parametrize("start,end,max_lines,fragment", [
    (0, 2, 5, "Start line must be >= 1"),
    (2, 9, 5, "exceeds content max lines 5"),
    (4, 2, 5, "cannot exceed end line"),
    ("1", 2, 5, "must be integers"),
])
def test_validate_range_errors(start, end, max_lines, fragment):
    """Test that each invalid range is reported, not raised."""
    result = validate_range(start, end, max_lines)

    assert not result.valid
    assert fragment in result.error


def test_extract_lines_is_one_indexed_and_inclusive():
    content = "one\ntwo\nthree\nfour"

    result = extract_lines(content, 2, 3)

    assert result.valid
    assert result.lines == ["two", "three"]


def test_extract_lines_invalid_range():
    result = extract_lines("one\ntwo", 2, 5)

    assert not result.valid
    assert result.lines == []
