"""Tests for markdown normalization and the shrink check."""

from __future__ import annotations

import pytest

from quire.core.markdown import check_shrink, has_meaningful_diff, normalize_markdown


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("line\r\nnext", "line\nnext"),
        ("trailing   \nspace", "trailing\nspace"),
        ("a\n\n\n\nb", "a\n\nb"),
        ("__bold__", "**bold**"),
        ("***", "---"),
        ("non&nbsp;breaking", "non breaking"),
        ("non\u00a0breaking", "non breaking"),
        ("- item\n+ item", "* item\n* item"),
        ("3. third\n7) seventh", "1. third\n1. seventh"),
        ("##Heading", "## Heading"),
        ("* top\n   * nested", "* top\n    * nested"),
        ("body\n\n", "body"),
    ],
)
def test_cosmetic_differences_are_ignored(left: str, right: str) -> None:
    assert normalize_markdown(left) == normalize_markdown(right)
    assert has_meaningful_diff(left, right) is False


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("one two", "one three"),
        ("*emphasis*", "emphasis"),
        ("# Heading", "## Heading"),
        ("para one\n\npara two", "para one\npara two"),
    ],
)
def test_content_changes_are_meaningful(left: str, right: str) -> None:
    assert has_meaningful_diff(left, right) is True


def test_identical_text_is_never_a_diff() -> None:
    assert has_meaningful_diff("", "") is False
    assert normalize_markdown("  # Title  \n") == "# Title"


def test_large_removal_is_suspicious() -> None:
    check = check_shrink("x" * 2000, "x" * 100)

    assert check.suspicious is True
    assert check.removed_percent == 95


def test_small_files_and_small_removals_pass() -> None:
    assert check_shrink("x" * 1000, "").suspicious is False
    assert check_shrink("x" * 1500, "x" * 1300).suspicious is False
    assert check_shrink("x" * 4000, "x" * 3500).suspicious is False
    assert check_shrink("x" * 2000, "x" * 3000).suspicious is False


def test_shrink_is_measured_in_utf8_bytes() -> None:
    check = check_shrink("é" * 600, "é" * 100)

    assert check.suspicious is True
    assert check.removed_percent == 83
