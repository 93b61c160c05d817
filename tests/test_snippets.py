"""Tests for snippet derivation and keyword extraction."""

import pytest
from hypothesis import given, settings, strategies as st

from context_palace.services.snippets import (
    ELLIPSIS,
    make_snippet,
    semantic_core_snippet,
    summary_snippet,
    top_keywords,
    truncate,
)

ARTICLE = (
    "Our deploy pipeline failed last night. "
    "The deploy pipeline retries flaky integration tests before failing. "
    "Lunch was good. "
    "We should make the deploy pipeline skip retries for known flaky tests."
)


class TestTruncate:
    def test_short_text_is_unchanged(self) -> None:
        assert truncate("short text", 50) == "short text"

    def test_whitespace_is_collapsed(self) -> None:
        assert truncate("a\n\n  b\tc", 50) == "a b c"

    def test_cuts_at_word_boundary(self) -> None:
        result = truncate("alpha beta gamma delta epsilon", 20)

        assert result == "alpha beta gamma..."
        assert len(result) <= 20

    def test_tiny_length(self) -> None:
        assert truncate("abcdef", 2) == "ab"


class TestStrategies:
    def test_first(self) -> None:
        assert make_snippet(ARTICLE, 40) == truncate(ARTICLE, 40)

    def test_semantic_core_prefers_central_sentence(self) -> None:
        assert "Lunch" not in semantic_core_snippet(ARTICLE, 200)
        assert "deploy pipeline" in semantic_core_snippet(ARTICLE, 200)

    def test_summary_joins_first_and_last(self) -> None:
        result = summary_snippet(ARTICLE, 300)

        assert result.startswith("Our deploy pipeline failed last night.")
        assert f" {ELLIPSIS} " in result
        assert result.endswith("known flaky tests.")

    def test_summary_falls_back_to_first_sentence(self) -> None:
        result = summary_snippet(ARTICLE, 60)

        assert result.startswith("Our deploy pipeline")
        assert len(result) <= 60

    @given(
        content=st.text(min_size=0, max_size=1500),
        length=st.integers(min_value=16, max_value=400),
        strategy=st.sampled_from(["first", "semantic_core", "summary"]),
    )
    @settings(max_examples=150, deadline=None)
    def test_length_is_bounded(self, content: str, length: int, strategy: str) -> None:
        assert len(make_snippet(content, length, strategy)) <= length


class TestKeywords:
    def test_frequency_then_alphabetical(self) -> None:
        texts = ["deploy pipeline broken", "deploy again", "pipeline green", "zebra"]

        assert top_keywords(texts, 3) == ["deploy", "pipeline", "broken"]

    def test_stopwords_are_ignored(self) -> None:
        assert top_keywords(["the and of with"]) == []

    @pytest.mark.parametrize("limit", [0, 1, 5])
    def test_limit(self, limit: int) -> None:
        assert len(top_keywords([ARTICLE], limit)) <= limit
