"""Tests for token counting and content chunking."""

import pytest
from hypothesis import given, settings, strategies as st

from context_palace.services.chunker import ContentChunker
from context_palace.services.tokens import TokenCounter


class TestTokenCounter:
    """The character estimate used when no encoding is configured."""

    def test_empty_text_is_zero_tokens(self) -> None:
        assert TokenCounter().count("") == 0

    def test_estimate_rounds_up(self) -> None:
        counter = TokenCounter()
        assert counter.count("abcd") == 1
        assert counter.count("abcde") == 2
        assert counter.count_many(["abcd", "", "abcdefgh"]) == [1, 0, 2]

    def test_fits(self) -> None:
        counter = TokenCounter()
        assert counter.fits("x" * 40, 10)
        assert not counter.fits("x" * 41, 10)


class TestContentChunker:
    """Splitting is lossless, bounded and prefers natural boundaries."""

    def test_short_content_is_single_segment(self) -> None:
        chunker = ContentChunker()
        assert chunker.split("hello there", 100) == ["hello there"]

    def test_empty_content_is_single_empty_segment(self) -> None:
        assert ContentChunker().split("", 10) == [""]

    def test_threshold_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ContentChunker().split("anything", 0)

    def test_ten_thousand_tokens_make_three_chunks(self) -> None:
        chunker = ContentChunker()
        content = "word " * 8000  # 40,000 chars, 10,000 estimated tokens

        segments = chunker.split(content, 4000)

        assert len(segments) == 3
        assert "".join(segments) == content
        assert all(chunker.counter.count(segment) <= 4000 for segment in segments)

    def test_prefers_paragraph_boundaries(self) -> None:
        chunker = ContentChunker()
        content = ("x" * 998 + "\n\n") * 10

        segments = chunker.split(content, 1000)

        assert len(segments) == 3
        assert all(segment.endswith("\n\n") for segment in segments)
        assert "".join(segments) == content

    def test_hard_cut_without_boundary(self) -> None:
        segments = ContentChunker().split("x" * 20000, 1000)

        assert [len(segment) for segment in segments] == [4000] * 5

    def test_split_is_deterministic(self) -> None:
        chunker = ContentChunker()
        content = "The quick brown fox. " * 900
        assert chunker.split(content, 500) == chunker.split(content, 500)

    @given(
        content=st.text(min_size=0, max_size=3000),
        threshold=st.integers(min_value=1, max_value=200),
    )
    @settings(max_examples=150, deadline=None)
    def test_split_is_lossless_and_bounded(self, content: str, threshold: int) -> None:
        """Concatenated segments equal the input and each fits the threshold."""
        chunker = ContentChunker()

        segments = chunker.split(content, threshold)

        assert "".join(segments) == content
        assert all(chunker.counter.count(segment) <= threshold for segment in segments)
        if len(segments) > 1:
            assert all(segments)
