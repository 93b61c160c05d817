"""Lossless splitting of oversized content into token-bounded segments."""

from context_palace.core.logging import get_logger

from .tokens import TokenCounter

logger = get_logger(__name__)

# Preferred split points, strongest first. A segment ends right after the
# separator so concatenating segments reproduces the input exactly.
BOUNDARIES: tuple[str, ...] = ("\n\n", "\n", ". ", "? ", "! ", " ")

# How far back (as a fraction of the segment) to look for a boundary.
BACKOFF_RATIO = 0.1


class ContentChunker:
    """Splits content into ordered segments of at most ``threshold`` tokens.

    The split is greedy and deterministic: each segment is the longest prefix
    of the remaining text within the threshold, pulled back to the nearest
    natural boundary when one lies within the backoff window. No overlap is
    ever applied to the segments themselves.
    """

    def __init__(self, counter: TokenCounter | None = None):
        self.counter = counter or TokenCounter()

    def needs_chunking(self, content: str, threshold: int) -> bool:
        return self.counter.count(content) > threshold

    def split(self, content: str, threshold: int) -> list[str]:
        """Split ``content``; a single-element result means no chunking is needed."""
        if threshold < 1:
            raise ValueError("threshold must be positive")
        if not self.needs_chunking(content, threshold):
            return [content]

        segments: list[str] = []
        start = 0
        while start < len(content):
            end = self._longest_fit(content, start, threshold)
            if end < len(content):
                end = self._pull_back_to_boundary(content, start, end)
            segments.append(content[start:end])
            start = end

        logger.debug(
            "Split content into chunks",
            chunk_count=len(segments),
            threshold=threshold,
            length=len(content),
        )
        return segments

    def _longest_fit(self, content: str, start: int, threshold: int) -> int:
        # Binary search over the end offset; always advances at least one char.
        best = start + 1
        lo, hi = start + 1, len(content)
        while lo <= hi:
            mid = (lo + hi) // 2
            if self.counter.count(content[start:mid]) <= threshold:
                best = mid
                lo = mid + 1
            else:
                hi = mid - 1
        return best

    def _pull_back_to_boundary(self, content: str, start: int, end: int) -> int:
        window_start = max(start + 1, end - max(1, int((end - start) * BACKOFF_RATIO)))
        for separator in BOUNDARIES:
            position = content.rfind(separator, window_start, end)
            if position != -1 and position + len(separator) <= end:
                return position + len(separator)
        return end
