"""Snippet derivation: short previews used by the low-detail index tiers."""

import re
from collections import Counter

from context_palace.core.config import SnippetStrategy

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"[A-Za-z0-9_']+")
ELLIPSIS = "..."

STOPWORDS = frozenset(
    """
    a about above after again all also am an and any are as at be because been before being
    below between both but by can could did do does doing down during each few for from
    further had has have having he her here hers herself him himself his how i if in into is
    it its itself just me more most my myself no nor not now of off on once only or other our
    ours ourselves out over own same she should so some such than that the their theirs them
    themselves then there these they this those through to too under until up very was we were
    what when where which while who whom why will with would you your yours yourself
    yourselves let lets get got like one two use used using
    """.split()
)


def tokenize_words(text: str) -> list[str]:
    """Lower-cased words with stopwords and very short tokens removed."""
    return [w for w in (m.group(0).lower() for m in _WORD.finditer(text)) if len(w) > 2 and w not in STOPWORDS]


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_END.split(text.strip()) if s.strip()]


def truncate(text: str, length: int) -> str:
    """Cut ``text`` to at most ``length`` characters, preferring a word boundary."""
    text = " ".join(text.split())
    if len(text) <= length:
        return text
    if length <= len(ELLIPSIS):
        return text[:length]
    cut = text[: length - len(ELLIPSIS)]
    space = cut.rfind(" ")
    if space > length // 2:
        cut = cut[:space]
    return cut.rstrip() + ELLIPSIS


def first_snippet(content: str, length: int) -> str:
    return truncate(content, length)


def semantic_core_snippet(content: str, length: int) -> str:
    """The sentence sharing the most vocabulary with the rest of the content."""
    sentences = split_sentences(content)
    if len(sentences) <= 1:
        return truncate(content, length)

    frequencies = Counter(tokenize_words(content))
    best_index, best_score = 0, -1.0
    for index, sentence in enumerate(sentences):
        words = tokenize_words(sentence)
        if not words:
            continue
        own = Counter(words)
        # Overlap with the rest of the document, normalised by sentence length
        score = sum(frequencies[w] - own[w] for w in own) / len(words)
        if score > best_score:
            best_index, best_score = index, score
    return truncate(sentences[best_index], length)


def summary_snippet(content: str, length: int) -> str:
    """First and last sentence joined by an ellipsis."""
    sentences = split_sentences(content)
    if len(sentences) <= 2:
        return truncate(content, length)
    joined = f"{sentences[0]} {ELLIPSIS} {sentences[-1]}"
    if len(joined) <= length:
        return joined
    return truncate(sentences[0], length)


_STRATEGIES = {
    "first": first_snippet,
    "semantic_core": semantic_core_snippet,
    "summary": summary_snippet,
}


def make_snippet(content: str, length: int, strategy: SnippetStrategy = "first") -> str:
    """Derive a preview of at most ``length`` characters."""
    return _STRATEGIES[strategy](content, length)


def top_keywords(texts: list[str], limit: int = 5) -> list[str]:
    """Most frequent non-stopword terms across ``texts``; ties break alphabetically."""
    counts: Counter[str] = Counter()
    for text in texts:
        counts.update(set(tokenize_words(text)))
    return [word for word, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]]
