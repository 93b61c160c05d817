"""Adaptive context index: strategy selection, rendering and token budgeting.

The builder is synchronous and free of I/O so callers can run it in a worker
thread under a timeout. Its inputs are already-resolved ``IndexItem`` objects
(full content assembled for chunked entities).
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from context_palace.core.config import IndexConfig
from context_palace.core.logging import get_logger
from context_palace.domain.models import (
    ClusterSummary,
    ContextIndex,
    EntityKind,
    IndexEntry,
    IndexItem,
    IndexStrategy,
    PeriodRollup,
)
from context_palace.domain.models.utils import ensure_utc, utc_now

from .clustering import LinkageClusteringService, cluster_id_for
from .snippets import make_snippet, top_keywords
from .tokens import TokenCounter

logger = get_logger(__name__)

# Upper match count (inclusive) for each tier; above the last one the index
# is hierarchical.
STRATEGY_BREAKPOINTS: tuple[tuple[int, IndexStrategy], ...] = (
    (50, IndexStrategy.FULL),
    (500, IndexStrategy.SNIPPET),
    (5000, IndexStrategy.CLUSTERED),
)

MAX_CLUSTER_INPUT = 5000
ROLLUP_CLUSTER_INPUT = 2000
CLUSTER_SAMPLES = 3
CLUSTER_KEYWORDS = 5
KEYWORD_SAMPLE_CHARS = 500

PERIOD_LABELS = {
    "today": "Today",
    "this_week": "Earlier this week",
    "this_month": "Earlier this month",
    "older": "Older",
}

NAVIGATION_HINTS = [
    'get_period_messages(period="today" | "this_week" | "this_month" | "older" | "YYYY-MM-DD..YYYY-MM-DD")',
    "get_cluster(cluster_id, limit) for any topic handle shown above",
    "vector_search(query, limit) or search_and_retrieve(query) for specific content",
    "get_conversation_thread(id, depth) to follow a reply chain",
]


def select_strategy(match_count: int, override: str = "auto") -> IndexStrategy:
    """Tier for ``match_count`` deduplicated, filtered matches, unless overridden."""
    if override != "auto":
        return IndexStrategy(override)
    for upper, strategy in STRATEGY_BREAKPOINTS:
        if match_count <= upper:
            return strategy
    return IndexStrategy.HIERARCHICAL


def period_bounds(now: datetime) -> dict[str, tuple[datetime | None, datetime | None]]:
    """Disjoint buckets: since midnight UTC, the rest of 7 days, the rest of 30 days, older."""
    now = ensure_utc(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week = min(midnight, now - timedelta(days=7))
    month = min(week, now - timedelta(days=30))
    return {
        "today": (midnight, None),
        "this_week": (week, midnight),
        "this_month": (month, week),
        "older": (None, month),
    }


def _in_bucket(timestamp: datetime, bounds: tuple[datetime | None, datetime | None]) -> bool:
    start, end = bounds
    ts = ensure_utc(timestamp)
    return (start is None or ts >= start) and (end is None or ts < end)


def _fmt(timestamp: datetime) -> str:
    return ensure_utc(timestamp).strftime("%Y-%m-%d %H:%M")


@dataclass
class _Block:
    """A candidate historical block with its rendered lines."""

    section: str
    lines: list[str]
    score: float
    entry: IndexEntry | None = None
    cluster: ClusterSummary | None = None


@dataclass
class _Layout:
    header: str
    recent_lines: list[str]
    sections: list[str] = field(default_factory=list)
    accepted: list[_Block] = field(default_factory=list)
    footer: list[str] = field(default_factory=list)


class IndexBuilder:
    """Builds a ``ContextIndex`` that fits ``max_index_tokens``.

    Budget policy: the recent window is rendered first and always kept in
    full. Historical blocks are then appended in descending relevance while
    they fit; the first block that does not fit ends the historical part, so
    no partial entry is ever rendered. A final re-count of the complete text
    drops trailing blocks if rendering overhead pushed it over the budget.
    """

    def __init__(self, counter: TokenCounter | None = None, registry_size: int = 512):
        self.counter = counter or TokenCounter()
        self.registry_size = registry_size
        self._clusters: OrderedDict[str, ClusterSummary] = OrderedDict()
        self._registry_lock = threading.Lock()

    # Cluster registry

    def _register(self, clusters: list[ClusterSummary]) -> None:
        with self._registry_lock:
            for cluster in clusters:
                self._clusters[cluster.cluster_id] = cluster
                self._clusters.move_to_end(cluster.cluster_id)
            while len(self._clusters) > self.registry_size:
                self._clusters.popitem(last=False)

    def get_cluster(self, cluster_id: str) -> ClusterSummary | None:
        with self._registry_lock:
            cluster = self._clusters.get(cluster_id)
            if cluster is not None:
                self._clusters.move_to_end(cluster_id)
            return cluster

    # Inputs

    @staticmethod
    def filter_matches(matches: list[IndexItem], config: IndexConfig) -> list[IndexItem]:
        """Deduplicate by logical id (best score wins) and apply tool-call inclusion."""
        best: dict[str, IndexItem] = {}
        for item in matches:
            if not config.include_tool_calls and item.kind is EntityKind.TOOL_CALL:
                continue
            current = best.get(item.id)
            if current is None or item.score > current.score:
                best[item.id] = item
        return sorted(best.values(), key=lambda item: (-item.score, item.id))

    @staticmethod
    def window(recent: list[IndexItem], config: IndexConfig) -> list[IndexItem]:
        """The configured recent window, oldest first."""
        if config.recent_window_size <= 0:
            return []
        items = {item.id: item for item in recent if config.include_tool_calls or item.kind is not EntityKind.TOOL_CALL}
        ordered = sorted(items.values(), key=lambda item: (ensure_utc(item.timestamp), item.id))
        return ordered[-config.recent_window_size :]

    def _snippet(self, item: IndexItem, config: IndexConfig) -> str:
        if item.snippet and len(item.snippet) <= config.snippet_length:
            return item.snippet
        return make_snippet(item.content, config.snippet_length, config.snippet_strategy)

    # Build

    def build(
        self,
        matches: list[IndexItem],
        recent: list[IndexItem],
        config: IndexConfig,
        now: datetime | None = None,
        fallback_reason: str | None = None,
    ) -> ContextIndex:
        now = now or utc_now()
        matches = self.filter_matches(matches, config)
        window = self.window(recent, config)
        strategy = select_strategy(len(matches), config.index_strategy)
        window_ids = {item.id for item in window}
        historical = [item for item in matches if item.id not in window_ids]

        header = f"# Conversation context [{strategy.value}] {len(matches)} matches"
        if fallback_reason:
            header += f" (fallback: {fallback_reason})"
        recent_lines = [self._verbatim(item) for item in window]

        periods: list[PeriodRollup] = []
        topics: list[ClusterSummary] = []
        hints: list[str] = []
        footer: list[str] = []

        if strategy is IndexStrategy.FULL:
            blocks = [self._full_block(item) for item in historical]
        elif strategy is IndexStrategy.SNIPPET:
            blocks = [self._snippet_block(item, config, "## Relevant history") for item in historical]
        elif strategy is IndexStrategy.CLUSTERED:
            blocks = self._clustered_blocks(historical, config)
        else:
            periods, topics, footer = self._hierarchy(matches, config, now)
            hints = list(NAVIGATION_HINTS)
            blocks = []

        layout = self._fit(_Layout(header, recent_lines, footer=footer), blocks, strategy, window, config)
        text = self._render(layout, strategy, window)
        token_count = self.counter.count(text)

        if token_count > config.max_index_tokens:
            logger.warning(
                "Recent window alone exceeds the index budget",
                token_count=token_count,
                max_index_tokens=config.max_index_tokens,
                recent=len(window),
            )

        clusters = [block.cluster for block in layout.accepted if block.cluster is not None]
        self._register(clusters + topics)

        index = ContextIndex(
            strategy=strategy,
            match_count=len(matches),
            token_count=token_count,
            max_tokens=config.max_index_tokens,
            text=text,
            recent_ids=[item.id for item in window],
            entries=[block.entry for block in layout.accepted if block.entry is not None],
            clusters=clusters,
            periods=periods,
            topics=topics,
            hints=hints,
            fallback_reason=fallback_reason,
        )
        logger.info(
            "Built context index",
            strategy=strategy.value,
            match_count=index.match_count,
            historical=index.historical_count,
            token_count=token_count,
            fallback_reason=fallback_reason,
        )
        return index

    def build_recent_only(self, recent: list[IndexItem], config: IndexConfig, reason: str) -> ContextIndex:
        """Simplest representation: Full strategy over the recent window alone."""
        forced = config.model_copy(update={"index_strategy": "full"})
        return self.build([], recent, forced, fallback_reason=reason)

    # Rendering

    @staticmethod
    def _verbatim(item: IndexItem) -> str:
        return f"[{_fmt(item.timestamp)}] {item.label} ({item.id}): {item.content}"

    def _full_block(self, item: IndexItem) -> _Block:
        return _Block(
            section="",
            lines=[self._verbatim(item)],
            score=item.score,
            entry=IndexEntry(id=item.id, kind=item.kind, timestamp=item.timestamp, text=item.content, score=item.score),
        )

    def _snippet_block(self, item: IndexItem, config: IndexConfig, section: str) -> _Block:
        snippet = self._snippet(item, config)
        return _Block(
            section=section,
            lines=[f"- {item.id} | {_fmt(item.timestamp)} | {snippet}"],
            score=item.score,
            entry=IndexEntry(id=item.id, kind=item.kind, timestamp=item.timestamp, text=snippet, score=item.score),
        )

    def _summarize(self, members: list[IndexItem], config: IndexConfig, samples: bool) -> ClusterSummary:
        ranked = sorted(members, key=lambda item: (-item.score, item.id))
        keywords = top_keywords([item.content[:KEYWORD_SAMPLE_CHARS] for item in members], CLUSTER_KEYWORDS)
        timestamps = [ensure_utc(item.timestamp) for item in members]
        member_ids = sorted(item.id for item in members)
        return ClusterSummary(
            cluster_id=cluster_id_for(member_ids),
            summary=", ".join(keywords) if keywords else "(no keywords)",
            start=min(timestamps),
            end=max(timestamps),
            count=len(members),
            samples=[self._snippet(item, config) for item in ranked[:CLUSTER_SAMPLES]] if samples else [],
            score=ranked[0].score,
            member_ids=member_ids,
        )

    def _cluster(self, items: list[IndexItem], config: IndexConfig, samples: bool) -> tuple[list[ClusterSummary], list[IndexItem]]:
        embedded = [item for item in items if item.embedding]
        clusterer = LinkageClusteringService(config.clustering_threshold, config.min_cluster_size)
        groups = clusterer.group([item.id for item in embedded], [item.embedding or [] for item in embedded])

        by_id = {item.id: item for item in items}
        clustered_ids: set[str] = set()
        summaries = []
        for group in groups:
            clustered_ids.update(group)
            summaries.append(self._summarize([by_id[i] for i in group], config, samples))
        summaries.sort(key=lambda cluster: (-cluster.score, cluster.cluster_id))
        leftovers = [item for item in items if item.id not in clustered_ids]
        return summaries, leftovers

    @staticmethod
    def _cluster_lines(cluster: ClusterSummary) -> list[str]:
        lines = [
            f"- [{cluster.cluster_id}] {cluster.summary} | {_fmt(cluster.start)} to {_fmt(cluster.end)} | {cluster.count} items"
        ]
        lines.extend(f"    > {sample}" for sample in cluster.samples)
        return lines

    def _clustered_blocks(self, historical: list[IndexItem], config: IndexConfig) -> list[_Block]:
        clusters, leftovers = self._cluster(historical[:MAX_CLUSTER_INPUT], config, samples=True)
        blocks = [
            _Block(section="## Topics in history", lines=self._cluster_lines(cluster), score=cluster.score, cluster=cluster)
            for cluster in clusters
        ]
        blocks.extend(self._snippet_block(item, config, "## Other relevant history") for item in leftovers)
        return blocks

    def _hierarchy(
        self,
        matches: list[IndexItem],
        config: IndexConfig,
        now: datetime,
    ) -> tuple[list[PeriodRollup], list[ClusterSummary], list[str]]:
        bounds = period_bounds(now)
        buckets: dict[str, list[IndexItem]] = {name: [] for name in bounds}
        for item in matches:
            for name, span in bounds.items():
                if _in_bucket(item.timestamp, span):
                    buckets[name].append(item)
                    break

        periods = [
            PeriodRollup(period=name, label=PERIOD_LABELS[name], count=len(buckets[name]), start=span[0], end=span[1])
            for name, span in bounds.items()
        ]
        lines = ["## History by period"]
        lines.extend(f"- {rollup.label} ({rollup.period}): {rollup.count} matches" for rollup in periods)

        topics: list[ClusterSummary] = []
        latest = next((name for name in bounds if buckets[name]), None)
        if latest is not None:
            topics, _ = self._cluster(buckets[latest][:ROLLUP_CLUSTER_INPUT], config, samples=False)
            if topics:
                lines.append(f"## Topics: {PERIOD_LABELS[latest].lower()}")
                lines.extend(f"- [{t.cluster_id}] {t.summary} | {t.count} items" for t in topics)

        lines.append("## Navigation")
        lines.extend(f"- {hint}" for hint in NAVIGATION_HINTS)
        return periods, topics, lines

    def _render(self, layout: _Layout, strategy: IndexStrategy, window: list[IndexItem]) -> str:
        lines = [layout.header]
        if strategy is IndexStrategy.FULL:
            # Historical matches interleaved with the recent window by time
            timed: list[tuple[datetime, str, str]] = [
                (ensure_utc(block.entry.timestamp), block.entry.id, block.lines[0])
                for block in layout.accepted
                if block.entry is not None
            ]
            timed.extend((ensure_utc(item.timestamp), item.id, line) for item, line in zip(window, layout.recent_lines, strict=True))
            timed.sort(key=lambda row: (row[0], row[1]))
            lines.extend(row[2] for row in timed)
            return "\n".join(lines)

        lines.extend(layout.footer)
        section = None
        for block in layout.accepted:
            if block.section != section:
                section = block.section
                lines.append(section)
            lines.extend(block.lines)
        if layout.recent_lines:
            lines.append("## Recent conversation")
            lines.extend(layout.recent_lines)
        return "\n".join(lines)

    def _fit(
        self,
        layout: _Layout,
        blocks: list[_Block],
        strategy: IndexStrategy,
        window: list[IndexItem],
        config: IndexConfig,
    ) -> _Layout:
        budget = config.max_index_tokens
        used = self.counter.count(self._render(layout, strategy, window))
        if used > budget and layout.footer:
            # Roll-up detail is optional; the recent window is not
            layout.footer = []
            used = self.counter.count(self._render(layout, strategy, window))

        section = None
        for block in blocks:
            cost = sum(self.counter.count(line) + 1 for line in block.lines)
            if block.section and block.section != section:
                cost += self.counter.count(block.section) + 1
            if used + cost > budget:
                break
            layout.accepted.append(block)
            used += cost
            section = block.section

        while layout.accepted and self.counter.count(self._render(layout, strategy, window)) > budget:
            layout.accepted.pop()
        return layout
