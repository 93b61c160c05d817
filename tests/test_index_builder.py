"""Tests for strategy selection, budgeting and rendering of the context index."""

import math
import random
from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given, settings, strategies as st

from context_palace.core.config import IndexConfig
from context_palace.domain.models import EntityKind, IndexItem, IndexStrategy
from context_palace.services.clustering import LinkageClusteringService, cluster_id_for
from context_palace.services.index_builder import IndexBuilder, period_bounds, select_strategy

NOW = datetime(2026, 10, 19, 15, 0, tzinfo=UTC)


def item(
    item_id: str,
    content: str = "",
    score: float = 0.5,
    age: timedelta = timedelta(hours=1),
    embedding: list[float] | None = None,
    kind: EntityKind = EntityKind.MESSAGE,
) -> IndexItem:
    return IndexItem(
        id=item_id,
        kind=kind,
        timestamp=NOW - age,
        content=content or f"content of {item_id}",
        score=score,
        embedding=embedding,
        role="user" if kind is EntityKind.MESSAGE else None,
        tool_name="search" if kind is EntityKind.TOOL_CALL else None,
    )


def grouped_items(groups: int, per_group: int, dimensions: int = 8) -> list[IndexItem]:
    """Items whose embeddings sit in ``groups`` tight, mutually orthogonal bundles."""
    items = []
    for g in range(groups):
        for j in range(per_group):
            vector = [0.0] * dimensions
            vector[g] = 1.0
            vector[(g + groups) % dimensions] = 0.01 * (j % 10)
            items.append(
                item(
                    f"g{g}-{j:04d}",
                    content=f"topic{g} discussion number {j}",
                    score=0.9 - g * 0.1 - j * 1e-5,
                    age=timedelta(minutes=10 + j),
                    embedding=vector,
                )
            )
    return items


def recent_items(count: int = 3) -> list[IndexItem]:
    return [item(f"r{i}", content=f"recent {i}", score=0.0, age=timedelta(seconds=count - i)) for i in range(count)]


def assert_recent_rendered(text: str, recent: list[IndexItem]) -> None:
    for entry in recent:
        assert f"({entry.id}): {entry.content}" in text


class TestStrategySelection:
    @pytest.mark.parametrize(
        ("match_count", "expected"),
        [
            (0, IndexStrategy.FULL),
            (50, IndexStrategy.FULL),
            (51, IndexStrategy.SNIPPET),
            (500, IndexStrategy.SNIPPET),
            (501, IndexStrategy.CLUSTERED),
            (5000, IndexStrategy.CLUSTERED),
            (5001, IndexStrategy.HIERARCHICAL),
        ],
    )
    def test_breakpoints(self, match_count: int, expected: IndexStrategy) -> None:
        assert select_strategy(match_count) is expected

    def test_override_wins(self) -> None:
        assert select_strategy(3, "hierarchical") is IndexStrategy.HIERARCHICAL
        assert select_strategy(9000, "full") is IndexStrategy.FULL

    def test_build_uses_deduplicated_count(self, builder: IndexBuilder) -> None:
        matches = [item(f"m{i}") for i in range(51)]
        # Duplicates of one id count once
        matches += [item("m0", score=0.9), item("m0", score=0.1)]

        index = builder.build(matches, [], IndexConfig(), now=NOW)

        assert index.match_count == 51
        assert index.strategy is IndexStrategy.SNIPPET


class TestFullStrategy:
    def test_recent_only_matches_leave_no_historical_entries(self, builder: IndexBuilder) -> None:
        recent = recent_items(3)

        index = builder.build(recent, recent, IndexConfig(), now=NOW)

        assert index.strategy is IndexStrategy.FULL
        assert index.match_count == 3
        assert index.entries == []
        assert index.recent_ids == ["r0", "r1", "r2"]
        assert_recent_rendered(index.text, recent)

    def test_full_entries_are_verbatim_and_time_ordered(self, builder: IndexBuilder) -> None:
        old = item("old", content="the original design notes", score=0.4, age=timedelta(days=3))
        older = item("older", content="even earlier notes", score=0.9, age=timedelta(days=9))
        recent = recent_items(2)

        index = builder.build([old, older], recent, IndexConfig(), now=NOW)

        assert {entry.id for entry in index.entries} == {"old", "older"}
        text = index.text
        assert text.index("even earlier notes") < text.index("the original design notes") < text.index("recent 0")

    def test_tool_calls_excluded_when_configured(self, builder: IndexBuilder) -> None:
        matches = [item("m1"), item("t1", kind=EntityKind.TOOL_CALL)]
        recent = [item("t2", kind=EntityKind.TOOL_CALL, age=timedelta(seconds=1)), item("m2", age=timedelta(seconds=2))]

        index = builder.build(matches, recent, IndexConfig(include_tool_calls=False), now=NOW)

        assert index.match_count == 1
        assert index.recent_ids == ["m2"]
        assert "t1" not in index.text and "t2" not in index.text


class TestBudget:
    def test_recent_window_kept_when_it_alone_exceeds_budget(self, builder: IndexBuilder) -> None:
        recent = [item(f"r{i}", content="x" * 400, age=timedelta(seconds=10 - i)) for i in range(5)]
        matches = [item(f"m{i}", content="y" * 400) for i in range(10)]

        index = builder.build(matches, recent, IndexConfig(max_index_tokens=64), now=NOW)

        assert index.token_count > 64
        assert index.entries == []
        assert_recent_rendered(index.text, recent)

    def test_historical_entries_are_a_relevance_prefix(self, builder: IndexBuilder) -> None:
        rng = random.Random(7)
        matches = [item(f"m{i:03d}", content="word " * rng.randint(5, 60), score=rng.random()) for i in range(120)]

        index = builder.build(matches, recent_items(2), IndexConfig(max_index_tokens=600), now=NOW)

        ranked = [m.id for m in sorted(matches, key=lambda m: (-m.score, m.id))]
        assert index.strategy is IndexStrategy.SNIPPET
        assert 0 < len(index.entries) < 120
        assert [entry.id for entry in index.entries] == ranked[: len(index.entries)]
        assert index.token_count <= 600

    @given(
        match_count=st.integers(min_value=0, max_value=120),
        lengths=st.lists(st.integers(min_value=1, max_value=2000), min_size=1, max_size=8),
        budget=st.integers(min_value=150, max_value=1500),
        strategy=st.sampled_from(["auto", "full", "snippet", "clustered", "hierarchical"]),
    )
    @settings(max_examples=60, deadline=None)
    def test_budget_holds_whenever_recent_window_fits(
        self, match_count: int, lengths: list[int], budget: int, strategy: str
    ) -> None:
        """Token count never exceeds the budget once the recent window fits in it."""
        builder = IndexBuilder()
        matches = [
            item(f"m{i:03d}", content="lorem ipsum " * lengths[i % len(lengths)], score=(i * 37 % 101) / 101)
            for i in range(match_count)
        ]
        recent = recent_items(2)

        index = builder.build(matches, recent, IndexConfig(max_index_tokens=budget, index_strategy=strategy), now=NOW)

        assert index.token_count <= budget
        assert index.token_count == builder.counter.count(index.text)
        assert_recent_rendered(index.text, recent)


class TestClusteredStrategy:
    def test_groups_become_retrievable_clusters(self, builder: IndexBuilder) -> None:
        matches = grouped_items(groups=3, per_group=200)

        index = builder.build(matches, [], IndexConfig(), now=NOW)

        assert index.strategy is IndexStrategy.CLUSTERED
        assert len(index.clusters) == 3
        assert [cluster.count for cluster in index.clusters] == [200, 200, 200]
        for cluster in index.clusters:
            assert cluster.cluster_id in index.text
            registered = builder.get_cluster(cluster.cluster_id)
            assert registered is not None
            assert registered.member_ids == sorted(registered.member_ids)
            assert cluster.cluster_id == cluster_id_for(registered.member_ids)
            assert len(cluster.samples) == 3

    def test_clustering_is_deterministic(self) -> None:
        items = grouped_items(groups=3, per_group=12)
        service = LinkageClusteringService(threshold=0.8, min_cluster_size=3)
        shuffled = items[:]
        random.Random(3).shuffle(shuffled)

        first = service.group([i.id for i in items], [i.embedding for i in items])
        second = service.group([i.id for i in shuffled], [i.embedding for i in shuffled])

        assert first == second
        assert len(first) == 3
        assert all(group == sorted(group) for group in first)

    def test_small_groups_are_discarded(self) -> None:
        items = grouped_items(groups=2, per_group=2)
        service = LinkageClusteringService(threshold=0.8, min_cluster_size=3)
        assert service.group([i.id for i in items], [i.embedding for i in items]) == []

    def test_groups_do_not_chain_through_a_middle_member(self) -> None:
        angles = {"a": 0.0, "b": math.pi / 6, "c": math.pi / 3}
        service = LinkageClusteringService(threshold=0.8, min_cluster_size=2)

        groups = service.group(list(angles), [[math.cos(t), math.sin(t)] for t in angles.values()])

        assert len(groups) == 1
        assert len(groups[0]) == 2
        assert not {"a", "c"} <= set(groups[0])

    def test_cluster_id_ignores_member_order(self) -> None:
        assert cluster_id_for(["b", "a", "c"]) == cluster_id_for(["c", "b", "a"])
        assert cluster_id_for(["a"]) != cluster_id_for(["b"])


class TestHierarchicalStrategy:
    def test_period_bounds_are_disjoint(self) -> None:
        bounds = period_bounds(NOW)
        midnight = NOW.replace(hour=0)

        assert bounds["today"] == (midnight, None)
        assert bounds["this_week"] == (NOW - timedelta(days=7), midnight)
        assert bounds["this_month"] == (NOW - timedelta(days=30), NOW - timedelta(days=7))
        assert bounds["older"] == (None, NOW - timedelta(days=30))

    def test_rollup_counts_every_match_once(self, builder: IndexBuilder) -> None:
        ages = [timedelta(hours=1), timedelta(days=3), timedelta(days=12), timedelta(days=90)]
        matches = [item(f"m{i:05d}", age=ages[i % 4] + timedelta(seconds=i)) for i in range(5001)]
        recent = recent_items(3)

        index = builder.build(matches, recent, IndexConfig(), now=NOW)

        assert index.strategy is IndexStrategy.HIERARCHICAL
        counts = {rollup.period: rollup.count for rollup in index.periods}
        assert sum(counts.values()) == 5001
        assert counts["older"] == 1250
        assert index.hints
        assert "## Navigation" in index.text
        assert index.entries == [] and index.clusters == []
        assert_recent_rendered(index.text, recent)

    def test_topics_come_from_latest_bucket(self, builder: IndexBuilder) -> None:
        matches = grouped_items(groups=2, per_group=20)

        index = builder.build(matches, [], IndexConfig(index_strategy="hierarchical"), now=NOW)

        assert len(index.topics) == 2
        for topic in index.topics:
            assert builder.get_cluster(topic.cluster_id) is not None
            assert topic.cluster_id in index.text


class TestFallback:
    def test_recent_only_index(self, builder: IndexBuilder) -> None:
        recent = recent_items(2)

        index = builder.build_recent_only(recent, IndexConfig(index_strategy="clustered"), "search_timeout")

        assert index.strategy is IndexStrategy.FULL
        assert index.fallback_reason == "search_timeout"
        assert "(fallback: search_timeout)" in index.text
        assert_recent_rendered(index.text, recent)

    def test_empty_recent_window_size(self, builder: IndexBuilder) -> None:
        index = builder.build([item("m1")], recent_items(3), IndexConfig(recent_window_size=0), now=NOW)

        assert index.recent_ids == []
        assert [entry.id for entry in index.entries] == ["m1"]
