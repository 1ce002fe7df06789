from conftest import ALICE, BOB

from dataset_gateway.models import QueryRecord
from dataset_gateway.usage import UsageLedger


def _query(requester, dataset_id, tags=(), duration_ms=10, n=0):
    return QueryRecord(
        query_id=f"q_{n}",
        dataset_id=dataset_id,
        query_text="berlin",
        tags=tuple(tags),
        requester=requester,
        timestamp_ms=1_000 + n,
        duration_ms=duration_ms,
    )


def test_empty_stats():
    stats = UsageLedger().stats(ALICE)
    assert stats.total_queries == 0
    assert stats.total_downloads == 0
    assert stats.datasets_accessed == []
    assert stats.average_query_time_ms == 0.0
    assert stats.preferred_tags == []


def test_stats_aggregate_per_requester():
    usage = UsageLedger()
    usage.record_query(_query(ALICE, "ds-a", ("climate", "weather"), duration_ms=10, n=1))
    usage.record_query(_query(ALICE, "ds-b", ("climate",), duration_ms=20, n=2))
    usage.record_query(_query(BOB, "ds-c", ("finance",), n=3))
    usage.record_download(ALICE, "ds-z")
    usage.record_download(ALICE, "ds-a")
    usage.record_download(ALICE, "ds-a")

    stats = usage.stats(ALICE)
    assert stats.total_queries == 2
    assert stats.total_downloads == 3
    assert stats.datasets_accessed == ["ds-a", "ds-b", "ds-z"]
    assert stats.average_query_time_ms == 15.0
    assert stats.preferred_tags == ["climate", "weather"]
    assert "finance" not in stats.preferred_tags


def test_query_history_is_bounded():
    usage = UsageLedger(max_queries=3)
    for i in range(5):
        usage.record_query(_query(ALICE, f"ds-{i}", n=i))
    assert len(usage) == 3
    assert [q.dataset_id for q in usage.queries_for(ALICE)] == ["ds-2", "ds-3", "ds-4"]


def test_top_tags_limit():
    usage = UsageLedger()
    usage.record_query(_query(ALICE, "ds-a", ("a", "b", "c"), n=1))
    usage.record_query(_query(ALICE, "ds-a", ("c",), n=2))
    assert usage.stats(ALICE, top_tags=1).preferred_tags == ["c"]
