"""Per-requester usage accounting.

Query records are kept in a bounded deque (oldest dropped first); download
counts are plain counters. Both are process-local and reset on restart.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from typing import Deque, Dict, List

from .models import QueryRecord, UsageStats


class UsageLedger:
    """Thread-safe store of QueryRecords and download counts."""

    def __init__(self, max_queries: int = 10_000):
        self._lock = threading.Lock()
        self._queries: Deque[QueryRecord] = deque(maxlen=max(1, int(max_queries)))
        self._downloads: Dict[str, Counter] = {}

    def record_query(self, record: QueryRecord) -> None:
        with self._lock:
            self._queries.append(record)

    def record_download(self, requester: str, dataset_id: str) -> None:
        with self._lock:
            self._downloads.setdefault(requester, Counter())[dataset_id] += 1

    def queries_for(self, requester: str) -> List[QueryRecord]:
        with self._lock:
            return [q for q in self._queries if q.requester == requester]

    def __len__(self) -> int:
        with self._lock:
            return len(self._queries)

    def stats(self, requester: str, top_tags: int = 5) -> UsageStats:
        with self._lock:
            queries = [q for q in self._queries if q.requester == requester]
            downloads = Counter(self._downloads.get(requester, Counter()))

        datasets: List[str] = []
        # catalog searches carry no dataset_id
        for ds in [q.dataset_id for q in queries] + sorted(downloads):
            if ds and ds not in datasets:
                datasets.append(ds)

        tag_counts: Counter = Counter()
        for q in queries:
            tag_counts.update(q.tags)
        # most_common() keeps first-seen order for ties
        preferred = [tag for tag, _ in tag_counts.most_common(top_tags)]

        avg = 0.0
        if queries:
            avg = round(sum(q.duration_ms for q in queries) / len(queries), 3)

        return UsageStats(
            requester=requester,
            total_queries=len(queries),
            total_downloads=sum(downloads.values()),
            datasets_accessed=datasets,
            average_query_time_ms=avg,
            preferred_tags=preferred,
        )
