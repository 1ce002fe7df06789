"""Query engine collaborator.

The gateway hands the engine a content hash, the caller's query text and the
dataset's tags, and gets back an AnalysisResult. `query_id`/`dataset_id` are
filled in by the gateway.

`KeywordQueryEngine` is the default: a line-oriented keyword matcher over
the dataset content with canned follow-up recommendations.
"""

from __future__ import annotations

import re
from typing import List, Protocol, Sequence

from .content_store import ContentStore
from .models import AnalysisResult

_TOKEN_RE = re.compile(r"[A-Za-z0-9_\-\.]+")

MAX_MATCHES = 20
MAX_MATCH_CHARS = 200


class QueryEngine(Protocol):
    def analyze(self, content_hash: str, query_text: str, dataset_tags: Sequence[str]) -> AnalysisResult:
        ...


def tokenize(text: str) -> List[str]:
    seen: List[str] = []
    for tok in _TOKEN_RE.findall(text.lower()):
        if tok not in seen:
            seen.append(tok)
    return seen


def sniff_format(data: bytes) -> str:
    head = data.lstrip()[:1]
    if head in (b"{", b"["):
        return "json"
    first_line = data.split(b"\n", 1)[0]
    if first_line.count(b",") >= 1:
        return "csv"
    return "text"


def recommendations_for(match_count: int, data_format: str = "", matched_tags: Sequence[str] = ()) -> List[str]:
    recs: List[str] = []
    if match_count == 0:
        recs.append("Try broadening your search terms or reducing quality score requirements")
        recs.append("Consider exploring related tags or different data formats")
    elif match_count < 5:
        recs.append("Limited results found. You might also be interested in related datasets")
        recs.append("Consider setting up alerts for new datasets matching your criteria")
    else:
        recs.append("Multiple relevant datasets found. Consider filtering by recency or quality score")
        recs.append("Bundle multiple complementary datasets for comprehensive analysis")

    if data_format:
        recs.append(f"Data in {data_format} format is available for immediate use")
    for tag in matched_tags:
        recs.append(f"Other datasets tagged '{tag}' may complement this one")
    return recs


class KeywordQueryEngine:
    """Case-insensitive keyword search over dataset lines."""

    def __init__(self, content_store: ContentStore):
        self.content_store = content_store

    def analyze(self, content_hash: str, query_text: str, dataset_tags: Sequence[str]) -> AnalysisResult:
        data = self.content_store.fetch(content_hash)
        text = data.decode("utf-8", errors="replace")
        terms = tokenize(query_text)
        tags_lower = {t.lower(): t for t in dataset_tags}

        matches: List[str] = []
        hit_terms = set()
        for line in text.splitlines():
            lowered = line.lower()
            hits = [t for t in terms if t in lowered]
            if not hits:
                continue
            hit_terms.update(hits)
            if len(matches) < MAX_MATCHES:
                matches.append(line.strip()[:MAX_MATCH_CHARS])

        matched_tags = [tags_lower[t] for t in terms if t in tags_lower]
        hit_terms.update(t for t in terms if t in tags_lower)
        relevance = round(len(hit_terms) / len(terms), 4) if terms else 0.0

        summary = (
            f"{len(matches)} matching line(s) for {len(terms)} term(s); "
            f"{len(hit_terms)}/{len(terms)} term(s) found"
        )
        return AnalysisResult(
            query_id="",
            dataset_id="",
            matches=matches,
            relevance=relevance,
            summary=summary,
            recommendations=recommendations_for(len(matches), sniff_format(data), matched_tags),
        )
