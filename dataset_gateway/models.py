"""
Dataset Gateway data model.

Access grants are server-held capability records: the access key is an
opaque random lookup key, never a self-describing token. Everything a holder
is allowed to do lives in the record the TokenStore keeps for that key.

Timestamps are integer milliseconds since the Unix epoch throughout.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AccessGrant:
    """
    One capability to query/download one dataset.

    INVARIANTS:
    - downloads_used <= max_downloads (enforced by the TokenStore)
    - a grant is invalid once expired (now > expires_at_ms) or exhausted
      (downloads_used == max_downloads), whichever comes first
    """
    access_key: str
    dataset_id: str
    requester: str
    issued_at_ms: int
    expires_at_ms: int
    max_downloads: int = 5
    downloads_used: int = 0
    download_url: str = ""

    def is_expired(self, now_ms: Optional[int] = None) -> bool:
        now = _now_ms() if now_ms is None else now_ms
        return now > self.expires_at_ms

    def is_exhausted(self) -> bool:
        return self.downloads_used >= self.max_downloads

    @property
    def remaining_downloads(self) -> int:
        return max(0, self.max_downloads - self.downloads_used)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_key": self.access_key,
            "dataset_id": self.dataset_id,
            "requester": self.requester,
            "issued_at_ms": self.issued_at_ms,
            "expires_at_ms": self.expires_at_ms,
            "max_downloads": self.max_downloads,
            "downloads_used": self.downloads_used,
            "download_url": self.download_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessGrant":
        return cls(
            access_key=data["access_key"],
            dataset_id=data["dataset_id"],
            requester=data["requester"],
            issued_at_ms=int(data["issued_at_ms"]),
            expires_at_ms=int(data["expires_at_ms"]),
            max_downloads=int(data.get("max_downloads", 5)),
            downloads_used=int(data.get("downloads_used", 0)),
            download_url=data.get("download_url", ""),
        )


@dataclass(frozen=True)
class QueryRecord:
    """An immutable record of one query call, retained for statistics/audit."""
    query_id: str
    dataset_id: str
    query_text: str
    tags: Tuple[str, ...]
    requester: str
    timestamp_ms: int
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_id": self.query_id,
            "dataset_id": self.dataset_id,
            "query_text": self.query_text,
            "tags": list(self.tags),
            "requester": self.requester,
            "timestamp_ms": self.timestamp_ms,
            "duration_ms": self.duration_ms,
        }


class ProvenanceAction(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    VERIFIED = "verified"
    ACCESSED = "accessed"


@dataclass(frozen=True)
class ProvenanceLink:
    hash: str
    timestamp_ms: int
    action: ProvenanceAction
    actor: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "timestamp_ms": self.timestamp_ms,
            "action": self.action.value,
            "actor": self.actor,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvenanceLink":
        return cls(
            hash=str(data["hash"]),
            timestamp_ms=int(data["timestamp_ms"]),
            action=ProvenanceAction(data["action"]),
            actor=str(data.get("actor", "")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ProvenanceChain:
    """
    Ordered audit trail for one dataset.

    `verified` is True only if the chain was built without error and holds a
    `created` link. A False value means "do not trust this chain", never
    "the dataset is unverified".
    """
    dataset_id: str
    chain: List[ProvenanceLink] = field(default_factory=list)
    verified: bool = False

    @classmethod
    def untrusted(cls, dataset_id: str) -> "ProvenanceChain":
        return cls(dataset_id=dataset_id, chain=[], verified=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "chain": [link.to_dict() for link in self.chain],
            "verified": self.verified,
        }


@dataclass(frozen=True)
class DatasetRecord:
    """Dataset metadata as reported by the ledger."""
    dataset_id: str
    owner: str
    price_wei: int
    verified: bool
    content_hash: str = ""
    name: str = ""
    tags: Tuple[str, ...] = ()
    created_at_ms: int = 0
    data_format: str = ""
    quality_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "owner": self.owner,
            "price_wei": str(self.price_wei),
            "verified": self.verified,
            "content_hash": self.content_hash,
            "name": self.name,
            "tags": list(self.tags),
            "created_at_ms": self.created_at_ms,
            "format": self.data_format,
            "quality_score": self.quality_score,
        }

    @classmethod
    def from_dict(cls, dataset_id: str, data: Dict[str, Any]) -> "DatasetRecord":
        return cls(
            dataset_id=dataset_id,
            owner=str(data.get("owner", "")),
            price_wei=int(data.get("price_wei", data.get("priceWei", 0)) or 0),
            verified=bool(data.get("verified", False)),
            content_hash=str(data.get("content_hash", data.get("contentHash", "")) or ""),
            name=str(data.get("name", "")),
            tags=tuple(str(t) for t in (data.get("tags") or ())),
            created_at_ms=int(data.get("created_at_ms", 0) or 0),
            data_format=str(data.get("format", "") or ""),
            quality_score=float(data.get("quality_score", data.get("qualityScore", 0)) or 0),
        )


@dataclass
class SearchResult:
    """Catalog search response: matching verified datasets, best match first."""
    query_id: str
    datasets: List[DatasetRecord] = field(default_factory=list)
    query_time_ms: int = 0
    recommendations: List[str] = field(default_factory=list)

    @property
    def total_results(self) -> int:
        return len(self.datasets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_id": self.query_id,
            "datasets": [d.to_dict() for d in self.datasets],
            "total_results": self.total_results,
            "query_time_ms": self.query_time_ms,
            "recommendations": list(self.recommendations),
        }


@dataclass
class AnalysisResult:
    query_id: str
    dataset_id: str
    matches: List[str] = field(default_factory=list)
    relevance: float = 0.0
    summary: str = ""
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_id": self.query_id,
            "dataset_id": self.dataset_id,
            "matches": list(self.matches),
            "relevance": self.relevance,
            "summary": self.summary,
            "recommendations": list(self.recommendations),
        }


@dataclass
class DownloadResult:
    payload: bytes
    metadata: Dict[str, Any]
    provenance: ProvenanceChain
    downloads_used: int = 0


@dataclass(frozen=True)
class IntegrityReport:
    valid: bool
    actual_hash: str
    provenance_verified: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "actual_hash": self.actual_hash,
            "provenance_verified": self.provenance_verified,
        }


@dataclass
class UsageStats:
    requester: str
    total_queries: int = 0
    total_downloads: int = 0
    datasets_accessed: List[str] = field(default_factory=list)
    average_query_time_ms: float = 0.0
    preferred_tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requester": self.requester,
            "total_queries": self.total_queries,
            "total_downloads": self.total_downloads,
            "datasets_accessed": list(self.datasets_accessed),
            "average_query_time_ms": self.average_query_time_ms,
            "preferred_tags": list(self.preferred_tags),
        }
