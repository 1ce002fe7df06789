"""Content-addressed dataset storage.

Datasets are addressed by the hex SHA-256 of their bytes. The gateway only
ever calls `fetch(content_hash)` and `hash(data)`; uploading is out of band.

Env:
- DSG_CONTENT_MODE: memory|http (default memory)
- DSG_CONTENT_URL: base URL, required if DSG_CONTENT_MODE=http
- DSG_CONTENT_TIMEOUT_SECONDS: optional, float (default 10)
"""

from __future__ import annotations

import os
import threading
import urllib.parse
from dataclasses import dataclass
from typing import Dict, Protocol

from .crypto import sha256_hex
from .errors import DSG_E_NOT_FOUND, gateway_error
from .upstream import http_request


class ContentStore(Protocol):
    def fetch(self, content_hash: str) -> bytes:
        ...

    def hash(self, data: bytes) -> str:
        ...


class InMemoryContentStore:
    """Process-local content store keyed by SHA-256."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: Dict[str, bytes] = {}

    def put(self, data: bytes) -> str:
        content_hash = self.hash(data)
        with self._lock:
            self._blobs[content_hash] = bytes(data)
        return content_hash

    def fetch(self, content_hash: str) -> bytes:
        with self._lock:
            data = self._blobs.get(content_hash)
        if data is None:
            raise gateway_error(DSG_E_NOT_FOUND, "Dataset content not found", content_hash=content_hash)
        return data

    def hash(self, data: bytes) -> str:
        return sha256_hex(data)


@dataclass
class HttpContentStore:
    """Reads content from `GET {base_url}/{content_hash}`."""

    base_url: str
    timeout_seconds: float = 10.0

    def fetch(self, content_hash: str) -> bytes:
        url = f"{self.base_url.rstrip('/')}/{urllib.parse.quote(content_hash, safe='')}"
        return http_request("content", url, timeout_seconds=self.timeout_seconds)

    def hash(self, data: bytes) -> str:
        return sha256_hex(data)


def build_content_store_from_env() -> ContentStore:
    mode = os.getenv("DSG_CONTENT_MODE", "memory").strip().lower() or "memory"
    if mode == "http":
        url = os.getenv("DSG_CONTENT_URL", "").strip()
        if not url:
            raise RuntimeError("DSG_CONTENT_URL must be set when DSG_CONTENT_MODE=http")
        timeout_s = float(os.getenv("DSG_CONTENT_TIMEOUT_SECONDS", "10") or "10")
        return HttpContentStore(base_url=url, timeout_seconds=timeout_s)
    return InMemoryContentStore()
