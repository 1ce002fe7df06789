"""
Token store: the single owner of AccessGrant records.

Two backends share one contract:

- InMemoryTokenStore: dict guarded by striped locks. Operations on one access
  key only take that key's stripe, so downloads on different grants never
  contend. The structural map lock is held just for O(1) inserts/deletes and
  key snapshots.
- SqliteTokenStore: one row per grant. The quota check-and-increment is a
  single conditional UPDATE inside an IMMEDIATE transaction.

Quota invariant (enforced here, not by callers):
    increment_usage() raises DSG_E_QUOTA_EXCEEDED rather than ever writing
    downloads_used > max_downloads.
"""

from __future__ import annotations

import abc
import hashlib
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import (
    DSG_E_NOT_FOUND,
    DSG_E_QUOTA_EXCEEDED,
    DSG_E_UPSTREAM_UNAVAILABLE,
    GatewayError,
    gateway_error,
)
from .lockdown import DbCircuitBreaker, StorageLockdownError
from .models import AccessGrant

logger = logging.getLogger("dataset_gateway.token_store")


class TokenStore(abc.ABC):
    """Contract shared by all grant storage backends."""

    @abc.abstractmethod
    def put(self, grant: AccessGrant) -> None:
        ...

    @abc.abstractmethod
    def get(self, access_key: str) -> Optional[AccessGrant]:
        """Return a copy of the grant, or None if absent."""

    @abc.abstractmethod
    def increment_usage(self, access_key: str) -> int:
        """Atomically consume one download. Returns the new downloads_used."""

    @abc.abstractmethod
    def delete(self, access_key: str) -> bool:
        """Remove a grant. Returns True if it existed. Idempotent."""

    @abc.abstractmethod
    def scan(self) -> Iterator[AccessGrant]:
        """Iterate over a snapshot of the stored grants."""

    @abc.abstractmethod
    def __len__(self) -> int:
        ...

    def __contains__(self, access_key: object) -> bool:
        return isinstance(access_key, str) and self.get(access_key) is not None

    def close(self) -> None:
        pass


def _quota_exceeded(access_key: str, used: int, limit: int) -> GatewayError:
    return gateway_error(
        DSG_E_QUOTA_EXCEEDED,
        f"Download limit exceeded ({used}/{limit})",
        downloads_used=used,
        max_downloads=limit,
    )


def _not_found() -> GatewayError:
    return gateway_error(DSG_E_NOT_FOUND, "Unknown access key")


class InMemoryTokenStore(TokenStore):
    """Process-local store with per-key striped locking."""

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be positive")
        self._grants: Dict[str, AccessGrant] = {}
        self._map_lock = threading.Lock()
        self._stripes: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def _stripe(self, access_key: str) -> threading.Lock:
        digest = hashlib.blake2b(access_key.encode("utf-8"), digest_size=8).digest()
        return self._stripes[int.from_bytes(digest, "big") % len(self._stripes)]

    def put(self, grant: AccessGrant) -> None:
        if grant.downloads_used > grant.max_downloads:
            raise _quota_exceeded(grant.access_key, grant.downloads_used, grant.max_downloads)
        stored = replace(grant)
        with self._stripe(grant.access_key):
            with self._map_lock:
                self._grants[grant.access_key] = stored

    def get(self, access_key: str) -> Optional[AccessGrant]:
        with self._stripe(access_key):
            grant = self._grants.get(access_key)
            return replace(grant) if grant is not None else None

    def increment_usage(self, access_key: str) -> int:
        with self._stripe(access_key):
            grant = self._grants.get(access_key)
            if grant is None:
                raise _not_found()
            if grant.downloads_used >= grant.max_downloads:
                raise _quota_exceeded(access_key, grant.downloads_used, grant.max_downloads)
            grant.downloads_used += 1
            return grant.downloads_used

    def delete(self, access_key: str) -> bool:
        with self._stripe(access_key):
            with self._map_lock:
                return self._grants.pop(access_key, None) is not None

    def scan(self) -> Iterator[AccessGrant]:
        with self._map_lock:
            keys = list(self._grants.keys())
        for key in keys:
            grant = self.get(key)
            if grant is not None:
                yield grant

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._grants)


class SqliteTokenStore(TokenStore):
    """
    SQLite-backed grant storage.

    Storage Properties:
    - WAL mode so readers do not block the writer
    - one short-lived connection per operation
    - circuit breaker: repeated failures or slow ops put the store in lockdown
    """

    def __init__(self, db_path: str = "dataset_gateway.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = str(db_path)
        self.circuit = circuit or DbCircuitBreaker()
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _db(self, op_name: str, isolation_level: Optional[str] = None):
        """Connection wrapper that maps storage trouble to DSG_E_UPSTREAM_UNAVAILABLE."""
        try:
            self.circuit.raise_if_lockdown()
        except StorageLockdownError as e:
            raise gateway_error(DSG_E_UPSTREAM_UNAVAILABLE, "Token store in lockdown", op=op_name) from e

        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=isolation_level,
            )
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.Error as e:
            self.circuit.record_failure(e)
            raise gateway_error(DSG_E_UPSTREAM_UNAVAILABLE, f"Token store error during {op_name}") from e
        self.circuit.record_success((time.monotonic() - start) * 1000.0)

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS grants (
                access_key TEXT PRIMARY KEY,
                dataset_id TEXT NOT NULL,
                requester TEXT NOT NULL,
                issued_at_ms INTEGER NOT NULL,
                expires_at_ms INTEGER NOT NULL,
                max_downloads INTEGER NOT NULL,
                downloads_used INTEGER NOT NULL DEFAULT 0,
                download_url TEXT NOT NULL DEFAULT '',
                CHECK (downloads_used >= 0 AND downloads_used <= max_downloads)
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_grants_expiry ON grants (expires_at_ms)")

    @staticmethod
    def _row_to_grant(row) -> AccessGrant:
        return AccessGrant(
            access_key=row[0],
            dataset_id=row[1],
            requester=row[2],
            issued_at_ms=int(row[3]),
            expires_at_ms=int(row[4]),
            max_downloads=int(row[5]),
            downloads_used=int(row[6]),
            download_url=row[7] or "",
        )

    _COLUMNS = ("access_key, dataset_id, requester, issued_at_ms, expires_at_ms, "
                "max_downloads, downloads_used, download_url")

    def put(self, grant: AccessGrant) -> None:
        if grant.downloads_used > grant.max_downloads:
            raise _quota_exceeded(grant.access_key, grant.downloads_used, grant.max_downloads)
        with self._db("put") as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO grants ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    grant.access_key,
                    grant.dataset_id,
                    grant.requester,
                    grant.issued_at_ms,
                    grant.expires_at_ms,
                    grant.max_downloads,
                    grant.downloads_used,
                    grant.download_url,
                ),
            )

    def get(self, access_key: str) -> Optional[AccessGrant]:
        with self._db("get") as conn:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM grants WHERE access_key = ?", (access_key,)
            ).fetchone()
        return self._row_to_grant(row) if row else None

    def increment_usage(self, access_key: str) -> int:
        with self._db("increment_usage", isolation_level="IMMEDIATE") as conn:
            cur = conn.execute(
                """
                UPDATE grants SET downloads_used = downloads_used + 1
                WHERE access_key = ? AND downloads_used < max_downloads
                """,
                (access_key,),
            )
            row = conn.execute(
                "SELECT downloads_used, max_downloads FROM grants WHERE access_key = ?",
                (access_key,),
            ).fetchone()
            if cur.rowcount == 1:
                return int(row[0])
        if row is None:
            raise _not_found()
        raise _quota_exceeded(access_key, int(row[0]), int(row[1]))

    def delete(self, access_key: str) -> bool:
        with self._db("delete") as conn:
            cur = conn.execute("DELETE FROM grants WHERE access_key = ?", (access_key,))
            return cur.rowcount > 0

    def scan(self) -> Iterator[AccessGrant]:
        with self._db("scan") as conn:
            rows = conn.execute(f"SELECT {self._COLUMNS} FROM grants").fetchall()
        for row in rows:
            yield self._row_to_grant(row)

    def __len__(self) -> int:
        with self._db("count") as conn:
            return int(conn.execute("SELECT COUNT(*) FROM grants").fetchone()[0])


def build_token_store(backend: str = "memory", db_path: str = "dataset_gateway.db", stripes: int = 64) -> TokenStore:
    """Build the configured token store backend."""
    if backend == "sqlite":
        logger.info("using sqlite token store at %s", db_path)
        return SqliteTokenStore(db_path=db_path)
    return InMemoryTokenStore(stripes=stripes)
