"""AccessGateway: payment proof in, time-boxed download quota out.

Request flow
------------
request_access:  validate inputs -> ledger lookup + PaymentGate (timed)
                 -> mint grant -> TokenStore.put
query:           load grant -> checks -> query engine -> UsageLedger
search_datasets: ledger catalog -> filters -> ranking -> UsageLedger
download:        load grant -> checks -> fetch content -> increment_usage
                 (commit point) -> provenance (accessed link)

Checks run in a fixed order and the first failure wins:
    NOT_FOUND -> FORBIDDEN -> EXPIRED -> QUOTA_EXCEEDED

Collaborators are synchronous and run off the event loop via
asyncio.to_thread. Idempotent collaborator reads are retried once with a
backoff on DSG_E_UPSTREAM_UNAVAILABLE. increment_usage is never retried:
content is fetched first, so an upstream failure never consumes quota.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
import urllib.parse
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Sequence, TypeVar, Union

from . import metrics
from .config import GatewayConfig, _get_str
from .content_store import ContentStore, build_content_store_from_env
from .crypto import Ed25519Signer, random_hex
from .errors import (
    DSG_E_BAD_REQUEST,
    DSG_E_EXPIRED,
    DSG_E_FORBIDDEN,
    DSG_E_NOT_FOUND,
    DSG_E_PAYMENT_INVALID,
    DSG_E_QUOTA_EXCEEDED,
    DSG_E_TIMEOUT,
    DSG_E_UPSTREAM_UNAVAILABLE,
    GatewayError,
    gateway_error,
)
from .models import (
    AccessGrant,
    AnalysisResult,
    DatasetRecord,
    DownloadResult,
    IntegrityReport,
    ProvenanceAction,
    ProvenanceChain,
    QueryRecord,
    SearchResult,
    UsageStats,
    _now_ms,
)
from .ops_stats import OPS_STATS
from .payment import (
    InMemoryLedger,
    PaymentGate,
    build_ledger_client_from_env,
    check_proof_format,
    load_ledger_seed,
)
from .provenance import LedgerProvenanceBuilder, ProvenanceBuilder, ProvenanceLog
from .query_engine import KeywordQueryEngine, QueryEngine, recommendations_for, tokenize
from .token_store import TokenStore, build_token_store
from .usage import UsageLedger

logger = logging.getLogger("dataset_gateway")

T = TypeVar("T")

ACCESS_KEY_PREFIX = "ak_"

DEFAULT_SEARCH_LIMIT = 20
MAX_SEARCH_LIMIT = 100


def new_access_key() -> str:
    """Opaque 256-bit random key. Carries no requester or dataset data."""
    return ACCESS_KEY_PREFIX + secrets.token_urlsafe(32)


def _collaborator_call(service: str, fn: Callable[..., T], *args: Any) -> T:
    try:
        return fn(*args)
    except GatewayError:
        raise
    except Exception as e:
        raise gateway_error(DSG_E_UPSTREAM_UNAVAILABLE, f"{service}: {type(e).__name__}: {e}") from e


class AccessGateway:
    """Issues, checks and meters access grants."""

    def __init__(
        self,
        store: TokenStore,
        payment_gate: PaymentGate,
        content_store: ContentStore,
        query_engine: Optional[QueryEngine] = None,
        provenance: Optional[ProvenanceBuilder] = None,
        usage: Optional[UsageLedger] = None,
        config: Optional[GatewayConfig] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.config = config or GatewayConfig()
        self.store = store
        self.payment_gate = payment_gate
        self.content_store = content_store
        self.query_engine = query_engine or KeywordQueryEngine(content_store)
        self.provenance = provenance or LedgerProvenanceBuilder(
            ledger=payment_gate.ledger,
            log=ProvenanceLog(path=self.config.provenance_log_path, clock=clock),
            gateway_id=self.config.gateway_id,
        )
        self.usage = usage or UsageLedger(max_queries=self.config.query_history_max)
        self.clock = clock

    @property
    def ledger(self):
        return self.payment_gate.ledger

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _track(self, operation: str):
        try:
            yield
        except GatewayError as e:
            OPS_STATS.record_denial(e.code)
            metrics.record_denial(e.code)
            metrics.record_operation(operation, "denied")
            raise
        metrics.record_operation(operation, "ok")

    async def _read_upstream(self, service: str, fn: Callable[..., T], *args: Any) -> T:
        """Idempotent collaborator read, retried once on upstream failure."""
        try:
            return await asyncio.to_thread(_collaborator_call, service, fn, *args)
        except GatewayError as e:
            if e.code != DSG_E_UPSTREAM_UNAVAILABLE or not e.retryable:
                raise
            logger.warning("%s unavailable, retrying once: %s", service, e.message)
            OPS_STATS.record_upstream_retry()
        await asyncio.sleep(self.config.upstream_retry_backoff_seconds)
        return await asyncio.to_thread(_collaborator_call, service, fn, *args)

    async def _dataset_record(self, dataset_id: str) -> DatasetRecord:
        return await self._read_upstream("ledger", self.ledger.get_dataset_record, dataset_id)

    async def _load_valid_grant(
        self,
        access_key: str,
        requester: str,
        dataset_id: Optional[str] = None,
    ) -> AccessGrant:
        if not access_key:
            raise gateway_error(DSG_E_NOT_FOUND, "Unknown access key")
        grant = await asyncio.to_thread(self.store.get, access_key)
        if grant is None:
            raise gateway_error(DSG_E_NOT_FOUND, "Unknown access key")
        if not requester or grant.requester != requester:
            raise gateway_error(DSG_E_FORBIDDEN, "Access key was issued to a different requester")
        if dataset_id is not None and grant.dataset_id != dataset_id:
            raise gateway_error(DSG_E_FORBIDDEN, "Access key was issued for a different dataset")
        if grant.is_expired(self.clock()):
            raise gateway_error(DSG_E_EXPIRED, "Access key has expired", expires_at_ms=grant.expires_at_ms)
        if grant.is_exhausted():
            raise gateway_error(
                DSG_E_QUOTA_EXCEEDED,
                f"Download limit exceeded ({grant.downloads_used}/{grant.max_downloads})",
                downloads_used=grant.downloads_used,
                max_downloads=grant.max_downloads,
            )
        return grant

    def _download_url(self, dataset_id: str, access_key: str) -> str:
        base = self.config.public_base_url
        if not base:
            return ""
        query = urllib.parse.urlencode({"access_key": access_key})
        return f"{base}/v1/download/{urllib.parse.quote(dataset_id, safe='')}?{query}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _authorize_purchase(self, dataset_id: str, requester: str, proof: Any) -> DatasetRecord:
        record = await self._dataset_record(dataset_id)
        await self._read_upstream("ledger", self.payment_gate.validate, dataset_id, requester, proof)
        return record

    async def request_access(
        self,
        dataset_id: str,
        requester: str,
        proof: Any,
        duration_override_ms: Optional[int] = None,
        max_downloads: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> AccessGrant:
        """
        Exchange a payment proof for a new access grant.

        Every successful call mints a distinct grant; repeated purchases by the
        same requester are not merged. On timeout or any failure nothing is
        stored.
        """
        with self._track("request_access"):
            if not dataset_id or not isinstance(dataset_id, str):
                raise gateway_error(DSG_E_BAD_REQUEST, "dataset_id is required")
            if not requester or not isinstance(requester, str):
                raise gateway_error(DSG_E_BAD_REQUEST, "requester is required")
            reason = check_proof_format(proof)
            if reason is not None:
                raise gateway_error(DSG_E_PAYMENT_INVALID, f"Invalid payment proof: {reason}")

            limit = self.config.default_max_downloads if max_downloads is None else int(max_downloads)
            if limit < 1:
                raise gateway_error(DSG_E_BAD_REQUEST, "max_downloads must be at least 1")
            timeout = self.config.payment_timeout_seconds if timeout_seconds is None else float(timeout_seconds)
            if timeout <= 0:
                raise gateway_error(DSG_E_BAD_REQUEST, "timeout_seconds must be positive")

            try:
                await asyncio.wait_for(self._authorize_purchase(dataset_id, requester, proof), timeout)
            except asyncio.TimeoutError:
                logger.warning("payment validation timed out after %ss: dataset=%s", timeout, dataset_id)
                raise gateway_error(DSG_E_TIMEOUT, "Payment validation timed out", timeout_seconds=timeout)

            now = self.clock()
            duration_ms = self.config.default_duration_ms if duration_override_ms is None else int(duration_override_ms)
            access_key = new_access_key()
            grant = AccessGrant(
                access_key=access_key,
                dataset_id=dataset_id,
                requester=requester,
                issued_at_ms=now,
                expires_at_ms=now + duration_ms,
                max_downloads=limit,
                downloads_used=0,
                download_url=self._download_url(dataset_id, access_key),
            )
            await asyncio.to_thread(self.store.put, grant)

        OPS_STATS.record_grant_issued()
        logger.info(
            "grant issued: dataset=%s requester=%s expires_at_ms=%d max_downloads=%d",
            dataset_id, requester, grant.expires_at_ms, grant.max_downloads,
        )
        return grant

    async def query(self, access_key: str, requester: str, query_text: str) -> AnalysisResult:
        """Run a query against the granted dataset. Does not consume quota."""
        with self._track("query"):
            if not isinstance(query_text, str) or not query_text.strip():
                raise gateway_error(DSG_E_BAD_REQUEST, "query_text is required")
            started = time.monotonic()
            grant = await self._load_valid_grant(access_key, requester)
            record = await self._dataset_record(grant.dataset_id)
            result = await self._read_upstream(
                "query_engine", self.query_engine.analyze, record.content_hash, query_text, list(record.tags)
            )
            query_id = "q_" + random_hex(12)
            result = replace(result, query_id=query_id, dataset_id=grant.dataset_id)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.usage.record_query(
            QueryRecord(
                query_id=query_id,
                dataset_id=grant.dataset_id,
                query_text=query_text,
                tags=tuple(record.tags),
                requester=requester,
                timestamp_ms=self.clock(),
                duration_ms=elapsed_ms,
            )
        )
        OPS_STATS.record_query()
        return result

    async def search_datasets(
        self,
        requester: str,
        search_terms: str,
        tags: Sequence[str] = (),
        data_format: Optional[str] = None,
        min_quality_score: float = 0.0,
        max_price_wei: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> SearchResult:
        """
        Search the catalog of verified datasets. Needs no grant.

        A dataset matches when one of the search terms occurs in its id, name
        or tags, it carries every requested tag, and it passes the format,
        quality and price filters. Results are ordered by terms hit, then id.
        """
        with self._track("search_datasets"):
            if not requester:
                raise gateway_error(DSG_E_BAD_REQUEST, "requester is required")
            terms = tokenize(search_terms) if isinstance(search_terms, str) else []
            if not terms:
                raise gateway_error(DSG_E_BAD_REQUEST, "search_terms is required")
            max_results = DEFAULT_SEARCH_LIMIT if limit is None else int(limit)
            if max_results < 1:
                raise gateway_error(DSG_E_BAD_REQUEST, "limit must be at least 1")
            max_results = min(max_results, MAX_SEARCH_LIMIT)

            started = time.monotonic()
            wanted_tags = {t.lower() for t in tags}
            wanted_format = (data_format or "").strip().lower()
            records = await self._read_upstream("ledger", self.ledger.list_datasets)

            scored = []
            for record in records:
                if not record.verified:
                    continue
                if wanted_tags - {t.lower() for t in record.tags}:
                    continue
                if wanted_format and record.data_format.lower() != wanted_format:
                    continue
                if record.quality_score < min_quality_score:
                    continue
                if max_price_wei is not None and record.price_wei > max_price_wei:
                    continue
                haystack = " ".join([record.dataset_id, record.name, *record.tags]).lower()
                hits = sum(1 for t in terms if t in haystack)
                if hits:
                    scored.append((-hits, record.dataset_id, record))
            scored.sort(key=lambda item: item[:2])
            datasets = [record for _, _, record in scored[:max_results]]

        query_id = "q_" + random_hex(12)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.usage.record_query(
            QueryRecord(
                query_id=query_id,
                dataset_id="",
                query_text=search_terms,
                tags=tuple(tags),
                requester=requester,
                timestamp_ms=self.clock(),
                duration_ms=elapsed_ms,
            )
        )
        OPS_STATS.record_search()
        return SearchResult(
            query_id=query_id,
            datasets=datasets,
            query_time_ms=elapsed_ms,
            recommendations=recommendations_for(len(datasets), wanted_format),
        )

    async def download(self, access_key: str, requester: str, dataset_id: Optional[str] = None) -> DownloadResult:
        """
        Fetch the dataset and consume one download.

        `dataset_id`, when given, must match the grant's dataset.
        """
        with self._track("download"):
            grant = await self._load_valid_grant(access_key, requester, dataset_id)
            record = await self._dataset_record(grant.dataset_id)
            payload = await self._read_upstream("content", self.content_store.fetch, record.content_hash)
            if record.content_hash and self.content_store.hash(payload) != record.content_hash:
                err = gateway_error(DSG_E_UPSTREAM_UNAVAILABLE, "content: hash mismatch", dataset_id=grant.dataset_id)
                err.retryable = False
                raise err

            if grant.is_expired(self.clock()):
                raise gateway_error(DSG_E_EXPIRED, "Access key has expired", expires_at_ms=grant.expires_at_ms)
            downloads_used = await asyncio.to_thread(self.store.increment_usage, access_key)

        provenance = await self.generate_provenance_chain(
            grant.dataset_id, actor=requester, access_type=ProvenanceAction.ACCESSED
        )
        self.usage.record_download(requester, grant.dataset_id)
        OPS_STATS.record_download()
        logger.info(
            "download committed: dataset=%s downloads_used=%d/%d",
            grant.dataset_id, downloads_used, grant.max_downloads,
        )

        metadata: Dict[str, Any] = {
            "dataset_id": grant.dataset_id,
            "name": record.name,
            "owner": record.owner,
            "content_hash": record.content_hash,
            "tags": list(record.tags),
            "size_bytes": len(payload),
            "downloads_used": downloads_used,
            "max_downloads": grant.max_downloads,
            "remaining_downloads": max(0, grant.max_downloads - downloads_used),
            "expires_at_ms": grant.expires_at_ms,
        }
        return DownloadResult(
            payload=payload,
            metadata=metadata,
            provenance=provenance,
            downloads_used=downloads_used,
        )

    async def generate_provenance_chain(
        self,
        dataset_id: str,
        actor: Optional[str] = None,
        access_type: Optional[Union[ProvenanceAction, str]] = None,
    ) -> ProvenanceChain:
        """Build the provenance chain for a dataset. Never raises."""
        try:
            return await asyncio.to_thread(self.provenance.build, dataset_id, actor, access_type)
        except Exception as e:
            logger.warning("provenance chain for %s could not be built: %s", dataset_id, e, exc_info=True)
            return ProvenanceChain.untrusted(dataset_id)

    async def revoke_grant(self, access_key: str, requester: Optional[str] = None) -> None:
        """
        Delete a grant. Revoking an unknown key is a no-op.

        When `requester` is given, a grant held by someone else is left
        untouched and DSG_E_FORBIDDEN is raised.
        """
        with self._track("revoke_grant"):
            if not access_key:
                return
            if requester is not None:
                grant = await asyncio.to_thread(self.store.get, access_key)
                if grant is not None and grant.requester != requester:
                    raise gateway_error(DSG_E_FORBIDDEN, "Access key was issued to a different requester")
            removed = await asyncio.to_thread(self.store.delete, access_key)
        if removed:
            OPS_STATS.record_grant_revoked()
            logger.info("grant revoked")

    async def validate_data_integrity(self, dataset_id: str, expected_hash: str) -> IntegrityReport:
        """
        Compare the stored content's hash with `expected_hash`.

        Unknown datasets raise DSG_E_NOT_FOUND; collaborator failures are
        reported as an invalid result with an empty hash.
        """
        with self._track("validate_data_integrity"):
            if not dataset_id:
                raise gateway_error(DSG_E_BAD_REQUEST, "dataset_id is required")
            if not isinstance(expected_hash, str) or not expected_hash.strip():
                raise gateway_error(DSG_E_BAD_REQUEST, "expected_hash is required")
            try:
                record = await self._dataset_record(dataset_id)
            except GatewayError as e:
                if e.code == DSG_E_NOT_FOUND:
                    raise
                logger.warning("integrity check for %s: ledger unavailable: %s", dataset_id, e.message)
                return IntegrityReport(valid=False, actual_hash="", provenance_verified=False)

        provenance = await self.generate_provenance_chain(dataset_id)
        try:
            payload = await self._read_upstream("content", self.content_store.fetch, record.content_hash)
            actual_hash = self.content_store.hash(payload)
        except GatewayError as e:
            logger.warning("integrity check for %s: content unavailable: %s", dataset_id, e.message)
            return IntegrityReport(valid=False, actual_hash="", provenance_verified=provenance.verified)

        return IntegrityReport(
            valid=actual_hash == expected_hash.strip().lower(),
            actual_hash=actual_hash,
            provenance_verified=provenance.verified,
        )

    async def usage_stats(self, requester: str) -> UsageStats:
        if not requester:
            raise gateway_error(DSG_E_BAD_REQUEST, "requester is required")
        return self.usage.stats(requester)

    def active_grants(self) -> int:
        count = len(self.store)
        metrics.set_active_grants(count)
        return count


def build_gateway_from_env(config: Optional[GatewayConfig] = None) -> AccessGateway:
    """Wire an AccessGateway from DSG_* environment variables."""
    cfg = config or GatewayConfig.from_env()
    store = build_token_store(cfg.store_backend, cfg.db_path, cfg.lock_stripes)
    ledger = build_ledger_client_from_env()
    content_store = build_content_store_from_env()

    seed_path = _get_str("DSG_LEDGER_SEED_FILE")
    if seed_path:
        if not isinstance(ledger, InMemoryLedger):
            raise RuntimeError("DSG_LEDGER_SEED_FILE requires DSG_LEDGER_MODE=memory")
        load_ledger_seed(seed_path, ledger, content_store)
    elif isinstance(ledger, InMemoryLedger):
        logger.warning("in-memory ledger has no datasets; set DSG_LEDGER_SEED_FILE or DSG_LEDGER_MODE=http")

    signer = None
    seed_hex = _get_str("DSG_SIGNING_SEED_HEX")
    if seed_hex:
        signer = Ed25519Signer.from_seed_hex(seed_hex, key_id=cfg.gateway_id)
    provenance = LedgerProvenanceBuilder(
        ledger=ledger,
        log=ProvenanceLog(path=cfg.provenance_log_path, signer=signer),
        gateway_id=cfg.gateway_id,
    )
    return AccessGateway(
        store=store,
        payment_gate=PaymentGate(ledger),
        content_store=content_store,
        provenance=provenance,
        config=cfg,
    )
