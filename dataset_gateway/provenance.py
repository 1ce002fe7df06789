"""Provenance log and chain builder.

ProvenanceLog is an append-only, per-dataset hash chain. Each recorded link
carries:
- prev_hash: hash of the previous link for the same dataset (genesis: 64 zeros)
- hash: SHA256(prev_hash || canonical link body), length-prefixed
- signature_b64: optional Ed25519 signature over the link hash

Links can be mirrored to a JSONL file. Editing, dropping or reordering lines
breaks the chain and is reported by `verify()` / `verify_file()`.

A ProvenanceBuilder assembles the chain returned to clients:
    created -> verified* -> recorded links -> accessed (new)
with non-decreasing timestamps. `created` and `verified` links are derived
from the ledger's dataset record; everything after is read from the log.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from .crypto import Ed25519Signer, canonical_json_dumps, safe_hash_encode, sha256_hex
from .models import ProvenanceAction, ProvenanceChain, ProvenanceLink, _now_ms
from .schemas import schema_errors

logger = logging.getLogger("dataset_gateway.provenance")

LOG_VERSION = "DSG_PROV_V1"
GENESIS_HASH = "0" * 64


def link_body(dataset_id: str, timestamp_ms: int, action: ProvenanceAction, actor: str,
              metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "dataset_id": dataset_id,
        "timestamp_ms": int(timestamp_ms),
        "action": action.value,
        "actor": actor,
        "metadata": metadata,
    }


def compute_link_hash(prev_hash: str, body: Dict[str, Any]) -> str:
    return sha256_hex(safe_hash_encode([prev_hash, canonical_json_dumps(body)]))


def _signature_payload(dataset_id: str, link_hash: str) -> bytes:
    return safe_hash_encode([LOG_VERSION, dataset_id, link_hash])


@dataclass
class ProvenanceRecord:
    """One stored link plus its chaining/signature fields."""
    dataset_id: str
    prev_hash: str
    link: ProvenanceLink
    key_id: str = ""
    signature_b64: str = ""

    def to_json(self) -> str:
        d = self.link.to_dict()
        d.update(
            {
                "version": LOG_VERSION,
                "dataset_id": self.dataset_id,
                "prev_hash": self.prev_hash,
                "key_id": self.key_id,
                "signature_b64": self.signature_b64,
            }
        )
        return json.dumps(d, sort_keys=True)

    @classmethod
    def from_json(cls, line: str) -> "ProvenanceRecord":
        d = json.loads(line)
        if d.get("version") != LOG_VERSION:
            raise ValueError(f"BAD_VERSION:{d.get('version')}")
        return cls(
            dataset_id=str(d["dataset_id"]),
            prev_hash=str(d["prev_hash"]),
            link=ProvenanceLink.from_dict(d),
            key_id=str(d.get("key_id", "")),
            signature_b64=str(d.get("signature_b64", "")),
        )


def _check_record(rec: ProvenanceRecord, expected_prev: str, last_ts: int,
                  verifier: Optional[Ed25519Signer]) -> Optional[str]:
    """Return a failure reason for one record, or None if it checks out."""
    if rec.prev_hash != expected_prev:
        return "CHAIN_BROKEN"
    if rec.link.timestamp_ms < last_ts:
        return "TIMESTAMP_REGRESSION"
    body = link_body(rec.dataset_id, rec.link.timestamp_ms, rec.link.action, rec.link.actor, rec.link.metadata)
    if compute_link_hash(rec.prev_hash, body) != rec.link.hash:
        return "LINK_HASH_MISMATCH"
    if verifier is not None:
        if not rec.signature_b64:
            return "MISSING_SIGNATURE"
        if rec.key_id != verifier.key_id:
            return "UNKNOWN_KEY"
        try:
            sig = base64.b64decode(rec.signature_b64, validate=True)
        except (ValueError, TypeError):
            return "BAD_SIGNATURE_ENCODING"
        if not verifier.verify(_signature_payload(rec.dataset_id, rec.link.hash), sig):
            return "INVALID_SIGNATURE"
    return None


class ProvenanceLog:
    """Append-only per-dataset provenance chains."""

    def __init__(
        self,
        path: Optional[str] = None,
        signer: Optional[Ed25519Signer] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.path = str(path) if path else None
        self.signer = signer
        self.clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, List[ProvenanceRecord]] = {}

        if self.path:
            p = Path(self.path)
            p.parent.mkdir(parents=True, exist_ok=True)
            if p.exists():
                self._load(p)

    def _load(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    rec = ProvenanceRecord.from_json(line)
                except (ValueError, KeyError, TypeError) as e:
                    # verify_file() reports the damage; keep serving the readable part.
                    logger.warning("provenance log %s: unreadable line %d: %s", self.path, lineno, e)
                    continue
                self._records.setdefault(rec.dataset_id, []).append(rec)

    def append(
        self,
        dataset_id: str,
        action: Union[ProvenanceAction, str],
        actor: str,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp_ms: Optional[int] = None,
    ) -> ProvenanceLink:
        """Append a link for `dataset_id` and return it."""
        action = ProvenanceAction(action)
        if action is ProvenanceAction.CREATED:
            raise ValueError("created links are derived from the ledger record")
        meta = dict(metadata or {})

        with self._lock:
            chain = self._records.setdefault(dataset_id, [])
            prev_hash = chain[-1].link.hash if chain else GENESIS_HASH
            last_ts = chain[-1].link.timestamp_ms if chain else 0
            ts = max(int(self.clock() if timestamp_ms is None else timestamp_ms), last_ts)

            body = link_body(dataset_id, ts, action, actor, meta)
            link_hash = compute_link_hash(prev_hash, body)
            link = ProvenanceLink(hash=link_hash, timestamp_ms=ts, action=action, actor=actor, metadata=meta)

            key_id = ""
            sig_b64 = ""
            if self.signer is not None:
                key_id = self.signer.key_id
                sig = self.signer.sign(_signature_payload(dataset_id, link_hash))
                sig_b64 = base64.b64encode(sig).decode("ascii")

            rec = ProvenanceRecord(dataset_id=dataset_id, prev_hash=prev_hash, link=link,
                                   key_id=key_id, signature_b64=sig_b64)
            if self.path:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(rec.to_json() + "\n")
            chain.append(rec)
        return link

    def links(self, dataset_id: str) -> List[ProvenanceLink]:
        with self._lock:
            return [rec.link for rec in self._records.get(dataset_id, [])]

    def datasets(self) -> List[str]:
        with self._lock:
            return sorted(self._records)

    def verify(self, dataset_id: Optional[str] = None) -> Tuple[bool, str, int]:
        """Verify the in-memory chains. Returns (ok, reason, count)."""
        verifier = self.signer
        with self._lock:
            if dataset_id is not None:
                chains = {dataset_id: list(self._records.get(dataset_id, []))}
            else:
                chains = {k: list(v) for k, v in self._records.items()}

        count = 0
        for chain in chains.values():
            prev = GENESIS_HASH
            last_ts = 0
            for rec in chain:
                count += 1
                reason = _check_record(rec, prev, last_ts, verifier)
                if reason is not None:
                    return False, reason, count
                prev = rec.link.hash
                last_ts = rec.link.timestamp_ms
        return True, "OK", count

    @staticmethod
    def verify_file(path: str, verifier: Optional[Ed25519Signer] = None) -> Tuple[bool, str, int]:
        """Verify a JSONL provenance log. Returns (ok, reason, count)."""
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev: Dict[str, str] = {}
        last_ts: Dict[str, int] = {}
        count = 0
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    raw = json.loads(line)
                except ValueError:
                    return False, "PARSE_ERROR", count
                if schema_errors(raw, "provenance_record", limit=1):
                    return False, "SCHEMA_ERROR", count
                rec = ProvenanceRecord.from_json(line)
                reason = _check_record(rec, prev.get(rec.dataset_id, GENESIS_HASH),
                                       last_ts.get(rec.dataset_id, 0), verifier)
                if reason is not None:
                    return False, reason, count
                prev[rec.dataset_id] = rec.link.hash
                last_ts[rec.dataset_id] = rec.link.timestamp_ms
        return True, "OK", count


class ProvenanceBuilder(Protocol):
    def build(
        self,
        dataset_id: str,
        actor: Optional[str] = None,
        access_type: Optional[Union[ProvenanceAction, str]] = None,
    ) -> ProvenanceChain:
        ...


@dataclass
class LedgerProvenanceBuilder:
    """
    Builds chains from the ledger's dataset record plus the provenance log.

    A log that fails verification yields an untrusted (empty, verified=False)
    chain and is not appended to. Collaborator failures raise; AccessGateway
    turns those into the same untrusted chain.
    """
    ledger: Any
    log: ProvenanceLog = field(default_factory=ProvenanceLog)
    gateway_id: str = "dsg_gateway_001"

    def _derived_hash(self, dataset_id: str, action: ProvenanceAction, actor: str, ts: int,
                      metadata: Dict[str, Any]) -> str:
        return compute_link_hash(GENESIS_HASH, link_body(dataset_id, ts, action, actor, metadata))

    def build(
        self,
        dataset_id: str,
        actor: Optional[str] = None,
        access_type: Optional[Union[ProvenanceAction, str]] = None,
    ) -> ProvenanceChain:
        record = self.ledger.get_dataset_record(dataset_id)

        ok, reason, _ = self.log.verify(dataset_id)
        if not ok:
            # A broken chain is never extended or partially returned.
            logger.warning("provenance chain for %s failed verification: %s", dataset_id, reason)
            return ProvenanceChain.untrusted(dataset_id)

        if access_type is not None:
            self.log.append(dataset_id, access_type, actor or self.gateway_id)
        recorded = self.log.links(dataset_id)

        created_ts = int(record.created_at_ms or 0)
        if recorded:
            created_ts = min(created_ts, recorded[0].timestamp_ms) if created_ts else recorded[0].timestamp_ms

        created_meta = {"content_hash": record.content_hash, "name": record.name}
        chain: List[ProvenanceLink] = [
            ProvenanceLink(
                hash=self._derived_hash(dataset_id, ProvenanceAction.CREATED, record.owner, created_ts, created_meta),
                timestamp_ms=created_ts,
                action=ProvenanceAction.CREATED,
                actor=record.owner,
                metadata=created_meta,
            )
        ]
        if record.verified:
            verified_meta = {"verified": True, "price_wei": str(record.price_wei)}
            # One tick after `created`, unless a recorded link already sits there.
            verified_ts = created_ts + 1
            if recorded and verified_ts > recorded[0].timestamp_ms:
                verified_ts = created_ts
            chain.append(
                ProvenanceLink(
                    hash=self._derived_hash(dataset_id, ProvenanceAction.VERIFIED, "ledger", verified_ts, verified_meta),
                    timestamp_ms=verified_ts,
                    action=ProvenanceAction.VERIFIED,
                    actor="ledger",
                    metadata=verified_meta,
                )
            )
        chain.extend(recorded)

        return ProvenanceChain(dataset_id=dataset_id, chain=chain, verified=bool(chain))
