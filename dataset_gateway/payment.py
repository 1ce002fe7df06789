"""dataset_gateway.payment

Payment gate and ledger clients.

The gateway never inspects payment internals. It asks a ledger collaborator
whether a requester has paid for a dataset, and treats the answer as truth.
Two ledger clients ship here:

* InMemoryLedger: a process-local ledger for tests, demos and local runs.
* HttpLedgerClient: a JSON-over-HTTP adapter for a ledger service.

HTTP ledger contract (all paths relative to DSG_LEDGER_URL):
    GET  /datasets                                -> {"datasets": [record, ...]}
    GET  /datasets/{dataset_id}                   -> dataset record object
    GET  /datasets/{dataset_id}/payments/{payer}  -> {"paid": bool}
    POST /datasets/{dataset_id}/payments          {"payer": ...} -> {"proof": str}

The PaymentGate itself is stateless: safe to call concurrently, no
deduplication, no side effects on gateway state.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from .crypto import random_hex
from .errors import DSG_E_NOT_FOUND, DSG_E_PAYMENT_INVALID, DSG_E_UPSTREAM_UNAVAILABLE, GatewayError, gateway_error
from .models import DatasetRecord, _now_ms
from .schemas import schema_errors
from .upstream import http_json

logger = logging.getLogger("dataset_gateway.payment")

MAX_PROOF_LENGTH = 4096


class LedgerClient(Protocol):
    """Ledger/contract collaborator."""

    def submit_payment(self, dataset_id: str, payer: str) -> str:
        ...

    def has_paid(self, dataset_id: str, payer: str) -> bool:
        ...

    def get_dataset_record(self, dataset_id: str) -> DatasetRecord:
        ...

    def list_datasets(self) -> List[DatasetRecord]:
        ...


class InMemoryLedger:
    """Thread-safe in-process ledger."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._datasets: Dict[str, DatasetRecord] = {}
        self._payments: Set[Tuple[str, str]] = set()

    def register_dataset(self, record: DatasetRecord) -> DatasetRecord:
        if not record.created_at_ms:
            record = DatasetRecord(**{**record.__dict__, "created_at_ms": _now_ms()})
        with self._lock:
            self._datasets[record.dataset_id] = record
        return record

    def submit_payment(self, dataset_id: str, payer: str) -> str:
        with self._lock:
            if dataset_id not in self._datasets:
                raise gateway_error(DSG_E_NOT_FOUND, "Dataset not found", dataset_id=dataset_id)
            self._payments.add((dataset_id, payer))
        return "0x" + random_hex(32)

    def has_paid(self, dataset_id: str, payer: str) -> bool:
        with self._lock:
            return (dataset_id, payer) in self._payments

    def get_dataset_record(self, dataset_id: str) -> DatasetRecord:
        with self._lock:
            record = self._datasets.get(dataset_id)
        if record is None:
            raise gateway_error(DSG_E_NOT_FOUND, "Dataset not found", dataset_id=dataset_id)
        return record

    def list_datasets(self) -> List[DatasetRecord]:
        with self._lock:
            return [self._datasets[k] for k in sorted(self._datasets)]


def load_ledger_seed(path: str, ledger: InMemoryLedger, content_store: Any = None) -> int:
    """Populate an in-memory ledger from a JSON seed file.

    Format:
        {"datasets": [{"dataset_id", "owner", ..., "content"?}],
         "payments": [{"dataset_id", "payer"}]}

    Inline `content` (UTF-8 text) is put into `content_store` and its hash
    becomes the record's content_hash. Returns the number of datasets loaded.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    errors = schema_errors(data, "ledger_seed")
    if errors:
        raise ValueError(f"invalid ledger seed {path}: {errors[0]}")

    datasets = data.get("datasets") or []
    for entry in datasets:
        entry = dict(entry)
        content = entry.pop("content", None)
        if content is not None:
            if content_store is None or not hasattr(content_store, "put"):
                raise ValueError(f"ledger seed {path}: inline content needs an in-memory content store")
            entry["content_hash"] = content_store.put(content.encode("utf-8"))
        ledger.register_dataset(DatasetRecord.from_dict(entry.pop("dataset_id"), entry))
    for payment in data.get("payments") or []:
        ledger.submit_payment(payment["dataset_id"], payment["payer"])
    logger.info("ledger seeded from %s: %d dataset(s)", path, len(datasets))
    return len(datasets)


def _require_schema(data: Any, schema_name: str) -> None:
    errors = schema_errors(data, schema_name)
    if errors:
        err = gateway_error(DSG_E_UPSTREAM_UNAVAILABLE, f"ledger: malformed {schema_name} response", errors=errors)
        err.retryable = False
        raise err


@dataclass
class HttpLedgerClient:
    """HTTP-based ledger client."""

    base_url: str
    timeout_seconds: float = 5.0

    def _url(self, *parts: str) -> str:
        quoted = "/".join(urllib.parse.quote(p, safe="") for p in parts)
        return f"{self.base_url.rstrip('/')}/{quoted}"

    def submit_payment(self, dataset_id: str, payer: str) -> str:
        data = http_json(
            "ledger",
            self._url("datasets", dataset_id, "payments"),
            method="POST",
            payload={"payer": payer},
            timeout_seconds=self.timeout_seconds,
        )
        _require_schema(data, "payment_receipt")
        return data["proof"]

    def has_paid(self, dataset_id: str, payer: str) -> bool:
        data = http_json(
            "ledger",
            self._url("datasets", dataset_id, "payments", payer),
            timeout_seconds=self.timeout_seconds,
        )
        if isinstance(data, bool):
            return data
        _require_schema(data, "payment_status")
        return data["paid"]

    def get_dataset_record(self, dataset_id: str) -> DatasetRecord:
        data = http_json(
            "ledger",
            self._url("datasets", dataset_id),
            timeout_seconds=self.timeout_seconds,
        )
        _require_schema(data, "dataset_record")
        return DatasetRecord.from_dict(dataset_id, data)

    def list_datasets(self) -> List[DatasetRecord]:
        data = http_json("ledger", self._url("datasets"), timeout_seconds=self.timeout_seconds)
        _require_schema(data, "dataset_list")
        return [DatasetRecord.from_dict(d["dataset_id"], d) for d in data["datasets"]]


def check_proof_format(proof: Any) -> Optional[str]:
    """Return a rejection reason for a malformed proof, or None if well-formed."""
    if isinstance(proof, bytes):
        try:
            proof = proof.decode("utf-8")
        except UnicodeDecodeError:
            return "proof is not valid UTF-8"
    if not isinstance(proof, str):
        return "proof must be a string"
    stripped = proof.strip()
    if not stripped:
        return "proof is empty"
    if len(stripped) > MAX_PROOF_LENGTH:
        return f"proof exceeds {MAX_PROOF_LENGTH} characters"
    if any(ord(ch) < 0x20 for ch in stripped):
        return "proof contains control characters"
    return None


class PaymentGate:
    """Validates payment proofs against the ledger."""

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    def validate(self, dataset_id: str, requester: str, proof: Any) -> None:
        """
        Raise DSG_E_PAYMENT_INVALID unless the proof is well-formed and the
        ledger reports that `requester` paid for `dataset_id`.

        Ledger failures propagate as DSG_E_UPSTREAM_UNAVAILABLE.
        """
        reason = check_proof_format(proof)
        if reason is not None:
            raise gateway_error(DSG_E_PAYMENT_INVALID, f"Invalid payment proof: {reason}")
        if not requester:
            raise gateway_error(DSG_E_PAYMENT_INVALID, "Invalid payment proof: no payer")

        try:
            paid = self.ledger.has_paid(dataset_id, requester)
        except GatewayError:
            raise
        except Exception as e:
            raise gateway_error(DSG_E_UPSTREAM_UNAVAILABLE, f"ledger: {type(e).__name__}: {e}") from e

        if not paid:
            logger.warning("payment not found on ledger: dataset=%s requester=%s", dataset_id, requester)
            raise gateway_error(
                DSG_E_PAYMENT_INVALID,
                "Ledger reports no payment for this dataset",
                dataset_id=dataset_id,
            )

    def is_valid(self, dataset_id: str, requester: str, proof: Any) -> bool:
        try:
            self.validate(dataset_id, requester, proof)
        except GatewayError as e:
            if e.code != DSG_E_PAYMENT_INVALID:
                raise
            return False
        return True


def build_ledger_client_from_env() -> LedgerClient:
    """Build the ledger client from env vars.

    Env:
      DSG_LEDGER_MODE: memory|http (default memory)
      DSG_LEDGER_URL: required if DSG_LEDGER_MODE=http
      DSG_LEDGER_TIMEOUT_SECONDS: optional, float
    """
    mode = os.getenv("DSG_LEDGER_MODE", "memory").strip().lower() or "memory"
    if mode == "http":
        url = os.getenv("DSG_LEDGER_URL", "").strip()
        if not url:
            raise RuntimeError("DSG_LEDGER_URL must be set when DSG_LEDGER_MODE=http")
        timeout_s = float(os.getenv("DSG_LEDGER_TIMEOUT_SECONDS", "5") or "5")
        return HttpLedgerClient(base_url=url, timeout_seconds=timeout_s)
    return InMemoryLedger()
