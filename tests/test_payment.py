import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from conftest import ALICE, BOB

from dataset_gateway.errors import (
    DSG_E_NOT_FOUND,
    DSG_E_PAYMENT_INVALID,
    DSG_E_UPSTREAM_UNAVAILABLE,
    GatewayError,
)
from dataset_gateway.models import DatasetRecord
from dataset_gateway.payment import (
    MAX_PROOF_LENGTH,
    HttpLedgerClient,
    InMemoryLedger,
    PaymentGate,
    build_ledger_client_from_env,
    check_proof_format,
    load_ledger_seed,
)


@pytest.mark.parametrize(
    "proof,ok",
    [
        ("0xdeadbeef", True),
        (b"0xdeadbeef", True),
        ("", False),
        ("   ", False),
        (None, False),
        (12345, False),
        ("x" * (MAX_PROOF_LENGTH + 1), False),
        ("0xdead\nbeef", False),
        (b"\xff\xfe", False),
    ],
)
def test_check_proof_format(proof, ok):
    assert (check_proof_format(proof) is None) is ok


def test_payment_gate_accepts_paid_requester(ledger, dataset, paid_proof):
    gate = PaymentGate(ledger)
    gate.validate(dataset.dataset_id, ALICE, paid_proof)
    assert gate.is_valid(dataset.dataset_id, ALICE, paid_proof) is True


def test_payment_gate_rejects_unpaid_requester(ledger, dataset, paid_proof):
    gate = PaymentGate(ledger)
    with pytest.raises(GatewayError) as ei:
        gate.validate(dataset.dataset_id, BOB, paid_proof)
    assert ei.value.code == DSG_E_PAYMENT_INVALID
    assert gate.is_valid(dataset.dataset_id, BOB, paid_proof) is False


def test_payment_gate_rejects_malformed_proof_without_ledger_call():
    class ExplodingLedger(InMemoryLedger):
        def has_paid(self, dataset_id, payer):
            raise AssertionError("ledger must not be consulted")

    gate = PaymentGate(ExplodingLedger())
    with pytest.raises(GatewayError) as ei:
        gate.validate("ds-1", ALICE, "")
    assert ei.value.code == DSG_E_PAYMENT_INVALID


def test_payment_gate_wraps_ledger_crash():
    class CrashingLedger(InMemoryLedger):
        def has_paid(self, dataset_id, payer):
            raise ConnectionResetError("peer reset")

    gate = PaymentGate(CrashingLedger())
    with pytest.raises(GatewayError) as ei:
        gate.validate("ds-1", ALICE, "0xproof")
    assert ei.value.code == DSG_E_UPSTREAM_UNAVAILABLE
    assert ei.value.retryable is True

    # is_valid only answers the payment question; outages still raise
    with pytest.raises(GatewayError):
        gate.is_valid("ds-1", ALICE, "0xproof")


def test_in_memory_ledger_unknown_dataset(ledger):
    with pytest.raises(GatewayError) as ei:
        ledger.get_dataset_record("ds-missing")
    assert ei.value.code == DSG_E_NOT_FOUND
    with pytest.raises(GatewayError):
        ledger.submit_payment("ds-missing", ALICE)
    assert ledger.has_paid("ds-missing", ALICE) is False


# ---------------------------
# HTTP ledger
# ---------------------------

class _LedgerHandler(BaseHTTPRequestHandler):
    datasets = {
        "ds-1": {
            "owner": "0xowner",
            "priceWei": "1000000000000000",
            "verified": True,
            "contentHash": "ab" * 32,
            "tags": ["climate"],
            "format": "csv",
            "qualityScore": 0.8,
        },
        "ds-broken": {"owner": 42},
    }
    paid = {("ds-1", ALICE)}
    status_override = None
    catalog_override = None

    def _send(self, status, body):
        data = json.dumps(body).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self):  # noqa: N802
        if _LedgerHandler.status_override:
            return self._send(_LedgerHandler.status_override, {"error": "unavailable"})
        parts = self.path.strip("/").split("/")
        if parts == ["datasets"]:
            if _LedgerHandler.catalog_override is not None:
                return self._send(200, _LedgerHandler.catalog_override)
            listed = [{"dataset_id": k, **v} for k, v in _LedgerHandler.datasets.items() if k != "ds-broken"]
            return self._send(200, {"datasets": listed})
        if len(parts) == 2 and parts[0] == "datasets":
            rec = _LedgerHandler.datasets.get(parts[1])
            if rec is None:
                return self._send(404, {"error": "not found"})
            return self._send(200, rec)
        if len(parts) == 4 and parts[2] == "payments":
            return self._send(200, {"paid": (parts[1], parts[3]) in _LedgerHandler.paid})
        return self._send(404, {"error": "not found"})

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        body = json.loads(self.rfile.read(length) or b"{}")
        parts = self.path.strip("/").split("/")
        _LedgerHandler.paid.add((parts[1], body["payer"]))
        return self._send(200, {"proof": "0xreceipt"})

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def ledger_server():
    _LedgerHandler.paid = {("ds-1", ALICE)}
    httpd = HTTPServer(("127.0.0.1", 0), _LedgerHandler)
    host, port = httpd.server_address
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        _LedgerHandler.status_override = None
        _LedgerHandler.catalog_override = None
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


def test_http_ledger_reads_record_and_payment(ledger_server):
    client = HttpLedgerClient(base_url=ledger_server, timeout_seconds=2)

    record = client.get_dataset_record("ds-1")
    assert record.owner == "0xowner"
    assert record.price_wei == 10**15
    assert record.content_hash == "ab" * 32
    assert record.tags == ("climate",)

    assert client.has_paid("ds-1", ALICE) is True
    assert client.has_paid("ds-1", BOB) is False
    assert client.submit_payment("ds-1", BOB) == "0xreceipt"
    assert client.has_paid("ds-1", BOB) is True


def test_http_ledger_not_found(ledger_server):
    client = HttpLedgerClient(base_url=ledger_server, timeout_seconds=2)
    with pytest.raises(GatewayError) as ei:
        client.get_dataset_record("ds-missing")
    assert ei.value.code == DSG_E_NOT_FOUND


def test_http_ledger_malformed_record_not_retryable(ledger_server):
    client = HttpLedgerClient(base_url=ledger_server, timeout_seconds=2)
    with pytest.raises(GatewayError) as ei:
        client.get_dataset_record("ds-broken")
    assert ei.value.code == DSG_E_UPSTREAM_UNAVAILABLE
    assert ei.value.retryable is False
    assert ei.value.details["errors"]


def test_http_ledger_server_error_is_retryable(ledger_server):
    _LedgerHandler.status_override = 503
    client = HttpLedgerClient(base_url=ledger_server, timeout_seconds=2)
    with pytest.raises(GatewayError) as ei:
        client.has_paid("ds-1", ALICE)
    assert ei.value.code == DSG_E_UPSTREAM_UNAVAILABLE
    assert ei.value.retryable is True


def test_http_ledger_unreachable():
    client = HttpLedgerClient(base_url="http://127.0.0.1:9", timeout_seconds=0.5)
    with pytest.raises(GatewayError) as ei:
        client.has_paid("ds-1", ALICE)
    assert ei.value.code == DSG_E_UPSTREAM_UNAVAILABLE


def test_build_ledger_client_from_env(monkeypatch):
    monkeypatch.delenv("DSG_LEDGER_MODE", raising=False)
    assert isinstance(build_ledger_client_from_env(), InMemoryLedger)

    monkeypatch.setenv("DSG_LEDGER_MODE", "http")
    monkeypatch.delenv("DSG_LEDGER_URL", raising=False)
    with pytest.raises(RuntimeError):
        build_ledger_client_from_env()

    monkeypatch.setenv("DSG_LEDGER_URL", "http://ledger.internal:8080")
    monkeypatch.setenv("DSG_LEDGER_TIMEOUT_SECONDS", "1.5")
    client = build_ledger_client_from_env()
    assert isinstance(client, HttpLedgerClient)
    assert client.timeout_seconds == 1.5


def test_http_ledger_lists_catalog(ledger_server):
    client = HttpLedgerClient(base_url=ledger_server, timeout_seconds=2)
    (record,) = client.list_datasets()
    assert record.dataset_id == "ds-1"
    assert record.data_format == "csv"
    assert record.quality_score == 0.8
    assert record.verified is True


def test_http_ledger_malformed_catalog(ledger_server):
    _LedgerHandler.catalog_override = {"datasets": [{"owner": "0xowner", "verified": True}]}
    client = HttpLedgerClient(base_url=ledger_server, timeout_seconds=2)
    with pytest.raises(GatewayError) as ei:
        client.list_datasets()
    assert ei.value.code == DSG_E_UPSTREAM_UNAVAILABLE
    assert ei.value.retryable is False


def test_in_memory_ledger_lists_by_id(ledger):
    for ds in ("ds-b", "ds-a"):
        ledger.register_dataset(DatasetRecord(dataset_id=ds, owner="0xowner", price_wei=1, verified=True))
    assert [r.dataset_id for r in ledger.list_datasets()] == ["ds-a", "ds-b"]


# ---------------------------
# Seed files
# ---------------------------

def _write_seed(tmp_path, data):
    path = tmp_path / "ledger.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def test_load_ledger_seed(tmp_path, ledger, content_store):
    path = _write_seed(tmp_path, {
        "datasets": [
            {"dataset_id": "ds-seeded", "owner": "0xowner", "verified": True, "price_wei": "25",
             "tags": ["demo"], "format": "csv", "content": "a,b\n1,2\n"},
        ],
        "payments": [{"dataset_id": "ds-seeded", "payer": ALICE}],
    })

    assert load_ledger_seed(path, ledger, content_store) == 1
    record = ledger.get_dataset_record("ds-seeded")
    assert record.price_wei == 25
    assert record.tags == ("demo",)
    assert content_store.fetch(record.content_hash) == b"a,b\n1,2\n"
    assert ledger.has_paid("ds-seeded", ALICE) is True
    assert record.created_at_ms > 0


def test_load_ledger_seed_rejects_bad_shape(tmp_path, ledger):
    path = _write_seed(tmp_path, {"datasets": [{"owner": "0xowner"}]})
    with pytest.raises(ValueError, match="invalid ledger seed"):
        load_ledger_seed(path, ledger)


def test_load_ledger_seed_inline_content_needs_store(tmp_path, ledger):
    path = _write_seed(tmp_path, {"datasets": [{"dataset_id": "ds-x", "owner": "0xo", "content": "x"}]})
    with pytest.raises(ValueError, match="in-memory content store"):
        load_ledger_seed(path, ledger, content_store=None)


def test_gateway_from_env_loads_seed(tmp_path, monkeypatch):
    from dataset_gateway.gateway import build_gateway_from_env

    path = _write_seed(tmp_path, {"datasets": [{"dataset_id": "ds-env", "owner": "0xowner", "verified": True}]})
    for name in ("DSG_LEDGER_MODE", "DSG_CONTENT_MODE", "DSG_STORE", "DSG_PROVENANCE_LOG_PATH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DSG_LEDGER_SEED_FILE", path)
    gateway = build_gateway_from_env()
    assert [r.dataset_id for r in gateway.ledger.list_datasets()] == ["ds-env"]

    monkeypatch.setenv("DSG_LEDGER_MODE", "http")
    monkeypatch.setenv("DSG_LEDGER_URL", "http://ledger.internal:8080")
    with pytest.raises(RuntimeError, match="DSG_LEDGER_SEED_FILE"):
        build_gateway_from_env()
