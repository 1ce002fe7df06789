import json

import pytest

from conftest import ALICE, BOB

from dataset_gateway.crypto import Ed25519Signer
from dataset_gateway.models import ProvenanceAction
from dataset_gateway.provenance import GENESIS_HASH, LedgerProvenanceBuilder, ProvenanceLog


class TestProvenanceLog:
    def test_links_are_hash_chained(self, clock):
        log = ProvenanceLog(clock=clock)
        first = log.append("ds-1", ProvenanceAction.ACCESSED, ALICE)
        second = log.append("ds-1", "accessed", BOB, metadata={"via": "download"})

        assert first.hash != second.hash
        assert len(first.hash) == 64
        assert [link.actor for link in log.links("ds-1")] == [ALICE, BOB]
        assert log.verify("ds-1") == (True, "OK", 2)

    def test_chains_are_per_dataset(self, clock):
        log = ProvenanceLog(clock=clock)
        a = log.append("ds-a", "accessed", ALICE)
        b = log.append("ds-b", "accessed", ALICE)
        # Same body on a fresh chain: only the dataset id differs
        assert a.hash != b.hash
        assert log.datasets() == ["ds-a", "ds-b"]
        assert log.verify() == (True, "OK", 2)

    def test_timestamps_never_go_backwards(self, clock):
        log = ProvenanceLog(clock=clock)
        log.append("ds-1", "accessed", ALICE)
        clock.advance(-60_000)
        later = log.append("ds-1", "accessed", ALICE)
        stamps = [link.timestamp_ms for link in log.links("ds-1")]
        assert stamps == sorted(stamps)
        assert later.timestamp_ms == stamps[0]

    def test_created_links_cannot_be_appended(self):
        log = ProvenanceLog()
        with pytest.raises(ValueError):
            log.append("ds-1", ProvenanceAction.CREATED, ALICE)

    def test_unknown_action_rejected(self):
        log = ProvenanceLog()
        with pytest.raises(ValueError):
            log.append("ds-1", "deleted", ALICE)

    def test_jsonl_persistence_round_trip(self, tmp_path, clock):
        path = tmp_path / "prov" / "provenance.jsonl"
        log = ProvenanceLog(path=str(path), clock=clock)
        log.append("ds-1", "accessed", ALICE)
        log.append("ds-1", "verified", "auditor", metadata={"score": 97})

        reloaded = ProvenanceLog(path=str(path), clock=clock)
        assert reloaded.links("ds-1") == log.links("ds-1")
        assert ProvenanceLog.verify_file(str(path)) == (True, "OK", 2)

        # Appending after reload continues the same chain
        reloaded.append("ds-1", "accessed", BOB)
        assert ProvenanceLog.verify_file(str(path)) == (True, "OK", 3)

    def test_tampered_file_is_detected(self, tmp_path, clock):
        path = tmp_path / "provenance.jsonl"
        log = ProvenanceLog(path=str(path), clock=clock)
        log.append("ds-1", "accessed", ALICE)
        log.append("ds-1", "accessed", BOB)

        lines = path.read_text(encoding="utf-8").splitlines()
        rec = json.loads(lines[0])
        rec["actor"] = "0xmallory"
        lines[0] = json.dumps(rec, sort_keys=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        ok, reason, count = ProvenanceLog.verify_file(str(path))
        assert ok is False
        assert reason == "LINK_HASH_MISMATCH"
        assert count == 1

    def test_dropped_line_breaks_chain(self, tmp_path, clock):
        path = tmp_path / "provenance.jsonl"
        log = ProvenanceLog(path=str(path), clock=clock)
        for _ in range(3):
            log.append("ds-1", "accessed", ALICE)

        lines = path.read_text(encoding="utf-8").splitlines()
        path.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")

        ok, reason, _ = ProvenanceLog.verify_file(str(path))
        assert ok is False
        assert reason == "CHAIN_BROKEN"

    def test_schema_violation_is_detected(self, tmp_path):
        path = tmp_path / "provenance.jsonl"
        path.write_text(json.dumps({"version": "DSG_PROV_V1", "dataset_id": "ds-1"}) + "\n", encoding="utf-8")
        assert ProvenanceLog.verify_file(str(path))[:2] == (False, "SCHEMA_ERROR")

    def test_missing_file_verifies_empty(self, tmp_path):
        assert ProvenanceLog.verify_file(str(tmp_path / "nope.jsonl")) == (True, "NO_FILE", 0)

    def test_signed_links_verify_with_public_key(self, tmp_path, clock):
        signer = Ed25519Signer.from_seed_hex("1f" * 32, key_id="dsg_gateway_001")
        path = tmp_path / "provenance.jsonl"
        log = ProvenanceLog(path=str(path), signer=signer, clock=clock)
        log.append("ds-1", "accessed", ALICE)
        log.append("ds-1", "accessed", BOB)

        verifier = Ed25519Signer.verifier("dsg_gateway_001", signer.public_key_hex)
        assert ProvenanceLog.verify_file(str(path), verifier=verifier) == (True, "OK", 2)

        other = Ed25519Signer.generate("dsg_gateway_001")
        ok, reason, _ = ProvenanceLog.verify_file(str(path), verifier=other)
        assert ok is False
        assert reason == "INVALID_SIGNATURE"

    def test_unsigned_log_fails_signature_check(self, tmp_path, clock):
        path = tmp_path / "provenance.jsonl"
        ProvenanceLog(path=str(path), clock=clock).append("ds-1", "accessed", ALICE)
        verifier = Ed25519Signer.generate("k")
        assert ProvenanceLog.verify_file(str(path), verifier=verifier)[:2] == (False, "MISSING_SIGNATURE")


class TestLedgerProvenanceBuilder:
    def test_chain_order(self, ledger, dataset, clock):
        log = ProvenanceLog(clock=clock)
        builder = LedgerProvenanceBuilder(ledger=ledger, log=log)

        builder.build(dataset.dataset_id, actor=BOB, access_type="accessed")
        clock.advance(1_000)
        chain = builder.build(dataset.dataset_id, actor=ALICE, access_type=ProvenanceAction.ACCESSED)

        actions = [link.action for link in chain.chain]
        assert actions == [
            ProvenanceAction.CREATED,
            ProvenanceAction.VERIFIED,
            ProvenanceAction.ACCESSED,
            ProvenanceAction.ACCESSED,
        ]
        assert chain.chain[0].actor == dataset.owner
        assert chain.chain[-1].actor == ALICE
        stamps = [link.timestamp_ms for link in chain.chain]
        assert stamps == sorted(stamps)
        assert chain.verified is True

    def test_read_only_build_does_not_append(self, ledger, dataset, clock):
        log = ProvenanceLog(clock=clock)
        builder = LedgerProvenanceBuilder(ledger=ledger, log=log)
        chain = builder.build(dataset.dataset_id)
        assert [link.action for link in chain.chain] == [ProvenanceAction.CREATED, ProvenanceAction.VERIFIED]
        assert log.links(dataset.dataset_id) == []

    def test_unverified_dataset_has_no_verified_link(self, ledger, content_store, clock):
        from dataset_gateway.models import DatasetRecord

        ledger.register_dataset(
            DatasetRecord(dataset_id="ds-raw", owner="0xowner", price_wei=1, verified=False,
                          content_hash=content_store.put(b"a,b\n1,2\n"), created_at_ms=clock())
        )
        builder = LedgerProvenanceBuilder(ledger=ledger, log=ProvenanceLog(clock=clock))
        chain = builder.build("ds-raw")
        assert [link.action for link in chain.chain] == [ProvenanceAction.CREATED]
        # `verified` on the chain is about chain integrity, not dataset review
        assert chain.verified is True

    def test_created_link_never_postdates_recorded_links(self, ledger, dataset, clock):
        log = ProvenanceLog(clock=clock)
        log.append(dataset.dataset_id, "accessed", ALICE, timestamp_ms=dataset.created_at_ms - 5_000)
        chain = LedgerProvenanceBuilder(ledger=ledger, log=log).build(dataset.dataset_id)
        stamps = [link.timestamp_ms for link in chain.chain]
        assert stamps == sorted(stamps)

    def test_tampered_log_marks_chain_untrusted(self, ledger, dataset, clock):
        log = ProvenanceLog(clock=clock)
        log.append(dataset.dataset_id, "accessed", ALICE)
        rec = log._records[dataset.dataset_id][0]
        rec.prev_hash = "f" * 64

        chain = LedgerProvenanceBuilder(ledger=ledger, log=log).build(
            dataset.dataset_id, actor=ALICE, access_type="accessed"
        )
        assert chain.verified is False
        assert chain.chain == []
        # A broken chain is not extended
        assert len(log.links(dataset.dataset_id)) == 1

    def test_verified_link_follows_created(self, ledger, dataset, clock):
        chain = LedgerProvenanceBuilder(ledger=ledger, log=ProvenanceLog(clock=clock)).build(
            dataset.dataset_id, actor=ALICE, access_type="accessed"
        )
        created, verified, accessed = chain.chain
        assert created.timestamp_ms == dataset.created_at_ms
        assert verified.timestamp_ms == created.timestamp_ms + 1
        assert accessed.timestamp_ms == clock()

    def test_verified_link_ties_when_recorded_link_is_adjacent(self, ledger, dataset, clock):
        log = ProvenanceLog(clock=clock)
        log.append(dataset.dataset_id, "accessed", ALICE, timestamp_ms=dataset.created_at_ms)
        chain = LedgerProvenanceBuilder(ledger=ledger, log=log).build(dataset.dataset_id)
        stamps = [link.timestamp_ms for link in chain.chain]
        assert stamps == [dataset.created_at_ms] * 3


@pytest.mark.asyncio
async def test_gateway_provenance_for_unknown_dataset_is_untrusted(gateway):
    chain = await gateway.generate_provenance_chain("ds-missing")
    assert chain.verified is False
    assert chain.chain == []
    assert chain.dataset_id == "ds-missing"


@pytest.mark.asyncio
async def test_gateway_provenance_swallows_builder_failure(make_gateway, dataset):
    class BrokenBuilder:
        def build(self, dataset_id, actor=None, access_type=None):
            raise RuntimeError("disk full")

    gateway = make_gateway(provenance=BrokenBuilder())
    chain = await gateway.generate_provenance_chain(dataset.dataset_id, actor=ALICE, access_type="accessed")
    assert chain.verified is False
    assert chain.chain == []


def test_genesis_hash_shape():
    assert GENESIS_HASH == "0" * 64
