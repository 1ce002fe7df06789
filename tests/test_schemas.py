import pytest

from dataset_gateway.schemas import schema_errors


def test_valid_dataset_record():
    assert schema_errors({"owner": "0xowner", "verified": True, "price_wei": "1000"}, "dataset_record") == []


def test_dataset_record_violations_are_readable():
    errs = schema_errors({"owner": "", "verified": "yes"}, "dataset_record")
    assert len(errs) == 2
    assert all(e.startswith("dataset_record ") for e in errs)
    assert any("owner" in e for e in errs)
    assert any("verified" in e for e in errs)


def test_limit_caps_reported_errors():
    assert len(schema_errors({}, "provenance_record", limit=1)) == 1


def test_payment_status_root_error():
    errs = schema_errors([], "payment_status")
    assert errs and errs[0].startswith("payment_status <root>:")


def test_unknown_schema():
    with pytest.raises(ValueError, match="Unknown schema"):
        schema_errors({}, "nope")
