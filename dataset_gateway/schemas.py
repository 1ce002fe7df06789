"""JSON Schemas for data that crosses a trust boundary.

- ledger responses (the HTTP ledger is a separate service)
- ledger seed files loaded into the in-memory ledger
- provenance log lines (the JSONL file may be edited at rest)

Uses jsonschema Draft 2020-12.
"""

from __future__ import annotations

from typing import Any, Dict, List

import jsonschema

_HEX64 = {"type": "string", "pattern": "^[0-9a-f]{64}$"}

SCHEMAS: Dict[str, Dict[str, Any]] = {
    "dataset_record": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": ["owner", "verified"],
        "properties": {
            "owner": {"type": "string", "minLength": 1},
            "verified": {"type": "boolean"},
            "price_wei": {"type": ["string", "integer"], "pattern": "^[0-9]+$", "minimum": 0},
            "priceWei": {"type": ["string", "integer"], "pattern": "^[0-9]+$", "minimum": 0},
            "content_hash": {"type": "string"},
            "contentHash": {"type": "string"},
            "name": {"type": "string"},
            "tags": {"type": "array", "items": {"type": "string"}},
            "created_at_ms": {"type": "integer", "minimum": 0},
            "format": {"type": "string"},
            "quality_score": {"type": "number", "minimum": 0},
            "qualityScore": {"type": "number", "minimum": 0},
        },
    },
    "dataset_list": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": ["datasets"],
        "properties": {
            "datasets": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["dataset_id", "owner", "verified"],
                    "properties": {"dataset_id": {"type": "string", "minLength": 1}},
                },
            },
        },
    },
    "ledger_seed": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "properties": {
            "datasets": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["dataset_id", "owner"],
                    "properties": {
                        "dataset_id": {"type": "string", "minLength": 1},
                        "owner": {"type": "string", "minLength": 1},
                        "content": {"type": "string"},
                    },
                },
            },
            "payments": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["dataset_id", "payer"],
                    "properties": {
                        "dataset_id": {"type": "string", "minLength": 1},
                        "payer": {"type": "string", "minLength": 1},
                    },
                },
            },
        },
    },
    "payment_status": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": ["paid"],
        "properties": {"paid": {"type": "boolean"}},
    },
    "payment_receipt": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": ["proof"],
        "properties": {"proof": {"type": "string", "minLength": 1}},
    },
    "provenance_record": {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": ["version", "dataset_id", "prev_hash", "hash", "timestamp_ms", "action", "actor"],
        "properties": {
            "version": {"const": "DSG_PROV_V1"},
            "dataset_id": {"type": "string", "minLength": 1},
            "prev_hash": _HEX64,
            "hash": _HEX64,
            "timestamp_ms": {"type": "integer", "minimum": 0},
            "action": {"enum": ["created", "modified", "verified", "accessed"]},
            "actor": {"type": "string"},
            "metadata": {"type": "object"},
            "key_id": {"type": "string"},
            "signature_b64": {"type": "string"},
        },
    },
}

_VALIDATORS: Dict[str, jsonschema.Draft202012Validator] = {
    name: jsonschema.Draft202012Validator(schema) for name, schema in SCHEMAS.items()
}


def schema_errors(obj: Any, schema_name: str, limit: int = 10) -> List[str]:
    """Return up to `limit` readable schema violations (empty if valid)."""
    validator = _VALIDATORS.get(schema_name)
    if validator is None:
        raise ValueError(f"Unknown schema: {schema_name}")
    errors = sorted(validator.iter_errors(obj), key=lambda e: list(e.absolute_path))
    out: List[str] = []
    for e in errors[:limit]:
        loc = "/".join(str(p) for p in e.absolute_path) or "<root>"
        out.append(f"{schema_name} {loc}: {e.message}")
    return out
