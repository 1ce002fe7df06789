"""
Hashing and signing primitives for provenance records.

- canonical JSON for stable hashes across processes and languages
- length-prefixed hash inputs (no delimiter collisions)
- Ed25519 signing of provenance link hashes via `cryptography`
"""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import Any, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


def canonical_json_dumps(obj: Any) -> str:
    """Strict canonical JSON: sorted keys, no whitespace, no NaN/Infinity."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def random_hex(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


@dataclass
class Ed25519Signer:
    """
    Ed25519 key used to sign provenance link hashes.

    SECURITY: Keep the private key out of shared config. Verifiers only need
    `public_key_hex`.
    """
    key_id: str
    private_key: Optional[Ed25519PrivateKey]
    public_key: Ed25519PublicKey

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519Signer":
        private_key = Ed25519PrivateKey.generate()
        return cls(key_id=key_id, private_key=private_key, public_key=private_key.public_key())

    @classmethod
    def from_seed_hex(cls, seed_hex: str, key_id: str) -> "Ed25519Signer":
        seed = bytes.fromhex(seed_hex.strip())
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        return cls(key_id=key_id, private_key=private_key, public_key=private_key.public_key())

    @classmethod
    def verifier(cls, key_id: str, public_key_hex: str) -> "Ed25519Signer":
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
        return cls(key_id=key_id, private_key=None, public_key=public_key)

    @property
    def public_key_hex(self) -> str:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ).hex()

    def sign(self, message: bytes) -> bytes:
        if self.private_key is None:
            raise RuntimeError(f"key {self.key_id} is verify-only")
        return self.private_key.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            self.public_key.verify(signature, message)
            return True
        except InvalidSignature:
            return False
