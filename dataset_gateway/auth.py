"""Requester authentication for the HTTP surface.

A grant is bound to a requester address. Without API keys configured the
address is taken from the X-Requester-Address header as claimed. With keys
configured, the address is derived from X-Api-Key and a differing claimed
address is rejected, so the binding cannot be spoofed by header alone.

Env vars:
  - DSG_API_KEYS_JSON: JSON object mapping api_key -> requester address
  - DSG_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Dict, Optional

ENV_API_KEYS_JSON = "DSG_API_KEYS_JSON"
ENV_API_KEYS_FILE = "DSG_API_KEYS_FILE"

API_KEY_CONFIG_INVALID = "API_KEY_CONFIG_INVALID"
API_KEY_REQUIRED = "API_KEY_REQUIRED"
API_KEY_INVALID = "API_KEY_INVALID"
REQUESTER_MISMATCH = "REQUESTER_MISMATCH"
REQUESTER_REQUIRED = "REQUESTER_REQUIRED"


@dataclass(frozen=True)
class AuthContext:
    requester: Optional[str]
    authenticated: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key -> requester address mapping."""

    api_key_to_requester: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load the mapping from env/file.

        If configuration is present but malformed, config_error is set and
        every request is rejected.
        """
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls(api_key_to_requester={}, configured=False)

        try:
            if raw_json:
                data = json.loads(raw_json)
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("API key mapping must be a JSON object")
            mapping = {str(k): str(v) for k, v in data.items() if str(k) and str(v)}
        except (OSError, ValueError):
            return cls(api_key_to_requester={}, configured=True, config_error=API_KEY_CONFIG_INVALID)

        return cls(api_key_to_requester=mapping, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve_context(self, api_key: Optional[str], claimed_requester: Optional[str] = None) -> AuthContext:
        """Resolve the requester for one request."""
        if self.config_error:
            return AuthContext(requester=None, authenticated=False, error=self.config_error)

        claimed = (claimed_requester or "").strip() or None
        if not self.enabled():
            if not claimed:
                return AuthContext(requester=None, authenticated=False, error=REQUESTER_REQUIRED)
            return AuthContext(requester=claimed, authenticated=False)

        if not api_key:
            return AuthContext(requester=None, authenticated=False, error=API_KEY_REQUIRED)

        requester = self.api_key_to_requester.get(api_key)
        if not requester:
            return AuthContext(requester=None, authenticated=False, error=API_KEY_INVALID)

        if claimed and claimed != requester:
            return AuthContext(requester=None, authenticated=False, error=REQUESTER_MISMATCH)

        return AuthContext(requester=requester, authenticated=True)
