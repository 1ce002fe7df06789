"""Dataset access gateway.

Turns a one-time payment proof into a time-boxed, download-limited access
grant for one dataset, meters usage against it, and reports provenance for
every access.

Convenience imports
------------------
Nothing heavy happens at import time. The main entry points are available
lazily from the package root:

    from dataset_gateway import AccessGateway, create_app

together with the storage and collaborator building blocks:

    from dataset_gateway import InMemoryTokenStore, SqliteTokenStore, PaymentGate
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Read `version = "..."` from a repo-local pyproject.toml, if present."""
    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "1.0.0"

__all__ = [
    "__version__",
    "AccessGateway",
    "create_app",
    "GatewayConfig",
    "GatewayError",
    "AccessGrant",
    "ProvenanceChain",
    "InMemoryTokenStore",
    "SqliteTokenStore",
    "PaymentGate",
    "InMemoryLedger",
    "InMemoryContentStore",
    "ExpirySweeper",
]

# name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "AccessGateway": ("dataset_gateway.gateway", "AccessGateway"),
    "create_app": ("dataset_gateway.server", "create_app"),
    "GatewayConfig": ("dataset_gateway.config", "GatewayConfig"),
    "GatewayError": ("dataset_gateway.errors", "GatewayError"),
    "AccessGrant": ("dataset_gateway.models", "AccessGrant"),
    "ProvenanceChain": ("dataset_gateway.models", "ProvenanceChain"),
    "InMemoryTokenStore": ("dataset_gateway.token_store", "InMemoryTokenStore"),
    "SqliteTokenStore": ("dataset_gateway.token_store", "SqliteTokenStore"),
    "PaymentGate": ("dataset_gateway.payment", "PaymentGate"),
    "InMemoryLedger": ("dataset_gateway.payment", "InMemoryLedger"),
    "InMemoryContentStore": ("dataset_gateway.content_store", "InMemoryContentStore"),
    "ExpirySweeper": ("dataset_gateway.sweeper", "ExpirySweeper"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'dataset_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
