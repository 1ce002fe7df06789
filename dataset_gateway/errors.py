"""Stable error taxonomy for the dataset access gateway.

Every rejected operation surfaces a single exception type carrying a
machine-readable `code`, a human-readable `message`, and the HTTP status the
transport layer maps it to.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Distinct `http_status` per failure kind so clients can branch on status alone.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Access lifecycle
DSG_E_PAYMENT_INVALID = "DSG_E_PAYMENT_INVALID"
DSG_E_NOT_FOUND = "DSG_E_NOT_FOUND"
DSG_E_FORBIDDEN = "DSG_E_FORBIDDEN"
DSG_E_EXPIRED = "DSG_E_EXPIRED"
DSG_E_QUOTA_EXCEEDED = "DSG_E_QUOTA_EXCEEDED"

# Collaborators / latency
DSG_E_TIMEOUT = "DSG_E_TIMEOUT"
DSG_E_UPSTREAM_UNAVAILABLE = "DSG_E_UPSTREAM_UNAVAILABLE"

# Transport
DSG_E_BAD_REQUEST = "DSG_E_BAD_REQUEST"
DSG_E_AUTH_REQUIRED = "DSG_E_AUTH_REQUIRED"
DSG_E_RATE_LIMITED = "DSG_E_RATE_LIMITED"


HTTP_STATUS_BY_CODE: Dict[str, int] = {
    DSG_E_PAYMENT_INVALID: 402,
    DSG_E_NOT_FOUND: 404,
    DSG_E_FORBIDDEN: 403,
    DSG_E_EXPIRED: 410,
    DSG_E_QUOTA_EXCEEDED: 429,
    DSG_E_TIMEOUT: 504,
    DSG_E_UPSTREAM_UNAVAILABLE: 503,
    DSG_E_BAD_REQUEST: 400,
    DSG_E_AUTH_REQUIRED: 401,
    DSG_E_RATE_LIMITED: 429,
}

_RETRYABLE_CODES = frozenset({DSG_E_TIMEOUT, DSG_E_UPSTREAM_UNAVAILABLE, DSG_E_RATE_LIMITED})


@dataclass
class GatewayError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def gateway_error(code: str, message: str, **details: Any) -> GatewayError:
    """Build a GatewayError with the status and retry flag registered for `code`."""
    return GatewayError(
        code=code,
        message=message,
        retryable=code in _RETRYABLE_CODES,
        http_status=HTTP_STATUS_BY_CODE.get(code, 400),
        details=details,
    )

