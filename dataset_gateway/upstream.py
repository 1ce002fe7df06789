"""HTTP plumbing shared by the ledger and content-store clients.

Both collaborators are reached with the standard library (urllib). Failures
are translated into the gateway taxonomy at this boundary:

- network errors, HTTP 408/429/5xx -> DSG_E_UPSTREAM_UNAVAILABLE (retryable)
- HTTP 404                          -> DSG_E_NOT_FOUND
- other non-2xx, undecodable bodies -> DSG_E_UPSTREAM_UNAVAILABLE (not retryable)

Retrying is the caller's decision; these helpers make exactly one attempt.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Optional

from .errors import DSG_E_NOT_FOUND, DSG_E_UPSTREAM_UNAVAILABLE, GatewayError, gateway_error


def is_retryable_status(status: int) -> bool:
    return status in (408, 429) or (500 <= status <= 599)


def _http_failure(service: str, url: str, status: int, body: str = "") -> GatewayError:
    if status == 404:
        return gateway_error(DSG_E_NOT_FOUND, f"{service}: resource not found", url=url)
    err = gateway_error(
        DSG_E_UPSTREAM_UNAVAILABLE,
        f"{service}: HTTP {status}",
        url=url,
        status=status,
        body=body[:200],
    )
    err.retryable = is_retryable_status(status)
    return err


def http_request(
    service: str,
    url: str,
    *,
    method: str = "GET",
    payload: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout_seconds: float = 5.0,
) -> bytes:
    """Perform one HTTP request and return the raw body."""
    data = None
    hdrs = dict(headers or {})
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        hdrs.setdefault("Content-Type", "application/json")

    req = urllib.request.Request(url, data=data, headers=hdrs, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
            status = int(getattr(resp, "status", 200))
            body = resp.read()
    except urllib.error.HTTPError as e:
        try:
            err_body = e.read().decode("utf-8", errors="replace")
        except Exception:
            err_body = ""
        raise _http_failure(service, url, int(getattr(e, "code", 0) or 0), err_body) from e
    except Exception as e:
        raise gateway_error(DSG_E_UPSTREAM_UNAVAILABLE, f"{service}: {type(e).__name__}: {e}", url=url) from e

    if not 200 <= status <= 299:
        raise _http_failure(service, url, status, body.decode("utf-8", errors="replace"))
    return body


def http_json(service: str, url: str, **kwargs: Any) -> Any:
    """Perform one HTTP request and decode a JSON body."""
    body = http_request(service, url, **kwargs)
    try:
        return json.loads(body.decode("utf-8")) if body else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        err = gateway_error(DSG_E_UPSTREAM_UNAVAILABLE, f"{service}: response is not JSON", url=url)
        err.retryable = False
        raise err from e
