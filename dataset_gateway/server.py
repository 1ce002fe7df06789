"""HTTP surface for the dataset access gateway (FastAPI).

Every error leaves the service as the GatewayError envelope:
    {"code", "message", "retryable", "http_status", "details"?}

Requester identity:
- no API keys configured: X-Requester-Address is taken as claimed
- API keys configured: derived from X-Api-Key; a differing
  X-Requester-Address is rejected
"""

from __future__ import annotations

import base64
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .auth import REQUESTER_MISMATCH, ApiKeyAuth, AuthContext
from .config import env_bool
from .errors import (
    DSG_E_AUTH_REQUIRED,
    DSG_E_BAD_REQUEST,
    DSG_E_FORBIDDEN,
    DSG_E_RATE_LIMITED,
    GatewayError,
    gateway_error,
)
from .gateway import AccessGateway, build_gateway_from_env
from .metrics import instrument_fastapi, record_rate_limited
from .ops_stats import OPS_STATS
from .ratelimit import RateLimiter
from .sweeper import ExpirySweeper

logger = logging.getLogger("dataset_gateway.server")


class AccessRequest(BaseModel):
    dataset_id: str = Field(..., min_length=1, max_length=256)
    proof: str = Field(..., max_length=8192)
    duration_ms: Optional[int] = Field(None, le=365 * 24 * 3600 * 1000)
    max_downloads: Optional[int] = Field(None, ge=1, le=1_000_000)
    timeout_seconds: Optional[float] = Field(None, gt=0, le=300)


class AccessResponse(BaseModel):
    access_key: str
    dataset_id: str
    requester: str
    issued_at_ms: int
    expires_at_ms: int
    max_downloads: int
    downloads_used: int
    download_url: str = ""


class QueryRequest(BaseModel):
    access_key: str = Field(..., min_length=1, max_length=256)
    query: str = Field(..., min_length=1, max_length=4096)


class QueryResponse(BaseModel):
    query_id: str
    dataset_id: str
    matches: List[str]
    relevance: float
    summary: str
    recommendations: List[str]


class SearchRequest(BaseModel):
    search_terms: str = Field(..., min_length=1, max_length=1024)
    tags: List[str] = Field(default_factory=list, max_length=32)
    format: Optional[str] = Field(None, max_length=64)
    min_quality_score: float = Field(0.0, ge=0)
    max_price_wei: Optional[int] = Field(None, ge=0)
    limit: Optional[int] = Field(None, ge=1, le=100)


class ValidateRequest(BaseModel):
    dataset_id: str = Field(..., min_length=1, max_length=256)
    expected_hash: str = Field(..., min_length=1, max_length=256)


def _bearer_or_header(req: Request, header: str, token: str) -> bool:
    authz = (req.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == token:
        return True
    return (req.headers.get(header) or "").strip() == token


def create_app(gateway: Optional[AccessGateway] = None, sweeper: Optional[ExpirySweeper] = None) -> FastAPI:
    """Create the FastAPI application."""
    from . import __version__ as dsg_version

    if gateway is None:
        gateway = build_gateway_from_env()
    if sweeper is None:
        sweeper = ExpirySweeper(gateway.store, interval_seconds=gateway.config.sweep_interval_seconds)
    sweeper_enabled = env_bool("DSG_SWEEPER_ENABLED", True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if sweeper_enabled:
            sweeper.start()
        try:
            yield
        finally:
            sweeper.stop()
            gateway.store.close()

    app = FastAPI(
        title="Dataset Access Gateway",
        description="Payment-gated, quota-metered dataset access",
        version=dsg_version,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.sweeper = sweeper

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(p) for p in e.get("loc", ())], "msg": str(e.get("msg", ""))}
            for e in exc.errors()
        ]
        err = gateway_error(DSG_E_BAD_REQUEST, "Request validation failed", errors=errors)
        return JSONResponse(status_code=err.http_status, content=err.as_dict())

    api_auth = ApiKeyAuth.load_from_env()
    if api_auth.config_error:
        logger.error("API key configuration is invalid; all requests will be rejected")

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("DSG_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if metrics_token:
            return _bearer_or_header(req, "X-Metrics-Token", metrics_token)
        return True

    instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Request size + rate limiting
    # ---------------------------
    try:
        max_request_bytes = int(os.getenv("DSG_MAX_REQUEST_BYTES", "65536") or "65536")
    except ValueError:
        max_request_bytes = 65536

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                err = gateway_error(DSG_E_BAD_REQUEST, "BAD_CONTENT_LENGTH")
                return JSONResponse(status_code=err.http_status, content=err.as_dict())
            if too_large:
                err = gateway_error(DSG_E_BAD_REQUEST, "REQUEST_TOO_LARGE", max_request_bytes=max_request_bytes)
                err.http_status = 413
                return JSONResponse(status_code=413, content=err.as_dict())
        return await call_next(req)

    def _build_limiter(env_name: str, default_spec: str) -> Optional[RateLimiter]:
        spec = os.getenv(env_name, default_spec).strip()
        if not spec or spec in ("0", "off", "disabled", "false"):
            return None
        max_keys = int(os.getenv("DSG_RATE_LIMIT_MAX_KEYS", "20000") or "20000")
        try:
            return RateLimiter.from_spec(spec, max_keys=max_keys)
        except ValueError as e:
            logger.warning("Invalid rate limit %s=%r: %s (disabled)", env_name, spec, e)
            return None

    access_limiter = _build_limiter("DSG_RATE_LIMIT_ACCESS", "30/m")

    def _rl_key(req: Request, auth_ctx: AuthContext) -> str:
        if auth_ctx.requester:
            return f"r:{auth_ctx.requester}"
        if req.client and req.client.host:
            return f"ip:{req.client.host}"
        return "_anon"

    def _require_requester(x_api_key: Optional[str], x_requester: Optional[str]) -> AuthContext:
        ctx = api_auth.resolve_context(x_api_key, x_requester)
        if ctx.error == REQUESTER_MISMATCH:
            raise gateway_error(DSG_E_FORBIDDEN, "X-Requester-Address does not match the API key")
        if ctx.error:
            raise gateway_error(DSG_E_AUTH_REQUIRED, ctx.error)
        return ctx

    # ---------------------------
    # Access lifecycle
    # ---------------------------

    @app.post("/v1/access", response_model=AccessResponse)
    async def request_access(
        http_request: Request,
        request: AccessRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_requester: Optional[str] = Header(None, alias="X-Requester-Address"),
    ):
        """Exchange a payment proof for an access grant."""
        ctx = _require_requester(x_api_key, x_requester)
        if access_limiter is not None and not access_limiter.allow(_rl_key(http_request, ctx)):
            OPS_STATS.record_rate_limited("access")
            record_rate_limited("access")
            raise gateway_error(DSG_E_RATE_LIMITED, "RATE_LIMITED")

        grant = await gateway.request_access(
            request.dataset_id,
            ctx.requester,
            request.proof,
            duration_override_ms=request.duration_ms,
            max_downloads=request.max_downloads,
            timeout_seconds=request.timeout_seconds,
        )
        return AccessResponse(**grant.to_dict())

    @app.delete("/v1/access/{access_key}", status_code=204)
    async def revoke_access(
        access_key: str,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_requester: Optional[str] = Header(None, alias="X-Requester-Address"),
    ):
        ctx = _require_requester(x_api_key, x_requester)
        await gateway.revoke_grant(access_key, requester=ctx.requester)
        return Response(status_code=204)

    @app.post("/v1/query", response_model=QueryResponse)
    async def query_dataset(
        request: QueryRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_requester: Optional[str] = Header(None, alias="X-Requester-Address"),
    ):
        ctx = _require_requester(x_api_key, x_requester)
        result = await gateway.query(request.access_key, ctx.requester, request.query)
        return QueryResponse(**result.to_dict())

    @app.post("/v1/search")
    async def search_datasets(
        request: SearchRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_requester: Optional[str] = Header(None, alias="X-Requester-Address"),
    ):
        """Search the catalog of verified datasets; no grant needed."""
        ctx = _require_requester(x_api_key, x_requester)
        result = await gateway.search_datasets(
            ctx.requester,
            request.search_terms,
            tags=request.tags,
            data_format=request.format,
            min_quality_score=request.min_quality_score,
            max_price_wei=request.max_price_wei,
            limit=request.limit,
        )
        return result.to_dict()

    @app.get("/v1/download/{dataset_id}")
    async def download_dataset(
        dataset_id: str,
        access_key: str = Query(..., min_length=1, max_length=256),
        raw: bool = Query(False),
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_requester: Optional[str] = Header(None, alias="X-Requester-Address"),
    ):
        """Download the dataset, consuming one download from the grant.

        raw=true returns the bytes directly; provenance is then only reported
        through the X-Provenance-Verified header.
        """
        ctx = _require_requester(x_api_key, x_requester)
        result = await gateway.download(access_key, ctx.requester, dataset_id=dataset_id)
        if raw:
            return Response(
                content=result.payload,
                media_type="application/octet-stream",
                headers={
                    "X-Downloads-Used": str(result.downloads_used),
                    "X-Downloads-Remaining": str(result.metadata.get("remaining_downloads", 0)),
                    "X-Content-Hash": str(result.metadata.get("content_hash", "")),
                    "X-Provenance-Verified": "true" if result.provenance.verified else "false",
                },
            )
        return {
            "dataset_id": dataset_id,
            "metadata": result.metadata,
            "provenance": result.provenance.to_dict(),
            "payload_b64": base64.b64encode(result.payload).decode("ascii"),
        }

    # ---------------------------
    # Provenance, integrity, usage
    # ---------------------------

    @app.get("/v1/provenance/{dataset_id}")
    async def provenance(dataset_id: str):
        chain = await gateway.generate_provenance_chain(dataset_id)
        return chain.to_dict()

    @app.post("/v1/validate")
    async def validate_integrity(request: ValidateRequest):
        report = await gateway.validate_data_integrity(request.dataset_id, request.expected_hash)
        return report.to_dict()

    @app.get("/v1/usage")
    async def usage(
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_requester: Optional[str] = Header(None, alias="X-Requester-Address"),
    ):
        ctx = _require_requester(x_api_key, x_requester)
        stats = await gateway.usage_stats(ctx.requester)
        return stats.to_dict()

    # ---------------------------
    # Operational stats (/v1/stats)
    # ---------------------------
    stats_token = (os.getenv("DSG_STATS_TOKEN", "") or "").strip()
    env = str(os.getenv("DSG_ENV", os.getenv("ENV", "dev"))).strip().lower()
    stats_require_auth = env_bool("DSG_STATS_REQUIRE_AUTH", env in ("prod", "production"))

    def _authorize_stats(req: Request) -> bool:
        if not stats_require_auth:
            return True
        if not stats_token:
            return False
        return _bearer_or_header(req, "X-Stats-Token", stats_token)

    @app.get("/v1/stats")
    async def stats(http_request: Request):
        if not _authorize_stats(http_request):
            raise gateway_error(DSG_E_AUTH_REQUIRED, "STATS_UNAUTHORIZED")
        circuit = getattr(gateway.store, "circuit", None)
        extra: Dict[str, Any] = {
            "active_grants": gateway.active_grants(),
            "lockdown_active": bool(circuit is not None and circuit.is_lockdown_active()),
            "sweeper_state": sweeper.state.value,
        }
        return OPS_STATS.snapshot(extra=extra)

    @app.get("/v1/health")
    async def health_check():
        return {
            "status": "healthy",
            "gateway_id": gateway.config.gateway_id,
            "store": gateway.config.store_backend,
            "sweeper_running": sweeper.running,
            "version": dsg_version,
        }

    return app


def main():
    """
    Entry point for the dataset-gateway CLI.

    Usage:
        dataset-gateway                    # Start on default port 8000
        dataset-gateway --port 9000        # Start on custom port
        dataset-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Dataset Access Gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    DSG_STORE               memory|sqlite (default: memory)
    DSG_DB_PATH             SQLite database path (default: dataset_gateway.db)
    DSG_LEDGER_MODE         memory|http (default: memory)
    DSG_LEDGER_URL          Ledger service base URL
    DSG_LEDGER_SEED_FILE    JSON datasets/payments loaded into the memory ledger
    DSG_CONTENT_MODE        memory|http (default: memory)
    DSG_CONTENT_URL         Content store base URL
    DSG_API_KEYS_JSON       JSON object mapping API key -> requester address
    DSG_PROXY_HEADERS       If set (1/true), trust X-Forwarded-* headers
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default=os.getenv("DSG_LOG_LEVEL", "INFO"), help="Logging level")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app()
    proxy_headers = args.proxy_headers or env_bool("DSG_PROXY_HEADERS", False)
    logger.info("starting dataset gateway on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers, log_level=str(args.log_level).lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
