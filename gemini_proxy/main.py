"""Gemini API Proxy: FastAPI application entry point.

A forwarding proxy in front of the Gemini API that injects an upstream key
from a pool, optionally enforces an access password, rate limits each
client, and relays buffered and streamed responses.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from gemini_proxy.config.settings import get_settings
from gemini_proxy.credentials.pool import CredentialPool, credential_prefix
from gemini_proxy.dependencies import (
    get_access_guard,
    get_credential_pool,
    get_forwarder,
    get_rate_limiter,
)
from gemini_proxy.errors import PathValidationError, ProxyError, RateLimitError, RoutingError
from gemini_proxy.logging.audit import (
    RequestLogEntry,
    RequestTimer,
    generate_request_id,
    get_audit_logger,
    log_request,
    request_id_var,
    setup_logging,
)
from gemini_proxy.proxy.forwarder import InboundRequest, UpstreamForwarder
from gemini_proxy.proxy.relay import (
    ALLOWED_HEADERS,
    ALLOWED_METHODS,
    EXPOSED_HEADERS,
    PREFLIGHT_MAX_AGE,
    buffered_response,
    error_response,
    preflight_response,
    streaming_response,
)
from gemini_proxy.security.auth import AccessGuard, get_client_ip
from gemini_proxy.security.paths import is_allowed, is_stream_path, supported_paths
from gemini_proxy.security.ratelimit import (
    RateLimitResult,
    RateLimitStore,
    RateLimitSweeper,
)

VERSION = "1.0.0"

PROXIED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the proxy's state; a missing credential pool aborts startup."""
    setup_logging()
    logger = get_audit_logger()
    settings = get_settings()

    try:
        credentials = CredentialPool.load(settings)
    except ProxyError as e:
        logger.error("Proxy failed to start", extra={"audit_data": {"error": e.message}})
        raise

    app.state.credentials = credentials
    app.state.access_guard = AccessGuard(settings.password)
    app.state.rate_limiter = RateLimitStore()
    app.state.forwarder = UpstreamForwarder(settings)

    sweeper = RateLimitSweeper(app.state.rate_limiter, settings.rate_limit_sweep_interval_ms / 1000)
    sweeper.start()

    logger.info(
        "Proxy started",
        extra={"audit_data": {
            "api_key_count": len(credentials),
            "password_protected": settings.password_protected,
            "rate_limit_requests": settings.rate_limit_requests,
            "rate_limit_window_ms": settings.rate_limit_window_ms,
        }},
    )
    try:
        yield
    finally:
        await sweeper.stop()
        await app.state.forwarder.close()
        logger.info("Proxy stopped")


app = FastAPI(
    title="Gemini API Proxy",
    description="Key-pooling, rate-limited proxy for the Gemini API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=ALLOWED_METHODS,
    allow_headers=ALLOWED_HEADERS,
    expose_headers=EXPOSED_HEADERS,
    max_age=PREFLIGHT_MAX_AGE,
)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError):
    return error_response(exc.to_envelope(), exc.status_code, exc.headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    error = RoutingError(exc.status_code, str(exc.detail), dict(exc.headers or {}))
    return error_response(error.to_envelope(), error.status_code, error.headers)


@app.get("/health")
async def health():
    return {"status": "healthy", "version": VERSION}


@app.get("/status")
async def status(request: Request):
    """Operational summary. Never exposes keys or the password."""
    settings = get_settings()
    credentials = getattr(request.app.state, "credentials", None)
    return {
        "status": "running",
        "version": VERSION,
        "config": {
            "has_api_keys": bool(credentials),
            "api_key_count": len(credentials) if credentials else 0,
            "password_protected": settings.password_protected,
            "rate_limit": {
                "requests": settings.rate_limit_requests,
                "window_ms": settings.rate_limit_window_ms,
            },
        },
        "supported_methods": PROXIED_METHODS + ["OPTIONS"],
        "supported_paths": supported_paths(),
    }


@app.options("/{path:path}")
async def preflight(path: str, request: Request):
    """Bare OPTIONS: answered locally, no password or rate limit.

    Browser preflights (Origin + Access-Control-Request-Method) are answered
    by CORSMiddleware before reaching this route.
    """
    request_id_var.set(generate_request_id())
    entry = _new_log_entry(request, path)
    log_request(entry.finish(204))
    return preflight_response()


@app.api_route("/{path:path}", methods=PROXIED_METHODS)
async def proxy(
    path: str,
    request: Request,
    credentials: CredentialPool = Depends(get_credential_pool),
    guard: AccessGuard = Depends(get_access_guard),
    limiter: RateLimitStore = Depends(get_rate_limiter),
    forwarder: UpstreamForwarder = Depends(get_forwarder),
):
    """Proxy any supported Gemini API call.

    Pipeline: Password -> Path allow-list -> Rate Limit -> Pick Key -> Forward -> Relay -> Log
    """
    rid = generate_request_id()
    request_id_var.set(rid)
    settings = get_settings()
    entry = _new_log_entry(request, path)

    try:
        # 1. Access password
        guard.verify(request)

        # 2. Endpoint allow-list
        if not is_allowed(entry.path):
            raise PathValidationError(f"Invalid Gemini API path: {entry.path}")

        # 3. Rate limiting (per client IP)
        rate_result = await limiter.allow(
            entry.client_ip,
            settings.rate_limit_requests,
            settings.rate_limit_window_ms,
        )
        if not rate_result.allowed:
            raise RateLimitError(
                "Rate limit exceeded. Please try again later.",
                headers={
                    **_rate_limit_headers(rate_result),
                    "X-RateLimit-Reset": str(int(rate_result.reset_at)),
                    "Retry-After": str(int(rate_result.reset_seconds)),
                },
            )

        # 4. Upstream key
        credential = credentials.pick_valid()
        entry.api_key = credential_prefix(credential)

        # 5. Forward
        inbound = InboundRequest(
            method=request.method,
            path=entry.path,
            query=request.url.query,
            headers=request.headers,
            body=await request.body(),
        )
        with RequestTimer() as timer:
            upstream = await forwarder.forward(inbound, credential)
        entry.upstream_latency_ms = timer.elapsed_ms

        # 6. Relay
        headers = {**_rate_limit_headers(rate_result), "X-Request-Id": rid}
        if entry.stream:
            # Logged by the relay once the stream has finished
            return streaming_response(upstream, headers, entry)

        response = await buffered_response(upstream, headers)

    except ProxyError as e:
        return _fail(entry, e)
    except Exception as e:
        get_audit_logger().exception(
            "Unhandled proxy error",
            extra={"audit_data": {"method": entry.method, "path": entry.path}},
        )
        return _fail(entry, ProxyError(str(e) or "Internal proxy error"))

    log_request(entry.finish(response.status_code))
    return response


def _new_log_entry(request: Request, path: str) -> RequestLogEntry:
    full_path = "/" + path.lstrip("/")
    return RequestLogEntry(
        method=request.method,
        path=full_path,
        client_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
        stream=is_stream_path(full_path),
    )


def _rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
    }


def _fail(entry: RequestLogEntry, error: ProxyError) -> Response:
    """Log a terminal error and render its envelope."""
    log_request(entry.finish(error.status_code, error.message))
    return error_response(error.to_envelope(), error.status_code, error.headers)
