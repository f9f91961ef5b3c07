"""Response relay: turns an upstream httpx response into a client response.

Streaming endpoints are relayed chunk by chunk as the upstream produces
them. Everything else is read fully, decoded by content type, and sent in
one piece.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable

import httpx
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from gemini_proxy.errors import UpstreamError
from gemini_proxy.logging.audit import RequestLogEntry, log_request

ALLOWED_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
ALLOWED_HEADERS = ["Content-Type", "Authorization", "x-api-key", "x-password"]
EXPOSED_HEADERS = [
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "Retry-After",
    "X-Request-Id",
]

PREFLIGHT_MAX_AGE = 86400

# Cross-origin requests get these from CORSMiddleware; this copy answers
# bare OPTIONS requests that carry no Origin
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
    "Access-Control-Allow-Headers": ", ".join(ALLOWED_HEADERS),
}

# content-length is dropped as well: the body is re-framed on the way out
STRIPPED_RESPONSE_HEADERS = frozenset({
    "connection",
    "transfer-encoding",
    "content-encoding",
    "content-length",
})

DEFAULT_STREAM_CONTENT_TYPE = "text/plain; charset=utf-8"


def filter_response_headers(headers: Iterable[tuple[str, str]]) -> dict[str, str]:
    return {k: v for k, v in headers if k.lower() not in STRIPPED_RESPONSE_HEADERS}


def relay_headers(upstream: httpx.Response, extra: dict[str, str]) -> dict[str, str]:
    """Upstream headers minus the deny-list, with our own headers on top."""
    headers = filter_response_headers(upstream.headers.items())
    headers.update(extra)
    return headers


def decode_body(content_type: str, raw: bytes) -> str | bytes:
    """Decode a buffered body according to its declared content type.

    JSON is relayed byte for byte, whatever value it holds. Text is decoded
    as UTF-8; everything else stays binary.
    """
    if "application/json" in content_type:
        return raw
    if "text/" in content_type:
        return raw.decode("utf-8", errors="replace")
    return raw


async def buffered_response(upstream: httpx.Response, extra_headers: dict[str, str]) -> Response:
    """Read the whole upstream body and send it as a single response."""
    try:
        raw = await upstream.aread()
    except httpx.HTTPError as e:
        raise UpstreamError(f"Upstream error: {e}")
    finally:
        await upstream.aclose()

    content_type = upstream.headers.get("content-type", "")
    headers = relay_headers(upstream, extra_headers)
    body = decode_body(content_type, raw)

    if isinstance(body, str):
        headers.pop("content-type", None)
        return PlainTextResponse(
            status_code=upstream.status_code,
            content=body,
            headers=headers,
            media_type=content_type or None,
        )
    return Response(status_code=upstream.status_code, content=body, headers=headers)


async def iter_upstream(
    upstream: httpx.Response,
    on_close: Callable[[str | None], None] | None = None,
) -> AsyncIterator[bytes]:
    """Yield upstream body chunks as they arrive, always closing the upstream.

    ``on_close`` receives an error description, or None on clean completion.
    Client disconnects surface here as cancellation.
    """
    error = None
    try:
        async for chunk in upstream.aiter_bytes():
            yield chunk
    except asyncio.CancelledError:
        error = "Client disconnected"
        raise
    except httpx.HTTPError as e:
        error = f"Upstream stream interrupted: {e}"
        raise
    finally:
        await upstream.aclose()
        if on_close is not None:
            on_close(error)


def streaming_response(
    upstream: httpx.Response,
    extra_headers: dict[str, str],
    entry: RequestLogEntry,
) -> StreamingResponse:
    """Relay a streaming upstream response; the request is logged when the stream ends."""
    headers = relay_headers(upstream, extra_headers)
    headers.pop("content-type", None)
    headers["Cache-Control"] = "no-cache"
    media_type = upstream.headers.get("content-type") or DEFAULT_STREAM_CONTENT_TYPE

    def _finish(error: str | None) -> None:
        log_request(entry.finish(upstream.status_code, error))

    return StreamingResponse(
        iter_upstream(upstream, on_close=_finish),
        status_code=upstream.status_code,
        headers=headers,
        media_type=media_type,
    )


def preflight_response() -> Response:
    return Response(status_code=204, headers={**CORS_HEADERS, "Access-Control-Max-Age": str(PREFLIGHT_MAX_AGE)})


def error_response(envelope: dict, status_code: int, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope, headers=headers)
