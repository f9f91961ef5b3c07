"""Tests for gemini_proxy/proxy/relay.py: buffered and streaming relay."""

import asyncio
import json

import httpx
import pytest

from gemini_proxy.errors import UpstreamError
from gemini_proxy.logging.audit import RequestLogEntry
from gemini_proxy.proxy.relay import (
    CORS_HEADERS,
    buffered_response,
    decode_body,
    filter_response_headers,
    iter_upstream,
    preflight_response,
    streaming_response,
)
from tests.conftest import STREAM_PATH, ChunkStream, sse_chunks


def make_entry() -> RequestLogEntry:
    return RequestLogEntry(method="POST", path=STREAM_PATH, client_ip="127.0.0.1", user_agent="pytest", stream=True)


class StalledStream(httpx.AsyncByteStream):
    """Sends one chunk, then waits forever for the next."""

    def __init__(self, first: bytes):
        self.first = first
        self.closed = False

    async def __aiter__(self):
        yield self.first
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class TestFilterResponseHeaders:

    def test_strips_framing_headers(self):
        headers = filter_response_headers([
            ("Connection", "keep-alive"),
            ("Transfer-Encoding", "chunked"),
            ("Content-Encoding", "gzip"),
            ("Content-Length", "10"),
            ("Content-Type", "application/json"),
            ("X-Goog-Request-Id", "abc"),
        ])
        assert headers == {"Content-Type": "application/json", "X-Goog-Request-Id": "abc"}


class TestDecodeBody:

    def test_json_kept_verbatim(self):
        assert decode_body("application/json; charset=UTF-8", b'{ "a" : 1 }') == b'{ "a" : 1 }'

    def test_invalid_json_kept_raw(self):
        assert decode_body("application/json", b"{not json") == b"{not json"

    def test_text(self):
        assert decode_body("text/html", b"<p>hi</p>") == "<p>hi</p>"

    def test_binary(self):
        assert decode_body("application/octet-stream", b"\x00\x01") == b"\x00\x01"


class TestBufferedResponse:

    async def test_json_passthrough(self):
        upstream = httpx.Response(
            200,
            json={"candidates": []},
            headers={"x-goog-request-id": "abc"},
        )
        response = await buffered_response(upstream, {"X-RateLimit-Limit": "100"})
        assert response.status_code == 200
        assert json.loads(response.body) == {"candidates": []}
        assert response.headers["x-goog-request-id"] == "abc"
        assert response.headers["x-ratelimit-limit"] == "100"
        assert upstream.is_closed

    async def test_upstream_error_status_relayed(self):
        upstream = httpx.Response(403, json={"error": {"code": 403, "message": "API key not valid"}})
        response = await buffered_response(upstream, {})
        assert response.status_code == 403
        assert json.loads(response.body)["error"]["message"] == "API key not valid"

    @pytest.mark.parametrize("raw", [b"42", b'"hi"', b"null", b"true", b'{ "spaced" : [1, 2] }'])
    async def test_json_body_bytes_unchanged(self, raw):
        upstream = httpx.Response(200, content=raw, headers={"content-type": "application/json; charset=UTF-8"})
        response = await buffered_response(upstream, {})
        assert response.status_code == 200
        assert response.body == raw
        assert response.headers["content-type"] == "application/json; charset=UTF-8"
        assert response.headers["content-length"] == str(len(raw))

    async def test_text_body(self):
        upstream = httpx.Response(502, text="Bad gateway", headers={"content-type": "text/plain"})
        response = await buffered_response(upstream, {})
        assert response.status_code == 502
        assert response.body == b"Bad gateway"
        assert response.headers["content-type"].startswith("text/plain")

    async def test_binary_body(self):
        upstream = httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        response = await buffered_response(upstream, {})
        assert response.body == b"\x89PNG"
        assert response.headers["content-type"] == "image/png"

    async def test_read_failure_becomes_upstream_error(self):
        upstream = httpx.Response(200, stream=ChunkStream([b"partial"], fail_after=0))
        with pytest.raises(UpstreamError):
            await buffered_response(upstream, {})


class TestIterUpstream:

    async def test_chunks_relayed_in_order(self):
        chunks = sse_chunks(["Hel", "lo", " world"])
        stream = ChunkStream(chunks)
        upstream = httpx.Response(200, stream=stream)
        closed_with = []

        received = [chunk async for chunk in iter_upstream(upstream, on_close=closed_with.append)]

        assert received == chunks
        assert stream.closed is True
        assert closed_with == [None]

    async def test_empty_body_finishes(self):
        upstream = httpx.Response(200, stream=ChunkStream([]))
        received = [chunk async for chunk in iter_upstream(upstream)]
        assert received == []
        assert upstream.is_closed

    async def test_buffered_upstream_sent_whole(self):
        upstream = httpx.Response(200, content=b"already read")
        received = [chunk async for chunk in iter_upstream(upstream)]
        assert b"".join(received) == b"already read"

    async def test_mid_stream_failure_closes_and_reports(self):
        stream = ChunkStream([b"data: 1\n\n", b"data: 2\n\n"], fail_after=1)
        upstream = httpx.Response(200, stream=stream)
        closed_with = []
        received = []

        with pytest.raises(httpx.ReadError):
            async for chunk in iter_upstream(upstream, on_close=closed_with.append):
                received.append(chunk)

        assert received == [b"data: 1\n\n"]
        assert stream.closed is True
        assert "interrupted" in closed_with[0]

    async def test_consumer_stopping_early_releases_upstream(self):
        stream = ChunkStream([b"a", b"b", b"c"])
        upstream = httpx.Response(200, stream=stream)
        closed_with = []

        gen = iter_upstream(upstream, on_close=closed_with.append)
        assert await gen.__anext__() == b"a"
        await gen.aclose()

        assert stream.closed is True
        assert closed_with == [None]

    async def test_cancelled_consumer_reports_disconnect(self):
        stream = StalledStream(b"data: 1\n\n")
        upstream = httpx.Response(200, stream=stream)
        closed_with = []
        received = []

        async def consume():
            async for chunk in iter_upstream(upstream, on_close=closed_with.append):
                received.append(chunk)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert received == [b"data: 1\n\n"]
        assert stream.closed is True
        assert upstream.is_closed
        assert closed_with == ["Client disconnected"]


class TestStreamingResponse:

    async def test_headers(self):
        upstream = httpx.Response(
            200,
            headers={"content-type": "text/event-stream", "content-length": "99"},
            stream=ChunkStream([]),
        )
        response = streaming_response(upstream, {"X-RateLimit-Remaining": "99"}, make_entry())
        assert response.status_code == 200
        assert response.media_type == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-ratelimit-remaining"] == "99"
        assert "content-length" not in response.headers
        await upstream.aclose()

    async def test_default_content_type(self):
        upstream = httpx.Response(200, stream=ChunkStream([]))
        response = streaming_response(upstream, {}, make_entry())
        assert response.media_type == "text/plain; charset=utf-8"
        await upstream.aclose()

    async def test_logs_when_stream_ends(self):
        entry = make_entry()
        upstream = httpx.Response(200, stream=ChunkStream([b"x"]))
        response = streaming_response(upstream, {}, entry)
        body = [chunk async for chunk in response.body_iterator]
        assert body == [b"x"]
        assert entry.response_status == 200
        assert entry.response_time_ms is not None


class TestPreflight:

    def test_preflight(self):
        response = preflight_response()
        assert response.status_code == 204
        assert response.headers["access-control-max-age"] == "86400"
        for name, value in CORS_HEADERS.items():
            assert response.headers[name] == value
