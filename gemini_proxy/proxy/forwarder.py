"""Request forwarder: rewrites an inbound request for the Gemini API and sends it."""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field

import httpx

from gemini_proxy.config.settings import Settings
from gemini_proxy.errors import UpstreamError
from gemini_proxy.security.auth import PASSWORD_HEADER, PASSWORD_QUERY_PARAM

# Connection-level headers plus anything that would authenticate the caller
# rather than the proxy
STRIPPED_REQUEST_HEADERS = frozenset({
    "host",
    "connection",
    "accept-encoding",
    "content-length",
    "authorization",
    "x-api-key",
    PASSWORD_HEADER,
})

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass
class InboundRequest:
    method: str
    path: str
    query: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | str | dict | list | None = None


def build_upstream_url(base_url: str, path: str, query: str, credential: str) -> httpx.URL:
    """Join base URL, path and query, then force ``key=<credential>``."""
    if not path.startswith("/"):
        path = "/" + path
    target = f"{base_url.rstrip('/')}{path}"
    if query:
        target = f"{target}?{query}"
    url = httpx.URL(target)
    url = url.copy_remove_param(PASSWORD_QUERY_PARAM)
    return url.copy_set_param("key", credential)


def clean_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy inbound headers minus the deny-list; default content-type to JSON."""
    cleaned = {
        key.lower(): str(value)
        for key, value in headers.items()
        if value is not None and key.lower() not in STRIPPED_REQUEST_HEADERS
    }
    cleaned.setdefault("content-type", "application/json")
    return cleaned


def serialize_body(body: bytes | str | dict | list | None) -> bytes | None:
    """Render a request body for the wire: raw bytes/str pass through, structures become JSON."""
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(body).encode("utf-8")


class UpstreamForwarder:
    """Owns the pooled HTTP client used for every upstream call."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self._base_url = settings.upstream_base_url
        self._timeout = httpx.Timeout(
            settings.upstream_timeout_seconds,
            connect=settings.upstream_connect_timeout_seconds,
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    def build_request(self, client: httpx.AsyncClient, inbound: InboundRequest, credential: str) -> httpx.Request:
        url = build_upstream_url(self._base_url, inbound.path, inbound.query, credential)
        headers = clean_headers(inbound.headers)

        content = None
        if inbound.method.upper() in BODY_METHODS:
            content = serialize_body(inbound.body) or None

        return client.build_request(inbound.method, url, headers=headers, content=content)

    async def forward(self, inbound: InboundRequest, credential: str) -> httpx.Response:
        """Send the rewritten request upstream.

        The response is returned unread (``stream=True``); callers must
        either read it or ``aclose()`` it.

        Raises:
            UpstreamError: the upstream could not be reached or timed out.
        """
        client = await self._get_client()
        request = self.build_request(client, inbound, credential)
        try:
            return await client.send(request, stream=True)
        except httpx.ConnectError:
            raise UpstreamError("Cannot reach upstream API")
        except httpx.TimeoutException:
            raise UpstreamError("Upstream API timed out")
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream error: {e}")

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
