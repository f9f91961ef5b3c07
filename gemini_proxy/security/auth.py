"""Access password check and client identification.

The proxy can be protected by a single shared password (PASSWORD env var).
Callers supply it as ``?password=``, an ``X-Password`` header, or a
``Bearer`` token. A bearer value that looks like a Gemini key is ignored so
that clients passing their own API key are not mistaken for password holders.
"""

import hmac

from fastapi import Request

from gemini_proxy.credentials.pool import CREDENTIAL_PREFIX
from gemini_proxy.errors import AuthenticationError

PASSWORD_QUERY_PARAM = "password"
PASSWORD_HEADER = "x-password"


def extract_password(request: Request) -> str | None:
    """Pull a candidate password from query, header, then bearer token."""
    from_query = request.query_params.get(PASSWORD_QUERY_PARAM)
    if from_query:
        return from_query

    from_header = request.headers.get(PASSWORD_HEADER)
    if from_header:
        return from_header

    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer ") and CREDENTIAL_PREFIX not in auth_header:
        return auth_header[len("Bearer "):]

    return None


class AccessGuard:
    """Shared-secret gate in front of the proxy. Open when no password is set."""

    def __init__(self, password: str = ""):
        self._password = password

    @property
    def enabled(self) -> bool:
        return bool(self._password)

    def check(self, request: Request) -> bool:
        if not self._password:
            return True

        candidate = extract_password(request)
        if not candidate:
            return False
        return hmac.compare_digest(candidate.encode(), self._password.encode())

    def verify(self, request: Request) -> None:
        """Raise AuthenticationError unless ``check`` passes."""
        if not self.check(request):
            raise AuthenticationError("Invalid or missing password")


def get_client_ip(request: Request) -> str:
    """Rate-limit key for a request: forwarded-for, real-ip, then peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else "unknown"
