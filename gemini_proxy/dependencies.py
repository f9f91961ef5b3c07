"""FastAPI dependency providers for application-owned state.

Everything the request pipeline needs is built once in the app lifespan and
kept on ``app.state``. Routes reach it through these providers, so tests can
swap any piece with ``app.dependency_overrides``.
"""

from fastapi import Request

from gemini_proxy.credentials.pool import CredentialPool
from gemini_proxy.errors import ConfigurationError
from gemini_proxy.proxy.forwarder import UpstreamForwarder
from gemini_proxy.security.auth import AccessGuard
from gemini_proxy.security.ratelimit import RateLimitStore


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise ConfigurationError(f"Proxy not initialised: missing {name}")
    return value


def get_credential_pool(request: Request) -> CredentialPool:
    return _state(request, "credentials")


def get_access_guard(request: Request) -> AccessGuard:
    return _state(request, "access_guard")


def get_rate_limiter(request: Request) -> RateLimitStore:
    return _state(request, "rate_limiter")


def get_forwarder(request: Request) -> UpstreamForwarder:
    return _state(request, "forwarder")
