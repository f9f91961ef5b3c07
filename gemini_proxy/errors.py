"""Error taxonomy for the proxy.

Every recoverable failure in the request pipeline is a ``ProxyError``
subclass. The request boundary renders them into the JSON envelope::

    {"error": {"code": "...", "message": "...", "status": 400}}
"""

from http import HTTPStatus


class ProxyError(Exception):
    """Base class for errors surfaced to callers as an error envelope."""

    code = "HANDLER_ERROR"
    status_code = 500

    def __init__(self, message: str, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.headers = headers or {}

    def to_envelope(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status_code,
            }
        }


class ConfigurationError(ProxyError):
    """Startup configuration is unusable; the process must not serve traffic."""

    code = "CONFIGURATION_ERROR"


class AuthenticationError(ProxyError):
    code = "AUTHENTICATION_FAILED"
    status_code = 401


class PathValidationError(ProxyError):
    code = "INVALID_PATH"
    status_code = 400


class RateLimitError(ProxyError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429


class CredentialError(ProxyError):
    code = "INVALID_API_KEY"


class UpstreamError(ProxyError):
    """Network or transport failure while talking to the upstream API. Not retried."""

    code = "PROXY_ERROR"


class RoutingError(ProxyError):
    """Rejected by the framework router, e.g. a method no route accepts."""

    def __init__(self, status_code: int, message: str, headers: dict[str, str] | None = None) -> None:
        super().__init__(message, headers)
        self.status_code = status_code
        self.code = HTTPStatus(status_code).name
