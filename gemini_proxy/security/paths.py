"""Allow-list of upstream Gemini endpoints.

Only paths matching one of the patterns below are proxied; anything else is
rejected before a credential is spent on it. Patterns are anchored with
``fullmatch`` so trailing segments never slip through.
"""

import re

API_VERSIONS = ("v1beta", "v1")

# Route params arrive percent-decoded; a "?" or "#" here would re-split the
# upstream URL
_MODEL = r"[^/:?#]+"

# (path template shown on /status, regex fragment after /{version}/)
_ENDPOINTS: list[tuple[str, str]] = [
    ("models", r"models"),                                             # list models
    ("models/{model}", r"models/[^/?#]+"),                             # get model
    ("models/{model}:generateContent", rf"models/{_MODEL}:generateContent"),
    ("models/{model}:streamGenerateContent", rf"models/{_MODEL}:streamGenerateContent"),
    ("models/{model}:countTokens", rf"models/{_MODEL}:countTokens"),
    ("models/{model}:embedContent", rf"models/{_MODEL}:embedContent"),
    ("models/{model}:batchEmbedContents", rf"models/{_MODEL}:batchEmbedContents"),
]

_PATTERNS: list[re.Pattern] = [
    re.compile(rf"/{version}/{fragment}")
    for version in API_VERSIONS
    for _, fragment in _ENDPOINTS
]

STREAM_MARKER = "streamGenerateContent"


def is_allowed(path: str) -> bool:
    """True iff ``path`` matches one of the supported endpoint shapes exactly."""
    return any(pattern.fullmatch(path) for pattern in _PATTERNS)


def is_stream_path(path: str) -> bool:
    return STREAM_MARKER in path


def supported_paths() -> list[str]:
    return [f"/{version}/{template}" for version in API_VERSIONS for template, _ in _ENDPOINTS]
