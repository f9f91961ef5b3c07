"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Upstream credential pool
    # Comma-separated Gemini API keys; API_KEYS is read only when GEMINI_API_KEYS is empty
    gemini_api_keys: str = ""
    api_keys: str = ""

    # Optional access password for callers (empty = open access)
    password: str = ""

    # Fixed-window rate limiting, per client IP
    rate_limit_requests: int = 100
    rate_limit_window_ms: int = 60000
    rate_limit_sweep_interval_ms: int = 60000

    # Upstream Gemini API
    upstream_base_url: str = "https://generativelanguage.googleapis.com"
    upstream_timeout_seconds: float = 300.0  # streamed generations can run long
    upstream_connect_timeout_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def api_keys_list(self) -> list[str]:
        """Parse the comma-separated credential list, dropping blanks."""
        raw = self.gemini_api_keys or self.api_keys
        return [k.strip() for k in raw.split(",") if k.strip()]

    @property
    def password_protected(self) -> bool:
        return bool(self.password)


@lru_cache
def get_settings() -> Settings:
    return Settings()
