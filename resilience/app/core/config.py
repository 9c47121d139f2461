import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return [str(v).strip() for v in raw if str(v).strip()]

    raw = str(raw).strip()
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]

    origins: list[str] = []
    for part in re.split(r"[,\s]+", raw.strip("[]")):
        if not part:
            continue
        if part == "*":
            return ["*"]
        if "://" in part:
            candidates = [part]
        else:
            # Browsers send the scheme in the Origin header
            candidates = [f"http://{part}", f"https://{part}"]
        for origin in candidates:
            if origin not in origins:
                origins.append(origin)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Server bind address used by ``resilience-hub``
    host: str = "127.0.0.1"
    port: int = 8000

    # Reverse proxies whose X-Forwarded-For header is honoured (IPs, CIDRs or "*").
    # Empty means the socket peer is always the client address.
    trusted_proxies: Annotated[list[str], NoDecode] = []

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Signed session cookie holding the authenticated identity
    session_secret_key: str = "change-me"
    session_cookie: str = "resilience_session"
    session_max_age: int = 14 * 24 * 3600
    session_https_only: bool = False

    # Shared secret for internal producers (reminder jobs, admin tools).
    # If SERVICE_TOKEN is empty, the internal endpoints are disabled.
    service_token: str = ""

    # Strict limiter guarding authentication endpoints
    auth_rate_limit_window_ms: int = 15 * 60 * 1000
    auth_rate_limit_max_requests: int = 5
    auth_rate_limit_message: str = "Too many authentication attempts"

    # Lenient limiter guarding general API traffic
    api_rate_limit_window_ms: int = 60 * 1000
    api_rate_limit_max_requests: int = 100
    api_rate_limit_message: str = "API rate limit exceeded"
    api_rate_limit_path_prefixes: Annotated[list[str], NoDecode] = ["/api"]

    # Probability of a compaction sweep on each admission check
    rate_limit_sweep_probability: float = 0.01

    # Realtime notification channel
    ws_path: str = "/ws"
    ws_reconnect_delay_seconds: float = 5.0
    ws_heartbeat_interval_seconds: float = 25.0
    ws_pong_timeout_seconds: float = 60.0
    ws_sweep_interval_seconds: float = 30.0
    ws_inactivity_timeout_seconds: float = 300.0

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("api_rate_limit_path_prefixes", "trusted_proxies", mode="before")
    @classmethod
    def decode_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            return [p for p in re.split(r"[,\s]+", v) if p]
        return v

    @field_validator(
        "auth_rate_limit_window_ms",
        "auth_rate_limit_max_requests",
        "api_rate_limit_window_ms",
        "api_rate_limit_max_requests",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("rate_limit_sweep_probability")
    @classmethod
    def validate_sweep_probability(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("rate_limit_sweep_probability must be between 0 and 1")
        return v

    @field_validator(
        "ws_reconnect_delay_seconds",
        "ws_heartbeat_interval_seconds",
        "ws_pong_timeout_seconds",
        "ws_sweep_interval_seconds",
        "ws_inactivity_timeout_seconds",
    )
    @classmethod
    def validate_interval_positive(cls, v: float) -> float:
        """Validate realtime intervals are positive."""
        if v <= 0:
            raise ValueError("Realtime intervals must be positive")
        return v

    @field_validator("ws_path")
    @classmethod
    def validate_ws_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("ws_path must start with '/'")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
