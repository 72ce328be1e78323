import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate comma/space separated hosts.
    if raw.startswith(("[", '"')):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    origins: list[str] = []
    for part in (p for p in re.split(r"[,\s]+", raw) if p):
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part)
        else:
            origins.append(f"http://{part}")
            origins.append(f"https://{part}")
    return list(dict.fromkeys(origins))


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Redis settings. When disabled the in-memory store is used, which only
    # protects a single process.
    redis_enabled: bool = True
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50
    store_timeout_seconds: float = 0.5  # Per-call bound on every store operation

    # Anonymous policy (per client address)
    anonymous_window_ms: int = 60_000
    anonymous_max_requests: int = 100

    # Authenticated policy (per user id)
    authenticated_window_ms: int = 3_600_000
    authenticated_max_requests: int = 500

    # Tighter per-endpoint policies
    auth_rate_limit_paths: list[str] = ["/api/auth"]
    auth_rate_limit_window_ms: int = 900_000
    auth_rate_limit_max_requests: int = 20
    upload_rate_limit_paths: list[str] = ["/api/upload"]
    upload_rate_limit_window_ms: int = 3_600_000
    upload_rate_limit_max_requests: int = 30

    # Paths never rate limited
    rate_limit_exempt_paths: list[str] = ["/health", "/docs", "/openapi.json"]
    rate_limit_headers_enabled: bool = True

    # Brute-force protection
    brute_force_max_attempts: int = 5
    brute_force_base_delay_ms: int = 1_000
    brute_force_max_delay_ms: int = 300_000
    brute_force_window_ms: int = 900_000
    brute_force_lockout_duration_ms: int = 1_800_000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Audit sink
    audit_queue_size: int = 1000

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator(
        "anonymous_window_ms",
        "authenticated_window_ms",
        "auth_rate_limit_window_ms",
        "upload_rate_limit_window_ms",
        "brute_force_window_ms",
        "brute_force_lockout_duration_ms",
    )
    @classmethod
    def validate_window_positive(cls, v: int) -> int:
        """Validate window durations are positive."""
        if v <= 0:
            raise ValueError("Window durations must be positive")
        return v

    @field_validator(
        "anonymous_max_requests",
        "authenticated_max_requests",
        "auth_rate_limit_max_requests",
        "upload_rate_limit_max_requests",
    )
    @classmethod
    def validate_max_requests(cls, v: int) -> int:
        """Validate request limits are not negative."""
        if v < 0:
            raise ValueError("Rate limit values must not be negative")
        return v

    @field_validator("brute_force_max_attempts", "redis_max_connections")
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("store_timeout_seconds")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate the store timeout is positive."""
        if v <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
