import pytest
from pydantic import ValidationError

from shield.app.core.config import Settings
from shield.app.core.redis import create_counter_store
from shield.app.core.store import InMemoryCounterStore, RedisCounterStore
from shield.app.main import build_policies


def test_defaults_match_documented_policies() -> None:
    settings = Settings(_env_file=None)

    assert settings.anonymous_window_ms == 60_000
    assert settings.anonymous_max_requests == 100
    assert settings.authenticated_window_ms == 3_600_000
    assert settings.authenticated_max_requests == 500
    assert settings.brute_force_max_attempts == 5
    assert settings.brute_force_lockout_duration_ms == 1_800_000


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("ANONYMOUS_MAX_REQUESTS", "7")
    monkeypatch.setenv("BRUTE_FORCE_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("REDIS_ENABLED", "false")

    settings = Settings(_env_file=None)

    assert settings.anonymous_max_requests == 7
    assert settings.brute_force_max_attempts == 3
    assert settings.redis_enabled is False


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("ANONYMOUS_WINDOW_MS", "0"),
        ("AUTH_RATE_LIMIT_MAX_REQUESTS", "-1"),
        ("BRUTE_FORCE_MAX_ATTEMPTS", "0"),
        ("STORE_TIMEOUT_SECONDS", "0"),
    ],
)
def test_invalid_values_rejected(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_cors_origins_accepts_host_without_json(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ORIGINS", "43.163.94.63")

    settings = Settings(_env_file=None)
    assert "http://43.163.94.63" in settings.cors_origins


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('["http://localhost:5173"]', ["http://localhost:5173"]),
        ("*", ["*"]),
        ("[]", []),
        ("", []),
    ],
)
def test_cors_origins_parsing_variants(monkeypatch, raw: str, expected: list[str]) -> None:
    monkeypatch.setenv("CORS_ORIGINS", raw)

    settings = Settings(_env_file=None)
    assert settings.cors_origins == expected


def test_build_policies_uses_distinct_prefixes() -> None:
    policies = build_policies(Settings(_env_file=None))

    assert set(policies) == {"anonymous", "authenticated", "auth", "upload"}
    assert len({p.key_prefix for p in policies.values()}) == 4
    assert policies["auth"].max_requests == 20


def test_create_counter_store_backends() -> None:
    assert isinstance(create_counter_store("memory"), InMemoryCounterStore)
    assert isinstance(create_counter_store("redis", "redis://localhost:6379/0"), RedisCounterStore)
