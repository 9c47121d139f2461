import pytest
from pydantic import ValidationError

from resilience.app.core.config import Settings


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


def test_rate_limit_defaults() -> None:
    settings = Settings(_env_file=None)
    assert settings.auth_rate_limit_window_ms == 900_000
    assert settings.auth_rate_limit_max_requests == 5
    assert settings.api_rate_limit_window_ms == 60_000
    assert settings.api_rate_limit_max_requests == 100
    assert settings.rate_limit_sweep_probability == 0.01
    assert settings.service_token == ""


def test_path_prefixes_from_env(monkeypatch) -> None:
    monkeypatch.setenv("API_RATE_LIMIT_PATH_PREFIXES", "/api, /v2")

    settings = Settings(_env_file=None)
    assert settings.api_rate_limit_path_prefixes == ["/api", "/v2"]


@pytest.mark.parametrize(
    ("env", "value"),
    [
        ("AUTH_RATE_LIMIT_MAX_REQUESTS", "0"),
        ("API_RATE_LIMIT_WINDOW_MS", "-1"),
        ("RATE_LIMIT_SWEEP_PROBABILITY", "1.5"),
        ("WS_RECONNECT_DELAY_SECONDS", "0"),
        ("WS_PATH", "ws"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, env: str, value: str) -> None:
    monkeypatch.setenv(env, value)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_trusted_proxies_default_off(monkeypatch) -> None:
    monkeypatch.delenv("TRUSTED_PROXIES", raising=False)
    assert Settings(_env_file=None).trusted_proxies == []


def test_trusted_proxies_from_env(monkeypatch) -> None:
    monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.1, 172.16.0.0/12")

    settings = Settings(_env_file=None)
    assert settings.trusted_proxies == ["10.0.0.1", "172.16.0.0/12"]
