from __future__ import annotations

import pytest

from pygp51.config import Gp51Config
from pygp51.exceptions import Gp51ConfigError


def test_from_env_reads_gp51_and_supabase_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GP51_USERNAME", "octopus")
    monkeypatch.setenv("GP51_PASSWORD", "secret")
    monkeypatch.setenv("GP51_BASE_URL", "https://gp51.example.com/")
    monkeypatch.setenv("SUPABASE_URL", "https://proj.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "anon")
    monkeypatch.setenv("GP51_SESSION_TTL", "3600")
    monkeypatch.setenv("GP51_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("GP51_API_TRACE_ENABLED", "yes")

    config = Gp51Config.from_env()

    assert config.username == "octopus"
    assert config.webapi_url == "https://gp51.example.com/webapi"
    assert config.session_ttl == 3600.0
    assert config.retry_attempts == 5
    assert config.api_trace_enabled is True
    assert config.require_supabase() == ("https://proj.supabase.co", "anon")


def test_from_env_overrides_win(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GP51_USERNAME", "from-env")
    monkeypatch.setenv("GP51_RETRY_ATTEMPTS", "5")

    config = Gp51Config.from_env(username="explicit", retry_attempts=2)

    assert config.username == "explicit"
    assert config.retry_attempts == 2


def test_defaults() -> None:
    config = Gp51Config()

    assert config.session_ttl == 23 * 3600
    assert config.login_from == "WEB"
    assert config.login_type == "USER"
    assert config.webapi_url == "https://www.gps51.com/webapi"


@pytest.mark.parametrize("kwargs", [{"retry_attempts": 0}, {"session_ttl": 0}])
def test_invalid_values_rejected(kwargs: dict[str, float]) -> None:
    with pytest.raises(Gp51ConfigError):
        Gp51Config(**kwargs)  # type: ignore[arg-type]


def test_require_supabase_without_settings() -> None:
    with pytest.raises(Gp51ConfigError):
        Gp51Config().require_supabase()
