"""Client configuration for pygp51."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pygp51._constants import BASE_URL, SESSION_TTL_SECONDS
from pygp51.exceptions import Gp51ConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class Gp51Config:
    """Client configuration.

    Parameters
    ----------
    username : str
        GP51 account name.
    password : str
        GP51 account password. Only its MD5 digest is sent to the API.
    base_url : str
        GP51 host. ``/webapi`` is appended per request.
    supabase_url : str or None
        Supabase project URL (``https://<ref>.supabase.co``). Required for
        the PostgREST store and the realtime change feed.
    supabase_key : str or None
        Supabase anon or service key, sent as ``apikey``.
    access_token : str or None
        JWT of the signed-in application user. Falls back to
        ``supabase_key`` for the ``Authorization`` header.
    app_user_email : str or None
        E-mail of the application user the GP51 session belongs to; used to
        resolve the ``envio_users`` row.
    session_ttl : float
        Local session lifetime in seconds. Defaults to 23 hours.
    request_timeout : float
        Total timeout for a single HTTP request, in seconds.
    retry_attempts : int
        Attempts for network-level failures before giving up.
    retry_delay : float
        Base delay in seconds; doubled after every failed attempt.
    login_from : str
        ``from`` field of the login action.
    login_type : str
        ``type`` field of the login action.
    realtime_heartbeat : float
        Seconds between Phoenix heartbeats on the realtime socket.
    api_trace_enabled : bool
        Enable transport-level request/response tracing callback.
    """

    username: str = ""
    password: str = ""
    base_url: str = BASE_URL
    supabase_url: str | None = None
    supabase_key: str | None = None
    access_token: str | None = None
    app_user_email: str | None = None
    session_ttl: float = SESSION_TTL_SECONDS
    request_timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    login_from: str = "WEB"
    login_type: str = "USER"
    realtime_heartbeat: float = 30.0
    api_trace_enabled: bool = False

    def __post_init__(self) -> None:
        if self.retry_attempts < 1:
            raise Gp51ConfigError("retry_attempts must be >= 1")
        if self.session_ttl <= 0:
            raise Gp51ConfigError("session_ttl must be positive")

    @property
    def webapi_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/webapi"

    def require_supabase(self) -> tuple[str, str]:
        """Return ``(supabase_url, supabase_key)`` or raise if unset."""
        if not self.supabase_url or not self.supabase_key:
            raise Gp51ConfigError("supabase_url and supabase_key are required for persistence")
        return self.supabase_url.rstrip("/"), self.supabase_key

    @classmethod
    def from_env(cls, **overrides: Any) -> Gp51Config:
        """Create configuration from environment variables.

        Reads ``GP51_USERNAME``, ``GP51_PASSWORD``, ``GP51_BASE_URL``,
        ``SUPABASE_URL``, ``SUPABASE_KEY`` and the optional ``GP51_*``
        tuning variables. Explicit keyword arguments override environment
        values.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "GP51_USERNAME": "username",
            "GP51_PASSWORD": "password",
            "GP51_BASE_URL": "base_url",
            "GP51_LOGIN_FROM": "login_from",
            "GP51_LOGIN_TYPE": "login_type",
            "GP51_APP_USER_EMAIL": "app_user_email",
            "SUPABASE_URL": "supabase_url",
            "SUPABASE_KEY": "supabase_key",
            "SUPABASE_ACCESS_TOKEN": "access_token",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_FLOAT_MAP = {
            "GP51_SESSION_TTL": "session_ttl",
            "GP51_REQUEST_TIMEOUT": "request_timeout",
            "GP51_RETRY_DELAY": "retry_delay",
            "GP51_REALTIME_HEARTBEAT": "realtime_heartbeat",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = float(val)

        attempts_env = env.get("GP51_RETRY_ATTEMPTS")
        if attempts_env is not None and "retry_attempts" not in overrides:
            config_kwargs["retry_attempts"] = int(attempts_env)

        if "api_trace_enabled" not in overrides:
            config_kwargs["api_trace_enabled"] = _env_bool(
                env.get("GP51_API_TRACE_ENABLED"),
                False,
            )

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
