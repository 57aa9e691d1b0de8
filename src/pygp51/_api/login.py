"""Login / logout actions.

Actions:
  - login
  - logout
"""

from __future__ import annotations

import logging
from typing import Any

from pygp51._api._common import post_action_json
from pygp51._constants import STATUS_OK
from pygp51._hashing import is_md5_hex, md5_hex
from pygp51._normalize import safe_int
from pygp51._redact import redact_for_log
from pygp51._transport import Transport
from pygp51.config import Gp51Config
from pygp51.exceptions import Gp51ApiError, Gp51AuthenticationError
from pygp51.models.token import AuthToken

_logger = logging.getLogger(__name__)


def build_login_params(
    config: Gp51Config,
    username: str | None = None,
    password: str | None = None,
) -> dict[str, str]:
    """Build the body of the ``login`` action.

    The password is sent as its lowercase MD5 digest; a value that already
    is a digest is passed through unchanged.
    """
    user = (username if username is not None else config.username).strip()
    secret = password if password is not None else config.password
    if not user or not secret:
        raise Gp51AuthenticationError("username and password are required", action="login")
    hashed = secret.strip().lower() if is_md5_hex(secret) else md5_hex(secret)
    return {
        "username": user,
        "password": hashed,
        "from": config.login_from,
        "type": config.login_type,
    }


def parse_login_response(response: dict[str, Any], username: str) -> AuthToken:
    """Parse a ``login`` response into an :class:`AuthToken`.

    Raises
    ------
    Gp51AuthenticationError
        If the status is non-zero or the token is missing.
    """
    status = safe_int(response.get("status"))
    if status != STATUS_OK:
        cause = str(response.get("cause") or response.get("message") or "Invalid credentials")
        raise Gp51AuthenticationError(
            f"Login failed: status={status} cause={cause}",
            status=status,
            cause=cause,
            action="login",
        )

    token = response.get("token")
    if not isinstance(token, str) or not token:
        raise Gp51AuthenticationError("Login response missing token", status=status, action="login")

    _logger.debug("GP51 login response parsed=%s", redact_for_log(response))
    return AuthToken(
        token=token,
        username=str(response.get("username") or username),
        raw=response,
    )


async def login(
    config: Gp51Config,
    transport: Transport,
    username: str | None = None,
    password: str | None = None,
) -> AuthToken:
    """Authenticate and return the vendor token."""
    params = build_login_params(config, username, password)
    response = await transport.post_action("login", params)
    return parse_login_response(response, params["username"])


async def logout(transport: Transport, token: str) -> None:
    """Invalidate *token* on the vendor side."""
    try:
        await post_action_json(transport, "logout", {}, token=token)
    except Gp51ApiError as exc:
        raise Gp51AuthenticationError(
            str(exc),
            status=exc.status,
            cause=exc.cause,
            action="logout",
        ) from exc
