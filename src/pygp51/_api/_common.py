"""Shared helpers for GP51 action modules.

This module centralizes the most repeated patterns:
- posting an action through the transport
- mapping a non-zero ``status`` to a typed error carrying the vendor ``cause``

It is internal to pyGP51 and may change at any time.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pygp51._constants import STATUS_OK
from pygp51._normalize import safe_int
from pygp51._transport import Transport
from pygp51.exceptions import Gp51ApiError, Gp51SessionExpiredError

# GP51 has no dedicated status code for a rejected token; the cause text names it.
_TOKEN_REJECTED_MARKERS = (
    "token invalid",
    "invalid token",
    "token expired",
    "token has expired",
    "not login",
    "login again",
)


def _is_token_rejection(cause: str) -> bool:
    lowered = cause.lower()
    return any(marker in lowered for marker in _TOKEN_REJECTED_MARKERS)


def raise_for_status(action: str, response: Mapping[str, Any], *, authenticated: bool = False) -> None:
    """Raise :class:`Gp51ApiError` unless ``response["status"]`` is ``0``.

    For calls made with a token, a cause that reports the token as rejected
    raises :class:`Gp51SessionExpiredError` instead.
    """
    status = safe_int(response.get("status"))
    if status == STATUS_OK:
        return
    cause = str(response.get("cause") or response.get("message") or "")
    error_cls = Gp51SessionExpiredError if authenticated and _is_token_rejection(cause) else Gp51ApiError
    raise error_cls(
        f"{action} failed: status={status} cause={cause}",
        status=status,
        cause=cause,
        action=action,
    )


async def post_action_json(
    transport: Transport,
    action: str,
    params: Mapping[str, Any],
    *,
    token: str | None = None,
) -> dict[str, Any]:
    """Post an action and return its JSON body when ``status == 0``."""
    response = await transport.post_action(action, params, token=token)
    raise_for_status(action, response, authenticated=token is not None)
    return response
