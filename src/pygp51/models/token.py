"""Authentication token model."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class AuthToken(BaseModel):
    """Token returned after a successful ``login`` action.

    Parameters
    ----------
    token : str
        Bearer token sent as the ``token`` query parameter.
    username : str
        Account the token was issued for.
    raw : dict
        Full login response for access to additional fields.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    username: str
    raw: dict[str, Any]
