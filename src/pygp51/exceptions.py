"""Custom exception hierarchy for pygp51."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pygp51.saga import SagaResult


class Gp51Error(Exception):
    """Base exception for all pygp51 errors."""


class Gp51ConfigError(Gp51Error):
    """Invalid or missing configuration."""


class Gp51TransportError(Gp51Error):
    """HTTP-level failure (network, timeout, non-200, invalid JSON).

    Raised after the transport has exhausted its retry attempts for
    network errors; non-200 replies and undecodable bodies are not retried.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        action: str = "",
    ) -> None:
        self.status_code = status_code
        self.action = action
        super().__init__(message)


class Gp51ApiError(Gp51Error):
    """GP51 returned a non-zero ``status`` (application-level error)."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        cause: str = "",
        action: str = "",
    ) -> None:
        self.status = status
        self.cause = cause
        self.action = action
        super().__init__(message)


class Gp51AuthenticationError(Gp51ApiError):
    """Login failed or no usable vendor token is available."""


class Gp51SessionExpiredError(Gp51AuthenticationError):
    """Local session is missing, invalidated or past its expiry.

    Raised *before* a request is sent, so an expired token never reaches
    the vendor API.
    """


class Gp51PersistenceError(Gp51Error):
    """Supabase/PostgREST request failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        table: str = "",
    ) -> None:
        self.status_code = status_code
        self.table = table
        super().__init__(message)


class Gp51RealtimeError(Gp51Error):
    """Realtime change feed could not be joined or dropped unexpectedly."""


class Gp51SagaError(Gp51Error):
    """A multi-step write failed and its completed steps were compensated."""

    def __init__(self, message: str, *, result: SagaResult) -> None:
        self.result = result
        super().__init__(message)
