"""HTTP transport for the GP51 ``/webapi`` action endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import aiohttp

from pygp51._constants import USER_AGENT
from pygp51._redact import redact_for_log
from pygp51.config import Gp51Config
from pygp51.exceptions import Gp51TransportError

_logger = logging.getLogger(__name__)

TraceCallback = Callable[[dict[str, Any]], None]


class Transport(Protocol):
    """Structural transport interface used by endpoint modules.

    Having a protocol here makes it easy to pass test doubles/mocks while
    keeping the production implementation (`HttpTransport`) concrete.
    """

    async def post_action(
        self,
        action: str,
        params: Mapping[str, Any],
        *,
        token: str | None = None,
    ) -> dict[str, Any]: ...


class HttpTransport:
    """POSTs GP51 actions as JSON, retrying network-level failures."""

    def __init__(
        self,
        config: Gp51Config,
        http_session: aiohttp.ClientSession,
        *,
        on_trace: TraceCallback | None = None,
    ) -> None:
        self._config = config
        self._http = http_session
        self._on_trace = on_trace if config.api_trace_enabled else None
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _trace(self, entry: dict[str, Any]) -> None:
        if self._on_trace is None:
            return
        try:
            self._on_trace(redact_for_log(entry))
        except Exception:
            _logger.debug("API trace callback failed", exc_info=True)

    async def _post_once(self, action: str, query: dict[str, str], body: str) -> str:
        headers = {
            "accept": "application/json",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        async with self._http.post(
            self._config.webapi_url,
            params=query,
            data=body,
            headers=headers,
            timeout=self._timeout,
        ) as resp:
            text = await resp.text()
            if resp.status != 200:
                raise Gp51TransportError(
                    f"HTTP {resp.status} from {action}: {text[:200]}",
                    status_code=resp.status,
                    action=action,
                )
            return text

    async def post_action(
        self,
        action: str,
        params: Mapping[str, Any],
        *,
        token: str | None = None,
    ) -> dict[str, Any]:
        """Send one GP51 action and return the decoded JSON object.

        The token goes in the query string only; it is stripped from the
        body if a caller put it there.
        """
        query: dict[str, str] = {"action": action}
        if token:
            query["token"] = token
        payload = {k: v for k, v in params.items() if k != "token"}
        body = json.dumps(payload, separators=(",", ":"))

        _logger.debug("POST %s action=%s body=%s", self._config.webapi_url, action, redact_for_log(payload))

        attempts = self._config.retry_attempts
        text = ""
        for attempt in range(1, attempts + 1):
            try:
                text = await self._post_once(action, query, body)
                break
            except Gp51TransportError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt >= attempts:
                    raise Gp51TransportError(
                        f"Request {action} failed after {attempts} attempts: {exc!r}",
                        action=action,
                    ) from exc
                delay = self._config.retry_delay * (2 ** (attempt - 1))
                _logger.warning(
                    "GP51 %s failed (attempt %d/%d), retrying in %.1fs: %r",
                    action,
                    attempt,
                    attempts,
                    delay,
                    exc,
                )
                if delay > 0:
                    await asyncio.sleep(delay)

        try:
            result = json.loads(text)
        except json.JSONDecodeError as exc:
            raise Gp51TransportError(
                f"Invalid JSON from {action}: {text[:200]}",
                action=action,
            ) from exc

        if not isinstance(result, dict):
            raise Gp51TransportError(
                f"Expected JSON object from {action}, got {type(result).__name__}",
                action=action,
            )

        self._trace({"action": action, "request": payload, "response": result})
        return result
