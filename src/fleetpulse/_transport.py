"""REST transport for the fleet table (bulk read and outbound publish)."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any, Protocol

import aiohttp

from fleetpulse._redact import redact_for_log
from fleetpulse.config import FleetConfig
from fleetpulse.exceptions import FatalAuthError, FleetTransportError, FleetValidationError
from fleetpulse.models.vehicle import payload_to_row
from fleetpulse.state.events import ChangeEvent, ChangeKind

_logger = logging.getLogger(__name__)

_AUTH_STATUSES = frozenset({401, 403})


class Transport(Protocol):
    """Structural transport interface used by the subscription manager and broadcaster.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`RestTransport`) concrete.
    """

    async def fetch_rows(self) -> list[dict[str, Any]]:
        ...

    async def publish_event(self, event: ChangeEvent) -> None:
        ...


class RestTransport:
    """PostgREST-style HTTP transport for the ``live_fleet`` table."""

    def __init__(self, config: FleetConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "accept": "application/json",
            "content-type": "application/json",
        }
        if self._config.api_key:
            headers["apikey"] = self._config.api_key
            headers["authorization"] = f"Bearer {self._config.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        *,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> Any:
        endpoint = f"/{self._config.table}"
        url = f"{self._config.rest_url.rstrip('/')}{endpoint}"
        headers = self._headers()
        if extra_headers:
            headers.update(extra_headers)

        _logger.debug("%s %s params=%s headers=%s", method, url, params, redact_for_log(headers))

        try:
            async with self._http.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                if resp.status in _AUTH_STATUSES:
                    raise FatalAuthError(
                        f"HTTP {resp.status} from {endpoint}: credentials rejected",
                        endpoint=endpoint,
                    )
                if resp.status >= 300:
                    raise FleetTransportError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except (FatalAuthError, FleetTransportError):
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FleetTransportError(
                f"Request to {endpoint} failed: {exc!r}",
                endpoint=endpoint,
            ) from exc

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            raise FleetTransportError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                endpoint=endpoint,
            ) from exc

    async def fetch_rows(self) -> list[dict[str, Any]]:
        """Bulk-read every row of the fleet table."""
        params = {"select": "*"}
        if self._config.active_only_fetch:
            params["is_active"] = "eq.true"
        body = await self._request("GET", params=params)
        if not isinstance(body, list):
            raise FleetTransportError(
                f"Bulk read of /{self._config.table} did not return a list",
                endpoint=f"/{self._config.table}",
            )
        rows = [row for row in body if isinstance(row, dict)]
        _logger.debug("Fetched %d fleet row(s)", len(rows))
        return rows

    async def publish_event(self, event: ChangeEvent) -> None:
        """Write an UPDATE event to the row keyed by ``event.id``.

        This is the only write path: the change comes back to every client,
        this one included, through the live channel.
        """
        if event.kind != ChangeKind.UPDATE or event.payload is None:
            raise FleetValidationError(f"Only UPDATE events with a payload can be published, got {event.kind}")
        row = payload_to_row(event.payload)
        row["updated_at"] = datetime.fromtimestamp(event.timestamp, tz=UTC).isoformat()
        await self._request(
            "PATCH",
            params={"id": f"eq.{event.id}"},
            json_body=row,
            extra_headers={"prefer": "return=minimal"},
        )
