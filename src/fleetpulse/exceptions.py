"""Custom exception hierarchy for fleetpulse."""

from __future__ import annotations


class FleetError(Exception):
    """Base exception for all fleetpulse errors."""


class FleetConfigError(FleetError):
    """Invalid or missing configuration."""


class FleetValidationError(FleetError):
    """Malformed change event or position sample.

    Never fatal: the offending input is dropped and logged.
    """


class StalePositionSample(FleetValidationError):
    """Position sample older than the last accepted one."""


class TransientChannelError(FleetError):
    """Recoverable channel failure (network drop, broker disconnect).

    The subscription manager retries these with backoff.
    """


class FleetTransportError(TransientChannelError):
    """HTTP-level failure (network, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class FatalAuthError(FleetError):
    """Credentials rejected by the REST backend or the broker.

    Raised for HTTP ``401``/``403`` and for MQTT "bad credentials" /
    "not authorized" connect results.  Retrying cannot fix this, so the
    subscription manager halts in ``DISCONNECTED`` and surfaces it.
    """

    def __init__(self, message: str, *, endpoint: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(message)
