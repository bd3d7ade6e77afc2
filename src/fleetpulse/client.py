"""High-level async client wiring the fleet engine together."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

import aiohttp

from fleetpulse._mqtt import ChangeChannel, MqttChangeChannel
from fleetpulse._transport import RestTransport, Transport
from fleetpulse.broadcaster import PositionBroadcaster, PositionSource
from fleetpulse.config import FleetConfig
from fleetpulse.exceptions import FatalAuthError, FleetError
from fleetpulse.models.vehicle import VehicleSnapshot
from fleetpulse.projection import ALL_ACTIVE, FleetView, MarkerLayer, ProjectionFilter, project
from fleetpulse.serialization import snapshot_to_json
from fleetpulse.state.events import Rejection
from fleetpulse.state.snapshot import FleetStore
from fleetpulse.state.store import EntityStore
from fleetpulse.subscription import SubscriptionManager, SubscriptionState

_logger = logging.getLogger(__name__)

M = TypeVar("M")


class FleetClient:
    """Async client for the live fleet.

    Usage::

        async with FleetClient(config) as client:
            await client.wait_synced()
            buses = client.project(ProjectionFilter(route_label="15"))

    One client owns one store, one subscription and at most one position
    broadcaster.  Views and the broadcaster come and go with screens/roles;
    the subscription lives as long as the client.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
        channel: ChangeChannel | None = None,
        on_reject: Callable[[Rejection], None] | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport = transport
        self._channel: ChangeChannel = channel if channel is not None else MqttChangeChannel(config, logger=_logger)
        self._store = EntityStore(on_reject=on_reject)
        self._subscription: SubscriptionManager | None = None
        self._broadcaster: PositionBroadcaster | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FleetClient:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = RestTransport(self._config, self._http_session)
        self._subscription = SubscriptionManager(
            self._config,
            transport=self._transport,
            channel=self._channel,
            store=self._store,
        )
        await self._subscription.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop_broadcasting()
        if self._subscription is not None:
            await self._subscription.stop()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_subscription(self) -> SubscriptionManager:
        if self._subscription is None:
            raise FleetError("Client not initialized. Use 'async with FleetClient(...) as client:'")
        return self._subscription

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise FleetError("Client not initialized. Use 'async with FleetClient(...) as client:'")
        return self._transport

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> FleetStore:
        return self._store.get()

    @property
    def state(self) -> SubscriptionState:
        return self._require_subscription().state

    @property
    def is_stale(self) -> bool:
        return self._require_subscription().is_stale

    @property
    def fatal_error(self) -> FatalAuthError | None:
        return self._require_subscription().fatal_error

    async def wait_synced(self, timeout: float | None = None) -> bool:
        return await self._require_subscription().wait_synced(timeout)

    def add_listener(self, listener: Callable[[FleetStore], None]) -> Callable[[], None]:
        return self._require_subscription().add_listener(listener)

    def add_state_listener(self, listener: Callable[[SubscriptionState], None]) -> Callable[[], None]:
        return self._require_subscription().add_state_listener(listener)

    def project(self, flt: ProjectionFilter = ALL_ACTIVE) -> tuple[VehicleSnapshot, ...]:
        return project(self._store.get(), flt)

    def attach_view(self, layer: MarkerLayer[M], flt: ProjectionFilter = ALL_ACTIVE) -> FleetView[M]:
        """Bind a marker layer to the live store; call ``detach()`` on view switch."""
        subscription = self._require_subscription()
        return FleetView(layer, flt, subscribe=subscription.add_listener, initial=self._store.get())

    def snapshot_json(self, flt: ProjectionFilter = ALL_ACTIVE) -> str:
        """JSON blob for the advisory text collaborator."""
        return snapshot_to_json(self._store.get(), flt)

    # ------------------------------------------------------------------
    # Operator role
    # ------------------------------------------------------------------

    @property
    def broadcaster(self) -> PositionBroadcaster | None:
        return self._broadcaster

    def start_broadcasting(self, source: PositionSource, *, self_id: str | None = None) -> PositionBroadcaster:
        """Start publishing this device's position for ``self_id`` (or ``config.self_id``).

        ``source`` is only used when the broadcaster is first created; later
        calls just re-enable it, possibly for a new ``self_id``.
        """
        subscription = self._require_subscription()
        transport = self._require_transport()
        if self._broadcaster is None:
            self._broadcaster = PositionBroadcaster(
                self._config,
                source=source,
                publish=transport.publish_event,
                can_publish=lambda: subscription.is_synced,
            )
        self._broadcaster.enable(self_id)
        return self._broadcaster

    async def stop_broadcasting(self) -> None:
        """Stop the position timer; the fleet subscription stays up."""
        if self._broadcaster is not None:
            await self._broadcaster.disable()
