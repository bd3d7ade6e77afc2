"""Live change channel over MQTT: parsing and runtime helpers."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from fleetpulse.config import FleetConfig
from fleetpulse.exceptions import FatalAuthError, FleetValidationError, TransientChannelError

# CONNACK reason codes meaning "your credentials are wrong" (MQTT 3.1.1 and 5).
_AUTH_REASON_CODES = frozenset({4, 5, 134, 135})


@dataclass(frozen=True)
class ChannelMessage:
    """One decoded change notification from the live channel."""

    topic: str
    payload: dict[str, Any]
    received_at: float


def decode_channel_payload(payload: bytes) -> dict[str, Any]:
    """Parse MQTT payload bytes into a JSON object."""
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FleetValidationError("Channel payload is not UTF-8 JSON") from exc
    if not isinstance(parsed, dict):
        raise FleetValidationError("Channel payload decoded to non-object JSON")
    return parsed


class ChangeChannel(Protocol):
    """Subscribe side of the live change channel.

    ``open`` resolves once the subscription is live and raises
    :class:`TransientChannelError` or :class:`FatalAuthError` otherwise.
    After that, ``on_drop`` is called (on the event loop) if the connection
    is lost.
    """

    async def open(
        self,
        on_message: Callable[[ChannelMessage], None],
        on_drop: Callable[[Exception], None],
    ) -> None:
        ...

    async def close(self) -> None:
        ...


class MqttChangeChannel:
    """Threaded paho-mqtt runtime that emits parsed messages onto an asyncio loop."""

    def __init__(
        self,
        config: FleetConfig,
        *,
        connect_timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._connect_timeout = connect_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    async def open(
        self,
        on_message: Callable[[ChannelMessage], None],
        on_drop: Callable[[Exception], None],
    ) -> None:
        """Connect, subscribe and start the network loop."""
        await self.close()
        loop = asyncio.get_running_loop()
        connected: asyncio.Future[None] = loop.create_future()
        topic = self._config.mqtt_topic

        def _resolve(exc: Exception | None) -> None:
            if connected.done():
                return
            if exc is None:
                connected.set_result(None)
            else:
                connected.set_exception(exc)

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if self._config.mqtt_username:
            client.username_pw_set(self._config.mqtt_username, self._config.mqtt_password)
        if self._config.mqtt_tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            code = getattr(reason_code, "value", reason_code)
            if code != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                exc: Exception
                if code in _AUTH_REASON_CODES:
                    exc = FatalAuthError(f"Broker rejected credentials: {reason_code}")
                else:
                    exc = TransientChannelError(f"Broker refused connection: {reason_code}")
                loop.call_soon_threadsafe(_resolve, exc)
                return
            self._logger.debug("MQTT connected, subscribing topic=%s", topic)
            c.subscribe(topic, qos=1)
            loop.call_soon_threadsafe(_resolve, None)

        def _handle_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                payload = decode_channel_payload(msg.payload)
            except FleetValidationError:
                self._logger.warning("Dropping undecodable message on %s", msg.topic, exc_info=True)
                return
            message = ChannelMessage(topic=msg.topic, payload=payload, received_at=time.time())
            loop.call_soon_threadsafe(on_message, message)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if not self._running:
                return
            self._logger.info("MQTT disconnected: %s", reason_code)
            loop.call_soon_threadsafe(on_drop, TransientChannelError(f"Channel dropped: {reason_code}"))

        client.on_connect = on_connect
        client.on_message = _handle_message
        client.on_disconnect = on_disconnect

        try:
            await loop.run_in_executor(
                None,
                lambda: client.connect(self._config.mqtt_host, self._config.mqtt_port, keepalive=self._config.mqtt_keepalive),
            )
        except OSError as exc:
            raise TransientChannelError(
                f"Cannot reach broker {self._config.mqtt_host}:{self._config.mqtt_port}: {exc}"
            ) from exc

        client.loop_start()
        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

        try:
            await asyncio.wait_for(connected, self._connect_timeout)
        except TimeoutError as exc:
            await self.close()
            raise TransientChannelError("Timed out waiting for broker CONNACK") from exc
        except (FatalAuthError, TransientChannelError):
            await self.close()
            raise

    def _stop(self) -> None:
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    async def close(self) -> None:
        """Stop and disconnect the current MQTT client if running."""
        if self._client is None:
            return
        await asyncio.get_running_loop().run_in_executor(None, self._stop)
