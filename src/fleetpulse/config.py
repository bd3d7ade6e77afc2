"""Client configuration for fleetpulse."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from fleetpulse.exceptions import FleetConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env_key: str, value: str, kind: type) -> Any:
    try:
        return kind(value)
    except ValueError as exc:
        raise FleetConfigError(f"{env_key} must be {kind.__name__}, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Client configuration.

    Parameters
    ----------
    rest_url : str
        Base URL of the PostgREST-style API exposing the fleet table
        (e.g. ``"https://example.supabase.co/rest/v1"``).
    api_key : str
        API key sent as ``apikey`` and bearer token.
    table : str
        Name of the fleet entity table.
    active_only_fetch : bool
        Restrict the bulk read to ``is_active = true`` rows.
    request_timeout : float
        Total HTTP timeout in seconds.
    mqtt_host : str
        Broker carrying the live change channel.
    mqtt_port : int
        Broker port.
    mqtt_topic : str
        Topic the table's change notifications are published on.
    mqtt_username, mqtt_password : str or None
        Broker credentials.
    mqtt_tls : bool
        Enable TLS on the broker connection.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    self_id : str or None
        Vehicle id this device broadcasts for (operator role).  ``None``
        disables broadcasting until one is set.
    broadcast_interval : float
        Seconds between position samples.
    min_distance_m : float
        Minimum movement (metres) since the last emitted sample before a
        new position is broadcast.
    max_accuracy_m : float or None
        Samples reporting a worse accuracy radius are dropped as noise.
    reconnect_initial_delay : float
        First backoff delay after a channel drop.
    reconnect_max_delay : float
        Backoff cap.
    reconnect_max_attempts : int
        Consecutive failed reconnects before giving up.  ``0`` retries
        forever.
    """

    rest_url: str = "http://localhost:54321/rest/v1"
    api_key: str = ""
    table: str = "live_fleet"
    active_only_fetch: bool = False
    request_timeout: float = 15.0
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_topic: str = "fleet/live_fleet/changes"
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_tls: bool = False
    mqtt_keepalive: int = 60
    self_id: str | None = None
    broadcast_interval: float = 5.0
    min_distance_m: float = 5.0
    max_accuracy_m: float | None = None
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 0

    def __post_init__(self) -> None:
        if self.broadcast_interval <= 0:
            raise FleetConfigError("broadcast_interval must be positive")
        if self.min_distance_m < 0:
            raise FleetConfigError("min_distance_m must not be negative")
        if self.reconnect_initial_delay <= 0 or self.reconnect_max_delay < self.reconnect_initial_delay:
            raise FleetConfigError("reconnect delays must satisfy 0 < initial <= max")
        if self.reconnect_max_attempts < 0:
            raise FleetConfigError("reconnect_max_attempts must not be negative")

    @classmethod
    def from_env(cls, **overrides: Any) -> FleetConfig:
        """Create configuration from ``FLEET_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "FLEET_REST_URL": "rest_url",
            "FLEET_API_KEY": "api_key",
            "FLEET_TABLE": "table",
            "FLEET_MQTT_HOST": "mqtt_host",
            "FLEET_MQTT_TOPIC": "mqtt_topic",
            "FLEET_MQTT_USERNAME": "mqtt_username",
            "FLEET_MQTT_PASSWORD": "mqtt_password",
            "FLEET_SELF_ID": "self_id",
        }
        _ENV_NUMBER_MAP: dict[str, tuple[str, type]] = {
            "FLEET_MQTT_PORT": ("mqtt_port", int),
            "FLEET_MQTT_KEEPALIVE": ("mqtt_keepalive", int),
            "FLEET_REQUEST_TIMEOUT": ("request_timeout", float),
            "FLEET_BROADCAST_INTERVAL": ("broadcast_interval", float),
            "FLEET_MIN_DISTANCE_M": ("min_distance_m", float),
            "FLEET_MAX_ACCURACY_M": ("max_accuracy_m", float),
            "FLEET_RECONNECT_INITIAL_DELAY": ("reconnect_initial_delay", float),
            "FLEET_RECONNECT_MAX_DELAY": ("reconnect_max_delay", float),
            "FLEET_RECONNECT_MAX_ATTEMPTS": ("reconnect_max_attempts", int),
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, (field_name, kind) in _ENV_NUMBER_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, kind)

        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("FLEET_MQTT_TLS"), False)

        if "active_only_fetch" not in overrides:
            config_kwargs["active_only_fetch"] = _env_bool(env.get("FLEET_ACTIVE_ONLY_FETCH"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
