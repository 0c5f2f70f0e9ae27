"""Service configuration for pyfleet."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyfleet._constants import (
    AUTO_SAVE_INTERVAL_SECONDS,
    AUTO_SAVE_MIN_POINTS,
    DEBOUNCE_SECONDS,
    DEFAULT_HISTORY_LIMIT,
    MAX_ACCURACY_METERS,
    MIN_DISTANCE_METERS,
    MIN_ROUTE_DISTANCE_KM,
    MIN_UPDATE_INTERVAL_SECONDS,
    ONLINE_WINDOW_SECONDS,
    PERSIST_TIMEOUT_SECONDS,
    STATE_RETENTION_SECONDS,
    STALE_AFTER_SECONDS,
    TICK_INTERVAL_SECONDS,
    TRAIL_MIN_SPACING_SECONDS,
)
from pyfleet.exceptions import FleetConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Broker connection for the MQTT location feed."""

    host: str = "localhost"
    port: int = 1883
    topic: str = "fleet/+/location"
    client_id: str = "pyfleet-ingest"
    username: str | None = None
    password: str | None = None
    keepalive: int = 60
    tls: bool = False


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Ingestion and history configuration.

    Parameters
    ----------
    max_accuracy_m : float
        Samples with a worse accuracy radius are dropped.
    min_update_interval_s : float
        Minimum time between two accepted samples of one reporter.
    min_distance_m : float
        Minimum movement between two accepted samples of one reporter.
    debounce_s : float
        Minimum gap between filter evaluations on the ingestion channel.
    online_window_s : float
        Vehicles updated more recently than this are *online*.
    stale_after_s : float
        Vehicles not updated for this long are *offline* and leave the
        live fleet.
    trail_spacing_s : float
        Minimum spacing between buffered trail points.
    auto_save_min_points : int
        Points needed before a trail may be auto-saved.
    auto_save_interval_s : float
        Minimum time between two auto-saves of one vehicle.
    min_route_distance_km : float
        Shorter trails are discarded instead of saved.
    carry_forward : bool
        Keep the last point of a discarded trail as the seed of the next.
    tick_interval_s : float
        How often every vehicle's trail is evaluated.
    state_retention_s : float
        Vehicles silent for longer than this are dropped from the live
        fleet entirely.
    history_limit : int
        Default page size of route history queries.
    persist_timeout_s : float
        Timeout for a single repository write.
    database_path : str or None
        SQLite file for route history; ``None`` keeps history in memory.
    mqtt_enabled : bool
        Start the MQTT location subscriber.
    mqtt : MqttSettings
        Broker settings.
    """

    max_accuracy_m: float = MAX_ACCURACY_METERS
    min_update_interval_s: float = MIN_UPDATE_INTERVAL_SECONDS
    min_distance_m: float = MIN_DISTANCE_METERS
    debounce_s: float = DEBOUNCE_SECONDS
    online_window_s: float = ONLINE_WINDOW_SECONDS
    stale_after_s: float = STALE_AFTER_SECONDS
    trail_spacing_s: float = TRAIL_MIN_SPACING_SECONDS
    auto_save_min_points: int = AUTO_SAVE_MIN_POINTS
    auto_save_interval_s: float = AUTO_SAVE_INTERVAL_SECONDS
    min_route_distance_km: float = MIN_ROUTE_DISTANCE_KM
    carry_forward: bool = False
    tick_interval_s: float = TICK_INTERVAL_SECONDS
    state_retention_s: float = STATE_RETENTION_SECONDS
    history_limit: int = DEFAULT_HISTORY_LIMIT
    persist_timeout_s: float = PERSIST_TIMEOUT_SECONDS
    database_path: str | None = None
    mqtt_enabled: bool = False
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        if self.online_window_s >= self.stale_after_s:
            raise FleetConfigError("online_window_s must be shorter than stale_after_s")
        if self.auto_save_min_points < 2:
            raise FleetConfigError("auto_save_min_points must be at least 2")
        if self.tick_interval_s <= 0:
            raise FleetConfigError("tick_interval_s must be positive")
        if self.state_retention_s < self.stale_after_s:
            raise FleetConfigError("state_retention_s must not be shorter than stale_after_s")
        if self.history_limit <= 0:
            raise FleetConfigError("history_limit must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> FleetConfig:
        """Create configuration from ``PYFLEET_*`` environment variables.

        Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        FleetConfig
            Populated configuration.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "PYFLEET_MQTT_HOST": ("host", str),
            "PYFLEET_MQTT_PORT": ("port", int),
            "PYFLEET_MQTT_TOPIC": ("topic", str),
            "PYFLEET_MQTT_CLIENT_ID": ("client_id", str),
            "PYFLEET_MQTT_USERNAME": ("username", str),
            "PYFLEET_MQTT_PASSWORD": ("password", str),
            "PYFLEET_MQTT_KEEPALIVE": ("keepalive", int),
        }
        try:
            for env_key, (field_name, cast) in _ENV_MQTT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    mqtt_kwargs[field_name] = cast(val)
        except ValueError as exc:
            raise FleetConfigError(f"invalid MQTT setting: {exc}") from exc
        mqtt_kwargs["tls"] = _env_bool(env.get("PYFLEET_MQTT_TLS"), False)

        # Allow overriding broker fields via a nested dict
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttSettings):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        _ENV_NUMERIC_MAP = {
            "PYFLEET_MAX_ACCURACY_M": ("max_accuracy_m", float),
            "PYFLEET_MIN_UPDATE_INTERVAL_S": ("min_update_interval_s", float),
            "PYFLEET_MIN_DISTANCE_M": ("min_distance_m", float),
            "PYFLEET_DEBOUNCE_S": ("debounce_s", float),
            "PYFLEET_ONLINE_WINDOW_S": ("online_window_s", float),
            "PYFLEET_STALE_AFTER_S": ("stale_after_s", float),
            "PYFLEET_TRAIL_SPACING_S": ("trail_spacing_s", float),
            "PYFLEET_AUTO_SAVE_MIN_POINTS": ("auto_save_min_points", int),
            "PYFLEET_AUTO_SAVE_INTERVAL_S": ("auto_save_interval_s", float),
            "PYFLEET_MIN_ROUTE_DISTANCE_KM": ("min_route_distance_km", float),
            "PYFLEET_TICK_INTERVAL_S": ("tick_interval_s", float),
            "PYFLEET_STATE_RETENTION_S": ("state_retention_s", float),
            "PYFLEET_HISTORY_LIMIT": ("history_limit", int),
            "PYFLEET_PERSIST_TIMEOUT_S": ("persist_timeout_s", float),
        }
        config_kwargs: dict[str, Any] = {"mqtt": MqttSettings(**mqtt_kwargs)}
        for env_key, (field_name, cast) in _ENV_NUMERIC_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = cast(val)
                except ValueError as exc:
                    raise FleetConfigError(f"{env_key} is not a valid number: {val!r}") from exc

        db_env = env.get("PYFLEET_DATABASE_PATH")
        if db_env and "database_path" not in overrides:
            config_kwargs["database_path"] = db_env

        if "carry_forward" not in overrides:
            config_kwargs["carry_forward"] = _env_bool(env.get("PYFLEET_CARRY_FORWARD"), False)

        if "mqtt_enabled" not in overrides:
            config_kwargs["mqtt_enabled"] = _env_bool(env.get("PYFLEET_MQTT_ENABLED"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
