"""Internal MQTT location-feed runtime."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, cast

import paho.mqtt.client as mqtt

from pyfleet.exceptions import FleetError

if TYPE_CHECKING:  # pragma: no cover - import for type checkers only
    from pyfleet.config import MqttSettings


def vehicle_id_from_topic(topic: str, pattern: str) -> str | None:
    """Extract the ``+`` segment of *topic* matched by a one-wildcard *pattern*.

    ``vehicle_id_from_topic("fleet/V1/location", "fleet/+/location") == "V1"``
    """
    topic_parts = topic.split("/")
    pattern_parts = pattern.split("/")
    if len(topic_parts) != len(pattern_parts) or pattern_parts.count("+") != 1:
        return None
    found: str | None = None
    for actual, expected in zip(topic_parts, pattern_parts, strict=True):
        if expected == "+":
            found = actual
        elif actual != expected:
            return None
    return found or None


def decode_location_payload(payload: bytes, *, topic: str = "", pattern: str = "") -> dict[str, Any]:
    """Parse an MQTT payload into a location-report dict.

    When the payload omits ``vehicleId`` it is taken from the topic.
    """
    parsed = json.loads(payload.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise FleetError("MQTT payload is not a JSON object")
    if not parsed.get("vehicleId") and topic and pattern:
        vehicle_id = vehicle_id_from_topic(topic, pattern)
        if vehicle_id:
            parsed["vehicleId"] = vehicle_id
    return parsed


class FleetMqttRuntime:
    """Threaded paho-mqtt runtime that emits parsed payloads onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_payload: Callable[[dict[str, Any]], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_payload = on_payload
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._topic: str | None = None

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Decode one message and hand it to the loop; bad payloads are dropped."""
        try:
            parsed = decode_location_payload(payload, topic=topic, pattern=self._topic or "")
        except (ValueError, UnicodeDecodeError, FleetError):
            self._logger.debug("MQTT payload parse failure topic=%s", topic, exc_info=True)
            return
        self._loop.call_soon_threadsafe(self._on_payload, parsed)

    def start(self, settings: MqttSettings) -> None:
        """Connect and subscribe with the provided broker settings."""
        self.stop()
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s topic=%s client_id=%s",
            settings.host,
            settings.port,
            settings.topic,
            settings.client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if settings.username:
            client.username_pw_set(settings.username, settings.password)
        if settings.tls:
            client.tls_set()

        self._topic = settings.topic

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected successfully reason=%s", reason_code)
            if self._topic:
                self._logger.debug("MQTT subscribing topic=%s", self._topic)
                c.subscribe(self._topic, qos=1)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self.handle_message(msg.topic, msg.payload)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(settings.host, settings.port, keepalive=settings.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._topic = None

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
