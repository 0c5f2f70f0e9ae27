from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from pyfleet._mqtt import FleetMqttRuntime, decode_location_payload, vehicle_id_from_topic
from pyfleet.exceptions import FleetError
from pyfleet.service import IngestionService


class _RecordingLoop:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, tuple[Any, ...]]] = []

    def call_soon_threadsafe(self, callback: Any, *args: Any) -> None:
        self.calls.append((callback, args))


def test_vehicle_id_from_topic() -> None:
    assert vehicle_id_from_topic("fleet/V1/location", "fleet/+/location") == "V1"
    assert vehicle_id_from_topic("fleet/V1/status", "fleet/+/location") is None
    assert vehicle_id_from_topic("fleet/V1", "fleet/+/location") is None
    assert vehicle_id_from_topic("fleet/V1/location", "fleet/#") is None


def test_decode_fills_vehicle_id_from_topic() -> None:
    payload = json.dumps({"companyId": "C1", "latitude": 1.0, "longitude": 2.0}).encode()
    decoded = decode_location_payload(payload, topic="fleet/V7/location", pattern="fleet/+/location")
    assert decoded["vehicleId"] == "V7"


def test_decode_keeps_explicit_vehicle_id() -> None:
    payload = json.dumps({"vehicleId": "V1"}).encode()
    decoded = decode_location_payload(payload, topic="fleet/V7/location", pattern="fleet/+/location")
    assert decoded["vehicleId"] == "V1"


def test_decode_rejects_non_objects() -> None:
    with pytest.raises(FleetError):
        decode_location_payload(b"[1, 2]")
    with pytest.raises(ValueError):
        decode_location_payload(b"not json")


def test_handle_message_hands_payload_to_loop() -> None:
    loop = _RecordingLoop()
    received: list[dict[str, Any]] = []
    runtime = FleetMqttRuntime(loop=loop, on_payload=received.append)  # type: ignore[arg-type]

    runtime.handle_message("fleet/V1/location", json.dumps({"vehicleId": "V1"}).encode())
    runtime.handle_message("fleet/V1/location", b"\xff\xfe")
    runtime.handle_message("fleet/V1/location", b"42")

    assert len(loop.calls) == 1
    callback, args = loop.calls[0]
    callback(*args)
    assert received == [{"vehicleId": "V1"}]
    assert not runtime.is_running


@pytest.mark.asyncio
async def test_service_routes_mqtt_payloads_through_submit() -> None:
    async with IngestionService(start_ticker=False) as service:
        runtime = FleetMqttRuntime(loop=asyncio.get_running_loop(), on_payload=service._on_mqtt_payload)
        runtime.handle_message("fleet/V1/location", json.dumps({"vehicleId": "V1"}).encode())
        await asyncio.sleep(0)
        assert service.stats.received == 1
        assert service.stats.dropped  # missing company id is malformed
