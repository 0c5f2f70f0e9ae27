from __future__ import annotations

from pyfleet._redact import redact_for_log


def test_redact_for_log_redacts_identity_fields() -> None:
    payload = {
        "vehicleId": "V1",
        "driverName": "Ana Rossi",
        "licensePlate": "AB123CD",
        "nested": {"password": "pw", "Authorization": "Bearer x"},
    }

    redacted = redact_for_log(payload)
    assert redacted["vehicleId"] == "V1"
    assert redacted["driverName"] == "<redacted>"
    assert redacted["licensePlate"] == "<redacted>"
    assert redacted["nested"]["password"] == "<redacted>"
    assert redacted["nested"]["Authorization"] == "<redacted>"


def test_redact_for_log_rounds_coordinates() -> None:
    redacted = redact_for_log({"latitude": 45.123456, "lng": 9.98765, "accuracy": 12.3456})
    assert redacted == {"latitude": 45.12, "lng": 9.99, "accuracy": 12.3456}


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_handles_sequences_and_bytes() -> None:
    assert redact_for_log([{"lat": 1.23456}, b"abc"]) == [{"lat": 1.23}, "<bytes:3b>"]
