"""Ingestion layer.

This package contains the reporting-side sample filter, boundary
normalisation and drop accounting.  Transport adapters (HTTP, MQTT) hand
their payloads to :class:`pyfleet.service.IngestionService`, which uses
these helpers before anything reaches the state layer.
"""

__all__: list[str] = []
