"""State/store layer.

This package is the single source of truth for live per-vehicle state and
the not-yet-persisted trail buffers.  Only the ingestion service's
per-vehicle workers mutate it.
"""
