"""Base model shared by all pyfleet data models.

Every model inherits from :class:`FleetBaseModel` which provides:

* ``alias_generator=to_camel`` so camelCase producer/consumer keys map
  automatically to snake_case fields (and dump back with ``by_alias``).
* A ``model_validator(mode="before")`` that strips placeholder values
  (``""``, ``"--"``, NaN) so the field default is used.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from pyfleet.ingestion.normalize import parse_timestamp

# Placeholder strings producers send for "not available".
_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})

UtcTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Datetime coerced to aware UTC from datetimes, ISO strings or epoch s/ms."""

OptionalUtcTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]


class FleetBaseModel(BaseModel):
    """Base for pyfleet models.

    Handles:
    * camelCase → snake_case via ``alias_generator=to_camel``
    * placeholder values → dropped so the field default is used instead
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_placeholder_values(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        return FleetBaseModel._clean_dict(values)
