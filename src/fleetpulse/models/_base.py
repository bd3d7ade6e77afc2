"""Base model for fleet wire records.

Every fleet model inherits from :class:`FleetBaseModel` which provides:

* frozen instances, so a snapshot handed to a reader can never change
  under it;
* ``populate_by_name`` so rows can be validated either by wire column
  aliases or by field name;
* a ``model_validator(mode="before")`` that strips empty values
  (``None``, ``""``, NaN) so the field default is used.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator


class FleetBaseModel(BaseModel):
    """Base for fleet models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_empty_values(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        return FleetBaseModel._clean_dict(values)
