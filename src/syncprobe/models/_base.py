"""Base model for syncprobe data objects."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ProbeBaseModel(BaseModel):
    """Immutable base for entity and report models.

    Store payloads are snake_case already, so no alias generator is needed;
    unknown keys are ignored so new store fields never break parsing.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )
