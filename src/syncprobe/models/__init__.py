"""Data models for store entities and probe reports."""

from syncprobe.models._base import ProbeBaseModel
from syncprobe.models.entity import EntityKind, EntityRecord, child_at, entities_from_snapshot
from syncprobe.models.report import DeliveryResult, PoolReport, TickResult

__all__ = [
    "DeliveryResult",
    "EntityKind",
    "EntityRecord",
    "PoolReport",
    "ProbeBaseModel",
    "TickResult",
    "child_at",
    "entities_from_snapshot",
]
