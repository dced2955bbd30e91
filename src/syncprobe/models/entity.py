"""Entity kinds and records of the hierarchical store."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from syncprobe.models._base import ProbeBaseModel


class EntityKind(StrEnum):
    STRUCTURE = "structure"
    THERMOSTAT = "thermostat"
    SMOKE_ALARM = "smoke_alarm"

    @property
    def collection_path(self) -> str:
        """Store path of the collection holding entities of this kind."""
        return _COLLECTION_PATHS[self]

    def entity_path(self, entity_id: str) -> str:
        return f"{self.collection_path}/{entity_id}"


_COLLECTION_PATHS: dict[EntityKind, str] = {
    EntityKind.STRUCTURE: "/structures",
    EntityKind.THERMOSTAT: "/devices/thermostats",
    EntityKind.SMOKE_ALARM: "/devices/smoke_co_alarms",
}


def child_at(tree: Any, path: str) -> Any:
    """Walk *tree* along a ``/``-separated *path*; ``None`` when missing."""
    node = tree
    for part in path.strip("/").split("/"):
        if not part:
            continue
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


class EntityRecord(ProbeBaseModel):
    """One addressable item (structure, thermostat, smoke alarm).

    ``id`` is the key of the item inside its collection, so
    ``kind.entity_path(id)`` always addresses it in the store.
    """

    id: str
    kind: EntityKind
    properties: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        entity_id = value.strip()
        if not entity_id:
            raise ValueError("id must be non-empty")
        return entity_id

    @property
    def path(self) -> str:
        return self.kind.entity_path(self.id)


def entities_from_snapshot(root: Any, kind: EntityKind) -> dict[str, EntityRecord]:
    """Extract the records of *kind* from a full root snapshot."""
    collection = child_at(root, kind.collection_path)
    if not isinstance(collection, Mapping):
        return {}
    return {
        str(key): EntityRecord(id=str(key), kind=kind, properties=dict(data))
        for key, data in collection.items()
        if isinstance(data, Mapping)
    }
