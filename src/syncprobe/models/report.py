"""Per-tick delivery results and per-pool aggregate reports."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from pydantic import Field, computed_field

from syncprobe.models._base import ProbeBaseModel
from syncprobe.models.entity import EntityKind


class DeliveryResult(ProbeBaseModel):
    """Outcome of polling one worker for the value just written."""

    access_token: str
    delivered: bool
    elapsed_ms: int


class PoolReport(ProbeBaseModel):
    """Aggregated delivery outcome of one pool for one tick."""

    transport_label: str
    total: int
    delivered_count: int
    lost_tokens: list[str] = Field(default_factory=list)
    max_elapsed_ms: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def lost_count(self) -> int:
        return self.total - self.delivered_count

    @computed_field  # type: ignore[prop-decorator]
    @property
    def passed(self) -> bool:
        return self.lost_count == 0

    @classmethod
    def aggregate(cls, transport_label: str, results: Sequence[DeliveryResult]) -> PoolReport:
        """Fold per-worker results into one report.

        ``max_elapsed_ms`` spans every polled worker, delivered or not.
        """
        return cls(
            transport_label=transport_label,
            total=len(results),
            delivered_count=sum(1 for r in results if r.delivered),
            lost_tokens=[r.access_token for r in results if not r.delivered],
            max_elapsed_ms=max((r.elapsed_ms for r in results), default=0),
        )


class TickResult(ProbeBaseModel):
    """One write-then-verify cycle."""

    kind: EntityKind
    entity_id: str
    property_name: str
    old_value: Any
    new_value: Any
    reports: list[PoolReport] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(report.passed for report in self.reports)
