"""Immutable snapshot records."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal

Method = Literal["symbol", "pattern", "xref", "structure", "none"]


@dataclass(frozen=True)
class OffsetRecord:
    name: str
    address: int | None
    confidence: float
    method: Method = "none"
    category: str = ""
    candidates: int = 0
    ambiguous: bool = False

    @property
    def resolved(self) -> bool:
        return self.address is not None


@dataclass(frozen=True)
class StructureOffset:
    structure: str
    field: str
    offset: int
    width: int
    confidence: float
    support: int = 1
    anchors: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return self.structure, self.field


def rank_key(offset: StructureOffset) -> tuple:
    """Order by structure, field, confidence (desc) then offset."""
    return (offset.structure, offset.field, -offset.confidence, offset.offset)


@dataclass(frozen=True)
class TargetInfo:
    name: str
    identity: str
    architecture: str = "arm64"
    base_address: int = 0


@dataclass(frozen=True)
class SnapshotStatistics:
    total: int
    resolved: int
    unresolved: int
    mean_confidence: float


@dataclass(frozen=True)
class OffsetSnapshot:
    version: str
    timestamp: str
    records: tuple[OffsetRecord, ...]
    structure_offsets: tuple[StructureOffset, ...] = ()
    target: TargetInfo | None = None

    @property
    def major_version(self) -> str:
        return self.version.split(".", 1)[0]

    def record(self, name: str) -> OffsetRecord | None:
        for record in self.records:
            if record.name == name:
                return record
        return None

    def equivalent(self, other: OffsetSnapshot) -> bool:
        """Equal in every field except the timestamp."""
        return replace(self, timestamp=other.timestamp) == other

    @property
    def statistics(self) -> SnapshotStatistics:
        total = len(self.records)
        resolved = sum(1 for r in self.records if r.resolved)
        mean = sum(r.confidence for r in self.records) / total if total else 0.0
        return SnapshotStatistics(total, resolved, total - resolved, mean)

    def primary_offsets(self) -> dict[str, dict[str, StructureOffset]]:
        """Top-ranked offset for every structure field."""
        primary: dict[str, dict[str, StructureOffset]] = {}
        for offset in sorted(self.structure_offsets, key=rank_key):
            primary.setdefault(offset.structure, {}).setdefault(offset.field, offset)
        return primary
