"""Snapshot comparison."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from revoffsets.config.defaults import DEFAULT_DIFF_EPSILON
from revoffsets.errors import SchemaVersionMismatch
from revoffsets.snapshot.models import OffsetRecord, OffsetSnapshot

Status = Literal["added", "removed", "changed", "unchanged"]

STATUSES: tuple[Status, ...] = ("added", "removed", "changed", "unchanged")


def _hex(value: int | None) -> str | None:
    return None if value is None else f"0x{value:x}"


@dataclass(frozen=True)
class FunctionChange:
    name: str
    status: Status
    old_address: int | None
    new_address: int | None
    old_confidence: float | None
    new_confidence: float | None

    @property
    def address_delta(self) -> int | None:
        if self.old_address is None or self.new_address is None:
            return None
        return self.new_address - self.old_address

    @property
    def confidence_delta(self) -> float:
        return (self.new_confidence or 0.0) - (self.old_confidence or 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "old_address": _hex(self.old_address),
            "new_address": _hex(self.new_address),
            "old_confidence": self.old_confidence,
            "new_confidence": self.new_confidence,
            "address_delta": self.address_delta,
            "confidence_delta": self.confidence_delta,
        }


@dataclass(frozen=True)
class StructureChange:
    structure: str
    field: str
    status: Status
    old_offset: int | None
    new_offset: int | None
    old_confidence: float | None
    new_confidence: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "old_offset": self.old_offset,
            "new_offset": self.new_offset,
            "old_confidence": self.old_confidence,
            "new_confidence": self.new_confidence,
        }


@dataclass(frozen=True)
class SnapshotDiff:
    old_version: str
    new_version: str
    functions: tuple[FunctionChange, ...]
    structures: tuple[StructureChange, ...] = ()

    def changes(self) -> tuple[FunctionChange, ...]:
        return tuple(c for c in self.functions if c.status != "unchanged")

    def structure_changes(self) -> tuple[StructureChange, ...]:
        return tuple(c for c in self.structures if c.status != "unchanged")

    @property
    def is_empty(self) -> bool:
        return not self.changes() and not self.structure_changes()

    def summary(self) -> dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        for change in self.functions:
            counts[change.status] += 1
        counts["structure_changes"] = len(self.structure_changes())
        return counts

    def to_dict(self) -> dict[str, Any]:
        structures: dict[str, dict[str, Any]] = {}
        for change in self.structures:
            structures.setdefault(change.structure, {})[change.field] = change.to_dict()
        return {
            "old_version": self.old_version,
            "new_version": self.new_version,
            "functions": {c.name: c.to_dict() for c in self.functions},
            "structures": structures,
            "summary": self.summary(),
        }


def _status(before: bool, after: bool, moved: bool, delta: float, epsilon: float) -> Status:
    if not before and not after:
        return "unchanged"
    if not before:
        return "added"
    if not after:
        return "removed"
    if moved or abs(delta) > epsilon:
        return "changed"
    return "unchanged"


def _found(record: OffsetRecord | None) -> bool:
    return record is not None and record.address is not None


def diff(old: OffsetSnapshot, new: OffsetSnapshot, *, epsilon: float = DEFAULT_DIFF_EPSILON) -> SnapshotDiff:
    """Compare two snapshots by function name and structure field.

    A function counts as present only when it resolved, so a target that
    goes from unresolved to resolved is "added". Raises SchemaVersionMismatch
    when the major schema versions differ.
    ``diff(b, a)`` mirrors ``diff(a, b)``: added and removed swap and every
    delta changes sign.
    """
    if old.major_version != new.major_version:
        raise SchemaVersionMismatch(old.version, new.version)

    old_records = {r.name: r for r in old.records}
    new_records = {r.name: r for r in new.records}
    functions = []
    for name in sorted(old_records.keys() | new_records.keys()):
        before = old_records.get(name)
        after = new_records.get(name)
        old_conf = before.confidence if before else None
        new_conf = after.confidence if after else None
        moved = before is not None and after is not None and before.address != after.address
        functions.append(
            FunctionChange(
                name=name,
                status=_status(_found(before), _found(after), moved, (new_conf or 0.0) - (old_conf or 0.0), epsilon),
                old_address=before.address if before else None,
                new_address=after.address if after else None,
                old_confidence=old_conf,
                new_confidence=new_conf,
            )
        )

    old_fields = {(s, f): off for s, fields in old.primary_offsets().items() for f, off in fields.items()}
    new_fields = {(s, f): off for s, fields in new.primary_offsets().items() for f, off in fields.items()}
    structures = []
    for key in sorted(old_fields.keys() | new_fields.keys()):
        before_off = old_fields.get(key)
        after_off = new_fields.get(key)
        old_conf = before_off.confidence if before_off else None
        new_conf = after_off.confidence if after_off else None
        moved = before_off is not None and after_off is not None and before_off.offset != after_off.offset
        structures.append(
            StructureChange(
                key[0],
                key[1],
                _status(before_off is not None, after_off is not None, moved, (new_conf or 0.0) - (old_conf or 0.0), epsilon),
                before_off.offset if before_off else None,
                after_off.offset if after_off else None,
                old_conf,
                new_conf,
            )
        )

    return SnapshotDiff(old.version, new.version, tuple(functions), tuple(structures))
