"""Snapshot construction and the offsets.json document format."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, get_args

from revoffsets.config.defaults import SCHEMA_VERSION
from revoffsets.errors import SnapshotFormatError
from revoffsets.snapshot.models import (
    Method,
    OffsetRecord,
    OffsetSnapshot,
    StructureOffset,
    TargetInfo,
    rank_key,
)
from revoffsets.utils.logging import get_logger

log = get_logger(__name__)

METHODS = frozenset(get_args(Method))


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_snapshot(
    records: Iterable[OffsetRecord],
    structure_offsets: Iterable[StructureOffset] = (),
    schema_version: str = SCHEMA_VERSION,
    *,
    target: TargetInfo | None = None,
    timestamp: str | None = None,
) -> OffsetSnapshot:
    return OffsetSnapshot(
        version=schema_version,
        timestamp=timestamp or utc_timestamp(),
        records=tuple(sorted(records, key=lambda r: r.name)),
        structure_offsets=tuple(sorted(structure_offsets, key=rank_key)),
        target=target,
    )


def _hex(value: int) -> str:
    return f"0x{value:x}"


def _int(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise SnapshotFormatError(f"{what}: expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise SnapshotFormatError(f"{what}: expected an integer, got {value!r}")


def snapshot_to_dict(snapshot: OffsetSnapshot) -> dict[str, Any]:
    functions: dict[str, Any] = {}
    for record in snapshot.records:
        entry: dict[str, Any] = {
            "confidence": record.confidence,
            "method": record.method,
            "category": record.category,
            "candidates": record.candidates,
            "ambiguous": record.ambiguous,
        }
        if record.address is not None:
            entry["address"] = _hex(record.address)
        functions[record.name] = entry

    offsets: dict[str, dict[str, int]] = {}
    confidence: dict[str, dict[str, float]] = {}
    for struct, fields in snapshot.primary_offsets().items():
        offsets[struct] = {name: off.offset for name, off in fields.items()}
        confidence[struct] = {name: off.confidence for name, off in fields.items()}

    candidates: dict[str, dict[str, list[dict[str, Any]]]] = {}
    for off in snapshot.structure_offsets:
        candidates.setdefault(off.structure, {}).setdefault(off.field, []).append(
            {
                "offset": off.offset,
                "width": off.width,
                "confidence": off.confidence,
                "support": off.support,
                "anchors": list(off.anchors),
            }
        )

    stats = snapshot.statistics
    doc: dict[str, Any] = {
        "version": snapshot.version,
        "timestamp": snapshot.timestamp,
        "functions": functions,
        "structure_offsets": offsets,
        "structure_confidence": confidence,
        "structure_candidates": candidates,
        "statistics": {
            "total": stats.total,
            "resolved": stats.resolved,
            "unresolved": stats.unresolved,
            "mean_confidence": stats.mean_confidence,
        },
    }
    if snapshot.target is not None:
        doc["target"] = {
            "name": snapshot.target.name,
            "identity": snapshot.target.identity,
            "architecture": snapshot.target.architecture,
            "base_address": _hex(snapshot.target.base_address),
        }
    return doc


def _float(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SnapshotFormatError(f"{what}: expected a number, got {value!r}")
    return float(value)


def _section(value: Any, what: str, kind: type = dict) -> Any:
    if not isinstance(value, kind):
        raise SnapshotFormatError(f"{what}: expected {'an object' if kind is dict else 'a list'}, got {value!r}")
    return value


def _structure_candidates(doc: dict[str, Any]) -> list[StructureOffset]:
    offsets = []
    for struct, fields in _section(doc["structure_candidates"], "structure_candidates").items():
        for field, entries in _section(fields, struct).items():
            where = f"{struct}.{field}"
            for item in _section(entries, where, list):
                _section(item, where)
                if "offset" not in item:
                    raise SnapshotFormatError(f"{where}: candidate without an offset")
                offsets.append(
                    StructureOffset(
                        struct,
                        field,
                        _int(item["offset"], f"{where}.offset"),
                        _int(item.get("width", 0), f"{where}.width"),
                        _float(item.get("confidence", 0.0), f"{where}.confidence"),
                        _int(item.get("support", 0), f"{where}.support"),
                        tuple(str(a) for a in _section(item.get("anchors", []), f"{where}.anchors", list)),
                    )
                )
    return offsets


def _structure_offsets(doc: dict[str, Any]) -> list[StructureOffset]:
    offsets = []
    confidence = _section(doc.get("structure_confidence", {}), "structure_confidence")
    for struct, fields in _section(doc.get("structure_offsets", {}), "structure_offsets").items():
        known = _section(confidence.get(struct, {}), f"structure_confidence.{struct}")
        for field, value in _section(fields, struct).items():
            where = f"{struct}.{field}"
            offsets.append(
                StructureOffset(
                    struct,
                    field,
                    _int(value, where),
                    0,
                    _float(known.get(field, 0.0), f"{where}.confidence"),
                    0,
                )
            )
    return offsets


def snapshot_from_dict(doc: dict[str, Any]) -> OffsetSnapshot:
    """Rebuild a snapshot; only version, timestamp and functions are required.

    Every malformed section or value raises SnapshotFormatError.
    """
    if not isinstance(doc, dict):
        raise SnapshotFormatError("snapshot document must be a JSON object")
    for key in ("version", "timestamp", "functions"):
        if key not in doc:
            raise SnapshotFormatError(f"snapshot is missing {key!r}")

    records = []
    for name, entry in _section(doc["functions"], "functions").items():
        if not isinstance(entry, dict):
            raise SnapshotFormatError(f"function {name!r}: expected an object")
        address = entry.get("address")
        method = entry.get("method", "none" if address is None else "pattern")
        if method not in METHODS:
            raise SnapshotFormatError(f"{name}.method: unknown method {method!r}")
        records.append(
            OffsetRecord(
                name=name,
                address=None if address is None else _int(address, f"{name}.address"),
                confidence=_float(entry.get("confidence", 0.0), f"{name}.confidence"),
                method=method,
                category=str(entry.get("category", "")),
                candidates=_int(entry.get("candidates", 0), f"{name}.candidates"),
                ambiguous=bool(entry.get("ambiguous", False)),
            )
        )

    if "structure_candidates" in doc:
        offsets = _structure_candidates(doc)
    else:
        offsets = _structure_offsets(doc)

    target = None
    if "target" in doc:
        t = _section(doc["target"], "target")
        target = TargetInfo(
            name=str(t.get("name", "")),
            identity=str(t.get("identity", "")),
            architecture=str(t.get("architecture", "arm64")),
            base_address=_int(t.get("base_address", 0), "target.base_address"),
        )

    return build_snapshot(records, offsets, str(doc["version"]), target=target, timestamp=str(doc["timestamp"]))


def save_snapshot(snapshot: OffsetSnapshot, path: str | Path, *, indent: int = 2) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(snapshot_to_dict(snapshot), indent=indent, sort_keys=True) + "\n")
    log.info("snapshot_saved", path=str(path), functions=len(snapshot.records))
    return path


def load_snapshot(path: str | Path) -> OffsetSnapshot:
    path = Path(path)
    try:
        doc = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise SnapshotFormatError(f"{path}: invalid JSON ({exc})") from exc
    return snapshot_from_dict(doc)
