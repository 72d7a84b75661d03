"""Pydantic models for the data-driven target catalog."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class PatternSpec(BaseModel):
    """One byte pattern for a target, written as hex with ``??`` wildcards."""

    pattern: str
    region: str | None = None
    alignment: int | None = Field(None, ge=1)


class TargetSpec(BaseModel):
    name: str
    category: str = "lua_api"
    symbols: list[str] = Field(default_factory=list)
    patterns: list[PatternSpec] = Field(default_factory=list)
    region: str | None = None
    alignment: int = Field(4, ge=1)
    # Without symbol or pattern candidates, callers of this resolved target are proposed
    caller_of: str | None = None

    @field_validator("patterns", mode="before")
    @classmethod
    def _coerce_patterns(cls, value: object) -> object:
        # Bare strings are accepted as shorthand for {"pattern": ...}
        if isinstance(value, list):
            return [{"pattern": v} if isinstance(v, str) else v for v in value]
        return value

    def symbol_names(self) -> list[str]:
        names = [self.name, *self.symbols]
        return list(dict.fromkeys(names))


class AnchorAccess(BaseModel):
    """Where, relative to an anchor function, a field access is expected."""

    target: str
    base_register: str = "x0"
    access: Literal["load", "store", "any"] = "load"
    width: Literal[1, 2, 4, 8] | None = None
    occurrence: int | None = Field(None, ge=0)
    min_offset: int = Field(0, ge=0)
    max_offset: int = Field(0x1000, ge=0)

    @field_validator("base_register")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()


class FieldSpec(BaseModel):
    name: str
    role: str = ""
    anchors: list[AnchorAccess] = Field(default_factory=list)


class StructureSpec(BaseModel):
    name: str
    fields: list[FieldSpec] = Field(default_factory=list)

    def anchor_targets(self) -> list[str]:
        seen: dict[str, None] = {}
        for field in self.fields:
            for anchor in field.anchors:
                seen.setdefault(anchor.target, None)
        return list(seen)

    def accesses_for(self, anchor: str) -> list[tuple[FieldSpec, AnchorAccess]]:
        return [(f, a) for f in self.fields for a in f.anchors if a.target == anchor]


class Catalog(BaseModel):
    version: str = "1"
    targets: list[TargetSpec] = Field(default_factory=list)
    structures: list[StructureSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_names(self) -> Catalog:
        names = [t.name for t in self.targets]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate target names: {', '.join(duplicates)}")
        known = set(names)
        for spec in self.targets:
            if spec.caller_of is not None and (spec.caller_of not in known or spec.caller_of == spec.name):
                raise ValueError(f"target {spec.name!r}: caller_of names unknown target {spec.caller_of!r}")
        for struct in self.structures:
            for anchor in struct.anchor_targets():
                if anchor not in known:
                    raise ValueError(f"structure {struct.name!r} anchors on unknown target {anchor!r}")
        return self

    def target(self, name: str) -> TargetSpec | None:
        for spec in self.targets:
            if spec.name == name:
                return spec
        return None

    def structure(self, name: str) -> StructureSpec | None:
        for spec in self.structures:
            if spec.name == name:
                return spec
        return None
