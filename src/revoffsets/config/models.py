"""Pydantic configuration models."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from revoffsets.config import defaults


class ScannerConfig(BaseModel):
    workers: int = Field(defaults.DEFAULT_WORKERS, ge=1)
    chunk_size: int = Field(defaults.DEFAULT_CHUNK_SIZE, ge=4096)
    use_skip_search: bool = True
    entry_walk: int = Field(defaults.DEFAULT_ENTRY_WALK, ge=1)


class XrefConfig(BaseModel):
    chunk_size: int = Field(defaults.DEFAULT_XREF_CHUNK_SIZE, ge=4)


class StructureConfig(BaseModel):
    workers: int = Field(defaults.DEFAULT_WORKERS, ge=1)
    window_instructions: int = Field(defaults.DEFAULT_WINDOW_INSTRUCTIONS, ge=1)
    base_confidence: float = Field(defaults.DEFAULT_STRUCTURE_BASE_CONFIDENCE, ge=0.0, le=1.0)
    full_support_anchors: int = Field(defaults.DEFAULT_FULL_SUPPORT_ANCHORS, ge=1)


class ResolverConfig(BaseModel):
    symbol_weight: float = Field(defaults.DEFAULT_SYMBOL_WEIGHT, ge=0.0)
    pattern_weight: float = Field(defaults.DEFAULT_PATTERN_WEIGHT, ge=0.0)
    xref_weight: float = Field(defaults.DEFAULT_XREF_WEIGHT, ge=0.0)
    xref_cap: float = Field(defaults.DEFAULT_XREF_CAP, ge=0.0)
    structure_weight: float = Field(defaults.DEFAULT_STRUCTURE_WEIGHT, ge=0.0)
    caller_weight: float = Field(defaults.DEFAULT_CALLER_WEIGHT, ge=0.0)
    min_confidence: float = Field(defaults.DEFAULT_MIN_CONFIDENCE, ge=0.0, le=1.0)


class ProcessConfig(BaseModel):
    read_timeout: float = Field(defaults.DEFAULT_READ_TIMEOUT, gt=0.0)
    max_region_scan: int = Field(defaults.DEFAULT_MAX_REGION_SCAN, ge=1)


class OutputConfig(BaseModel):
    schema_version: str = defaults.SCHEMA_VERSION
    path: str = defaults.DEFAULT_OUTPUT_FILE
    indent: int = 2

    @model_validator(mode="after")
    def _check_version(self) -> OutputConfig:
        major = self.schema_version.split(".", 1)[0]
        if not major.isdigit():
            raise ValueError(f"schema_version must start with a numeric major version: {self.schema_version!r}")
        return self


class DiffConfig(BaseModel):
    confidence_epsilon: float = Field(defaults.DEFAULT_DIFF_EPSILON, ge=0.0)


class OffsetsConfig(BaseModel):
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    xrefs: XrefConfig = Field(default_factory=XrefConfig)
    structures: StructureConfig = Field(default_factory=StructureConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    diff: DiffConfig = Field(default_factory=DiffConfig)
    catalog_path: str | None = None
