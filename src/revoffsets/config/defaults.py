"""Default configuration values and paths."""

from __future__ import annotations

from pathlib import Path

CONFIG_FILE_NAMES = [
    "revoffsets.yaml",
    "revoffsets.yml",
    ".revoffsets.yaml",
    ".revoffsets.yml",
]

CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "revoffsets",
    Path.home(),
]

SCHEMA_VERSION = "1.0"
DEFAULT_OUTPUT_FILE = "offsets.json"

# Confidence fusion
DEFAULT_SYMBOL_WEIGHT = 0.95
DEFAULT_PATTERN_WEIGHT = 0.6
DEFAULT_XREF_WEIGHT = 0.05
DEFAULT_XREF_CAP = 0.15
DEFAULT_STRUCTURE_WEIGHT = 0.1
DEFAULT_MIN_CONFIDENCE = 0.15
DEFAULT_CALLER_WEIGHT = 0.3
MAX_CALLER_CANDIDATES = 50

# Structure inference
DEFAULT_WINDOW_INSTRUCTIONS = 64
DEFAULT_STRUCTURE_BASE_CONFIDENCE = 0.6
DEFAULT_FULL_SUPPORT_ANCHORS = 2

DEFAULT_WORKERS = 4
DEFAULT_CHUNK_SIZE = 1 << 20
DEFAULT_ENTRY_WALK = 256
DEFAULT_XREF_CHUNK_SIZE = 0x10000
DEFAULT_READ_TIMEOUT = 2.0
DEFAULT_MAX_REGION_SCAN = 4096
DEFAULT_DIFF_EPSILON = 1e-3
