"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from revoffsets.catalog.models import Catalog
from revoffsets.config.models import OffsetsConfig, ScannerConfig, StructureConfig
from revoffsets.image.accessor import FileImage
from synthetic_macho import (
    CODE_ADDR,
    LUA_GETTOP,
    LUA_GETTOP_PATTERN,
    bl,
    build_macho,
    place,
    words,
    RET,
)

GETTOP_ADDR = CODE_ADDR
CALLER_A = CODE_ADDR + 0x40
CALLER_B = CODE_ADDR + 0x80


def lua_code() -> bytes:
    """lua_gettop at the start of __text plus two functions that call it."""
    return place(
        {
            0x00: LUA_GETTOP,
            0x40: words(bl(CALLER_A, GETTOP_ADDR), RET),
            0x80: words(bl(CALLER_B, GETTOP_ADDR), bl(CALLER_B + 4, CALLER_A), RET),
        }
    )


@pytest.fixture
def sample_config() -> OffsetsConfig:
    return OffsetsConfig(
        scanner=ScannerConfig(workers=2, chunk_size=4096),
        structures=StructureConfig(workers=2),
    )


@pytest.fixture
def gettop_catalog() -> Catalog:
    return Catalog.model_validate(
        {
            "version": "test",
            "targets": [
                {"name": "lua_gettop", "patterns": [LUA_GETTOP_PATTERN]},
                {"name": "lua_settop", "patterns": ["FF FF FF FF 00 00 00 00"]},
            ],
            "structures": [
                {
                    "name": "lua_State",
                    "fields": [
                        {
                            "name": "top",
                            "anchors": [
                                {"target": "lua_gettop", "width": 8, "occurrence": 0, "min_offset": 8, "max_offset": 0x80},
                                {"target": "lua_settop", "width": 8, "occurrence": 0, "min_offset": 8, "max_offset": 0x80},
                            ],
                        },
                        {
                            "name": "base",
                            "anchors": [
                                {"target": "lua_gettop", "width": 8, "occurrence": 1, "min_offset": 8, "max_offset": 0x80},
                            ],
                        },
                    ],
                }
            ],
        }
    )


@pytest.fixture
def lua_binary(tmp_path: Path) -> Path:
    path = tmp_path / "lua_host"
    path.write_bytes(
        build_macho(
            lua_code(),
            [("_lua_gettop", GETTOP_ADDR), ("_caller_a", CALLER_A), ("_caller_b", CALLER_B, False)],
        )
    )
    return path


@pytest.fixture
def stripped_binary(tmp_path: Path) -> Path:
    path = tmp_path / "lua_host_stripped"
    path.write_bytes(build_macho(lua_code()))
    return path


@pytest.fixture
def lua_image(lua_binary: Path) -> FileImage:
    return FileImage(lua_binary, lua_binary.read_bytes())
