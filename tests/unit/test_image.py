"""Tests for Mach-O parsing and the file-backed image accessor."""

import hashlib

import pytest

from revoffsets.errors import ImageNotFound, OutOfBounds, UnsupportedFormat
from revoffsets.image.accessor import FileImage, Region, open_file, open_image
from revoffsets.image.macho import decode_function_starts, decode_uleb128, select_arm64_slice
from synthetic_macho import (
    CODE_ADDR,
    CPU_TYPE_X86_64,
    LUA_GETTOP,
    TEXT_VMADDR,
    build_fat,
    build_macho,
    place,
)


def _write(tmp_path, data, name="img"):
    path = tmp_path / name
    path.write_bytes(data)
    return path


def test_open_file_parses_segments(tmp_path):
    path = _write(tmp_path, build_macho(place({0: LUA_GETTOP}), data=b"\x01\x02"))
    image = open_file(path)
    assert [s.name for s in image.segments()] == ["__TEXT", "__DATA", "__LINKEDIT"]
    text = image.find_segment("__TEXT")
    assert text.executable and text.readable and not text.writable
    assert image.find_segment("__DATA").writable
    assert image.base_address == TEXT_VMADDR
    assert image.architecture == "arm64"
    assert image.identity == hashlib.sha256(path.read_bytes()).hexdigest()


def test_code_regions_are_instruction_sections(tmp_path):
    image = open_file(_write(tmp_path, build_macho(place({}))))
    assert image.code_regions() == (Region(CODE_ADDR, CODE_ADDR + 0x100, "__TEXT,__text"),)


def test_read_bytes(tmp_path):
    image = open_file(_write(tmp_path, build_macho(place({0: LUA_GETTOP}))))
    assert image.read_bytes(CODE_ADDR, len(LUA_GETTOP)) == LUA_GETTOP
    assert image.read_bytes(CODE_ADDR, 0) == b""


def test_read_bytes_outside_segments(tmp_path):
    image = open_file(_write(tmp_path, build_macho(place({}))))
    with pytest.raises(OutOfBounds):
        image.read_bytes(0x1000, 4)
    text = image.find_segment("__TEXT")
    # straddling the end of __TEXT is not allowed either
    with pytest.raises(OutOfBounds):
        image.read_bytes(text.end - 2, 4)


def test_read_beyond_filesize_is_zero_filled(tmp_path):
    image = open_file(_write(tmp_path, build_macho(place({}))))
    linkedit = image.find_segment("__LINKEDIT")
    tail = image.read_bytes(linkedit.vmaddr + linkedit.filesize, 8)
    assert tail == bytes(8)


def test_resolve_region(tmp_path):
    image = open_file(_write(tmp_path, build_macho(place({}))))
    assert image.resolve_region("__TEXT,__text") == Region(CODE_ADDR, CODE_ADDR + 0x100, "__TEXT,__text")
    assert image.resolve_region("__TEXT").start == TEXT_VMADDR
    assert image.resolve_region("__DATA") is None
    assert image.resolve_region("__TEXT,__cstring") is None


def test_segment_lookup(tmp_path):
    image = open_file(_write(tmp_path, build_macho(place({}))))
    assert image.segment_for(CODE_ADDR).name == "__TEXT"
    assert image.is_executable(CODE_ADDR)
    assert not image.is_executable(image.find_segment("__LINKEDIT").vmaddr)
    assert image.segment_for(0) is None


def test_missing_file(tmp_path):
    with pytest.raises(ImageNotFound):
        open_file(tmp_path / "absent")


def test_not_macho(tmp_path):
    with pytest.raises(UnsupportedFormat, match="not a Mach-O"):
        open_file(_write(tmp_path, b"\x7fELF" + bytes(60)))


def test_wrong_cpu(tmp_path):
    with pytest.raises(UnsupportedFormat, match="arm64"):
        open_file(_write(tmp_path, build_macho(place({}), cpu_type=CPU_TYPE_X86_64)))


def test_32_bit_rejected(tmp_path):
    with pytest.raises(UnsupportedFormat, match="32-bit"):
        open_file(_write(tmp_path, build_macho(place({}), magic=0xFEEDFACE)))


def test_fat_binary_selects_arm64_slice(tmp_path):
    thin = build_macho(place({0: LUA_GETTOP}))
    other = build_macho(place({}), cpu_type=CPU_TYPE_X86_64)
    fat = build_fat([(CPU_TYPE_X86_64, other), (0x0100000C, thin)])
    offset, size = select_arm64_slice(fat)
    assert fat[offset : offset + size] == thin
    image = FileImage(_write(tmp_path, fat), fat)
    assert image.read_bytes(CODE_ADDR, len(LUA_GETTOP)) == LUA_GETTOP


def test_fat_binary_without_arm64(tmp_path):
    fat = build_fat([(CPU_TYPE_X86_64, build_macho(place({}), cpu_type=CPU_TYPE_X86_64))])
    with pytest.raises(UnsupportedFormat, match="no arm64 slice"):
        select_arm64_slice(fat)


def test_open_image_dispatch(tmp_path):
    path = _write(tmp_path, build_macho(place({})))
    assert isinstance(open_image(path), FileImage)
    assert isinstance(open_image(str(path)), FileImage)
    with pytest.raises(UnsupportedFormat):
        open_image(3.5)


def test_uleb128_and_function_starts():
    assert decode_uleb128(b"\xe5\x8e\x26", 0) == (624485, 3)
    blob = b"\x80\x80\x01\x40\x00"
    assert decode_function_starts(blob, 0x1000) == (0x5000, 0x5040)
    with pytest.raises(ValueError):
        decode_uleb128(b"\x80", 0)


def test_function_starts_loaded_from_image(tmp_path):
    starts = (CODE_ADDR, CODE_ADDR + 0x40)
    image = open_file(_write(tmp_path, build_macho(place({}), function_starts=starts)))
    assert image.function_starts() == starts
