"""Tests for function entry recovery and caller candidates."""

import pytest

from revoffsets.image.accessor import FileImage
from revoffsets.xrefs.decoder import Decoder
from revoffsets.xrefs.entries import EntryLocator, caller_entries, is_prologue
from revoffsets.xrefs.graph import build_xrefs
from synthetic_macho import (
    CODE_ADDR,
    LDP_FP_LR,
    LUA_GETTOP,
    MOV_FP_SP,
    PACIBSP,
    RET,
    STP_FP_LR,
    bl,
    build_macho,
    ldr_x,
    mov_x,
    place,
    str_x,
    sub_sp,
    words,
)

LEAF = CODE_ADDR
FRAMED = CODE_ADDR + 0x40
BARE = CODE_ADDR + 0x80


def _image(tmp_path, code, **kwargs):
    path = tmp_path / "entries_target"
    path.write_bytes(build_macho(code, **kwargs))
    return FileImage(path, path.read_bytes())


def _code():
    return place(
        {
            0x00: words(mov_x(0, 1), RET),
            0x40: words(PACIBSP, STP_FP_LR, MOV_FP_SP, ldr_x(8, 0, 0x10), LDP_FP_LR, RET),
            0x80: LUA_GETTOP,
        }
    )


def _decode(word):
    return next(Decoder().disassemble(words(word), CODE_ADDR))


@pytest.mark.parametrize(
    "word, expected",
    [
        (STP_FP_LR, True),
        (sub_sp(0x20), True),
        (LDP_FP_LR, False),
        (str_x(8, 31, 0x10), False),
        (ldr_x(8, 0, 0x10), False),
    ],
)
def test_prologue_shapes(word, expected):
    assert is_prologue(_decode(word)) is expected


def test_walks_back_to_prologue(tmp_path):
    locator = EntryLocator(_image(tmp_path, _code()))
    # the pointer-auth marker in front of the frame setup belongs to the entry
    assert locator.entry_for(FRAMED + 0xC) == FRAMED


def test_walks_back_past_previous_return(tmp_path):
    locator = EntryLocator(_image(tmp_path, _code()))
    # no prologue: the entry is the first instruction after ret and its padding
    assert locator.entry_for(BARE + 8) == BARE


def test_region_start_is_an_entry(tmp_path):
    locator = EntryLocator(_image(tmp_path, place({0x00: LUA_GETTOP})))
    assert locator.entry_for(CODE_ADDR + 8) == CODE_ADDR


def test_walk_is_bounded(tmp_path):
    locator = EntryLocator(_image(tmp_path, place({0x00: LUA_GETTOP}, size=0x400)), max_walk=4)
    assert locator.entry_for(CODE_ADDR + 0x100) == CODE_ADDR + 0x100


def test_known_start_bounds_the_walk(tmp_path):
    image = _image(tmp_path, _code())
    assert EntryLocator(image, [BARE]).entry_for(BARE + 8) == BARE
    # an earlier symbol does not hide an unnamed function in between
    assert EntryLocator(image, [LEAF]).entry_for(FRAMED + 0xC) == FRAMED


def test_function_starts_are_authoritative(tmp_path):
    image = _image(tmp_path, _code(), function_starts=[LEAF, FRAMED, BARE])
    locator = EntryLocator(image, image.function_starts(), complete=True)
    assert locator.entry_for(FRAMED + 0x10) == FRAMED
    assert locator.entry_for(BARE) == BARE
    assert locator.entry_for(LEAF + 4) == LEAF


def test_addresses_outside_code_are_kept(tmp_path):
    locator = EntryLocator(_image(tmp_path, _code()))
    assert locator.entry_for(0x1000) == 0x1000


def test_caller_entries(tmp_path):
    gettop = CODE_ADDR + 0x80
    code = place(
        {
            # reads the state through x0 before calling
            0x00: words(STP_FP_LR, MOV_FP_SP, ldr_x(8, 0, 0x10), bl(CODE_ADDR + 0xC, gettop), LDP_FP_LR, RET),
            # calls without touching x0 first
            0x40: words(STP_FP_LR, MOV_FP_SP, bl(CODE_ADDR + 0x48, gettop), LDP_FP_LR, RET),
            0x80: LUA_GETTOP,
        }
    )
    image = _image(tmp_path, code)
    graph = build_xrefs(image, [gettop])
    locator = EntryLocator(image)
    assert caller_entries(image, graph, gettop, locator.entry_for) == (CODE_ADDR,)
    assert caller_entries(image, graph, gettop, locator.entry_for, exclude=[CODE_ADDR]) == ()
    assert caller_entries(image, graph, gettop, locator.entry_for, limit=0) == ()
