"""Function entries for addresses inside a function body.

Byte patterns rarely start at a function's first instruction. With
``LC_FUNCTION_STARTS`` the entry is the nearest preceding start. Otherwise
the decoder walks backwards from the hit, bounded by the code region and
the nearest known symbol, until it meets a frame-setup prologue or the
instruction after a return.
"""

from __future__ import annotations

import bisect
from typing import Callable, Iterable

from revoffsets.config.defaults import DEFAULT_ENTRY_WALK, MAX_CALLER_CANDIDATES
from revoffsets.errors import ImageReadError
from revoffsets.image.accessor import BinaryImage, Region
from revoffsets.structures.inference import trace_accesses
from revoffsets.utils.logging import get_logger
from revoffsets.xrefs.decoder import Decoder, Instruction, is_return, memory_accesses
from revoffsets.xrefs.graph import XrefGraph

log = get_logger(__name__)

INSTRUCTION_SIZE = 4

# May sit in front of the frame setup
ENTRY_MARKERS = {"pacibsp", "paciasp", "bti"}
PADDING = {"nop", "udf", ".byte"}


def is_prologue(insn: Instruction) -> bool:
    """``stp``/``str`` pre-indexed below ``sp``, or ``sub sp, sp, #imm``."""
    if insn.mnemonic == "sub":
        operands = insn.operands()
        return len(operands) == 3 and operands[:2] == ["sp", "sp"] and operands[2].startswith("#")
    accesses = memory_accesses(insn)
    if not accesses:
        return False
    first = accesses[0]
    return first.kind == "store" and first.base == "sp" and first.writeback and first.offset < 0


class EntryLocator:
    """Maps code addresses to the entry of the function that contains them.

    ``starts`` are known entries (function symbols, LC_FUNCTION_STARTS).
    When ``complete`` is set they cover every function and the walk-back is
    skipped. Results are cached; one locator belongs to one thread.
    """

    def __init__(
        self,
        image: BinaryImage,
        starts: Iterable[int] = (),
        *,
        complete: bool = False,
        max_walk: int = DEFAULT_ENTRY_WALK,
    ) -> None:
        self.image = image
        self.complete = complete
        self.max_walk = max_walk
        self._starts = sorted(set(starts))
        self._regions = sorted(image.code_regions(), key=lambda r: r.start)
        self._decoder = Decoder()
        self._cache: dict[int, int] = {}

    def entry_for(self, address: int) -> int:
        entry = self._cache.get(address)
        if entry is None:
            entry = self._cache[address] = self._locate(address)
        return entry

    def _region_for(self, address: int) -> Region | None:
        for region in self._regions:
            if region.start <= address < region.end:
                return region
        return None

    def _locate(self, address: int) -> int:
        index = bisect.bisect_right(self._starts, address) - 1
        known = self._starts[index] if index >= 0 else None
        if known is not None and (known == address or self.complete):
            return known

        region = self._region_for(address)
        if region is None:
            return address
        limit = address - self.max_walk * INSTRUCTION_SIZE
        lower = max(region.start, limit, known if known is not None else region.start)
        floor = address - (address - lower) // INSTRUCTION_SIZE * INSTRUCTION_SIZE

        try:
            found = self._walk_back(address, floor)
        except ImageReadError as exc:
            log.debug("entry_walk_unreadable", address=hex(address), error=str(exc))
            return address
        if found is not None:
            return found
        # Reached the region start or a known entry without meeting a boundary
        if lower in (region.start, known):
            return floor
        return address

    def _walk_back(self, address: int, floor: int) -> int | None:
        code = self.image.read_bytes(floor, address - floor + INSTRUCTION_SIZE)
        insns = {insn.address: insn for insn in self._decoder.disassemble(code, floor)}
        cursor = address
        while cursor >= floor:
            insn = insns.get(cursor)
            if insn is not None and is_prologue(insn):
                while cursor > floor and _mnemonic(insns, cursor - INSTRUCTION_SIZE) in ENTRY_MARKERS:
                    cursor -= INSTRUCTION_SIZE
                return cursor
            previous = insns.get(cursor - INSTRUCTION_SIZE)
            if previous is not None and is_return(previous):
                while cursor < address and _mnemonic(insns, cursor) in PADDING:
                    cursor += INSTRUCTION_SIZE
                return cursor
            cursor -= INSTRUCTION_SIZE
        return None


def _mnemonic(insns: dict[int, Instruction], address: int) -> str:
    insn = insns.get(address)
    return insn.mnemonic if insn is not None else ""


def caller_entries(
    image: BinaryImage,
    graph: XrefGraph,
    callee: int,
    entry_of: Callable[[int], int],
    *,
    exclude: Iterable[int] = (),
    limit: int = MAX_CALLER_CANDIDATES,
    window: int = 16,
) -> tuple[int, ...]:
    """Entries of functions that call ``callee`` and load through ``x0`` early on.

    At most ``limit`` call sites are examined, in address order.
    """
    excluded = set(exclude) | {callee}
    sites = [e.instruction for e in graph.edges_to(callee) if e.kind in ("call", "tail-call")]
    entries: set[int] = set()
    for site in sorted(sites)[:limit]:
        entry = entry_of(site)
        if entry in excluded or entry in entries:
            continue
        try:
            traced = trace_accesses(image, entry, ["x0"], window=window)
        except ImageReadError as exc:
            log.debug("caller_unreadable", entry=hex(entry), error=str(exc))
            continue
        if any(access.kind == "load" for access in traced["x0"]):
            entries.add(entry)
    return tuple(sorted(entries))
