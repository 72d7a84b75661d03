"""Structure field inference from anchor-function memory accesses.

An anchor function receives a pointer to the structure in a known register
(``x0`` for the Lua C API). Straight-line decoding from the anchor's entry
tracks that register and its copies, and records the immediate offsets of
loads and stores through it. Each catalog field says which of those accesses
it corresponds to.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from revoffsets.catalog.models import AnchorAccess, StructureSpec
from revoffsets.config.defaults import (
    DEFAULT_FULL_SUPPORT_ANCHORS,
    DEFAULT_STRUCTURE_BASE_CONFIDENCE,
    DEFAULT_WINDOW_INSTRUCTIONS,
)
from revoffsets.errors import OutOfBounds
from revoffsets.image.accessor import BinaryImage
from revoffsets.snapshot.models import StructureOffset, rank_key
from revoffsets.utils.logging import get_logger
from revoffsets.xrefs.decoder import (
    Decoder,
    MemoryAccess,
    ends_block,
    is_call,
    memory_accesses,
    move_source,
    written_registers,
)

log = get_logger(__name__)

INSTRUCTION_SIZE = 4

# AAPCS64 caller-saved registers plus the link register
CALL_CLOBBERED = frozenset({f"x{i}" for i in range(19)} | {"x30"})


def trace_accesses(
    image: BinaryImage,
    address: int,
    base_registers: Iterable[str],
    *,
    window: int = DEFAULT_WINDOW_INSTRUCTIONS,
) -> dict[str, list[MemoryAccess]]:
    """Accesses made through each base register (or a copy of it), in program order."""
    seg = image.segment_for(address)
    if seg is None:
        raise OutOfBounds(f"anchor 0x{address:x} is outside every segment", address)
    length = min(window * INSTRUCTION_SIZE, seg.end - address)
    code = image.read_bytes(address, length)

    aliases = {reg: {reg} for reg in base_registers}
    found: dict[str, list[MemoryAccess]] = {reg: [] for reg in aliases}

    for insn in Decoder().disassemble(code, address, window):
        for access in memory_accesses(insn):
            for root, regs in aliases.items():
                if access.base in regs:
                    found[root].append(access)

        source = move_source(insn)
        killed = set(written_registers(insn))
        if is_call(insn):
            killed |= CALL_CLOBBERED
        for regs in aliases.values():
            copies = source is not None and source in regs
            regs -= killed
            if copies:
                regs.update(written_registers(insn))

        if ends_block(insn):
            break
    return found


def _matching(accesses: list[MemoryAccess], spec: AnchorAccess) -> list[MemoryAccess]:
    out = []
    for access in accesses:
        if spec.access != "any" and access.kind != spec.access:
            continue
        if spec.width is not None and access.width != spec.width:
            continue
        if not spec.min_offset <= access.offset <= spec.max_offset:
            continue
        out.append(access)
    return out


def infer_structure(
    image: BinaryImage,
    anchor_address: int,
    spec: StructureSpec,
    *,
    anchor: str,
    window: int = DEFAULT_WINDOW_INSTRUCTIONS,
) -> frozenset[StructureOffset]:
    """Field observations made by one anchor candidate.

    Accesses are filtered by kind, width and offset range before
    ``occurrence`` picks the n-th one, which then carries confidence 1.0.
    Without ``occurrence`` every distinct offset is a candidate and the
    confidence is split evenly between them.
    """
    wanted = spec.accesses_for(anchor)
    if not wanted:
        return frozenset()

    traced = trace_accesses(image, anchor_address, {a.base_register for _, a in wanted}, window=window)
    observations: set[StructureOffset] = set()
    for field, access_spec in wanted:
        matches = _matching(traced[access_spec.base_register], access_spec)
        if access_spec.occurrence is not None:
            if access_spec.occurrence >= len(matches):
                continue
            picked = matches[access_spec.occurrence]
            observations.add(
                StructureOffset(spec.name, field.name, picked.offset, picked.width, 1.0, 1, (anchor,))
            )
            continue
        distinct: dict[int, int] = {}
        for access in matches:
            distinct.setdefault(access.offset, access.width)
        for offset, width in distinct.items():
            observations.add(
                StructureOffset(spec.name, field.name, offset, width, 1.0 / len(distinct), 1, (anchor,))
            )

    log.debug(
        "structure_observed",
        structure=spec.name,
        anchor=anchor,
        address=hex(anchor_address),
        fields=len({o.field for o in observations}),
    )
    return frozenset(observations)


def combine_observations(
    observations: Iterable[StructureOffset],
    *,
    base_confidence: float = DEFAULT_STRUCTURE_BASE_CONFIDENCE,
    full_support_anchors: int = DEFAULT_FULL_SUPPORT_ANCHORS,
) -> tuple[StructureOffset, ...]:
    """Merge per-anchor observations into ranked candidate offsets per field.

    agreement = summed confidence / number of anchors that observed the field
    corroboration = min(1, agreeing anchors / full_support_anchors)
    confidence = agreement * (base + (1 - base) * corroboration)
    """
    observed_by: dict[tuple[str, str], set[str]] = defaultdict(set)
    totals: dict[tuple[str, str, int], float] = defaultdict(float)
    anchors: dict[tuple[str, str, int], set[str]] = defaultdict(set)
    widths: dict[tuple[str, str, int], tuple[float, int]] = {}

    for obs in observations:
        key = (obs.structure, obs.field, obs.offset)
        observed_by[obs.key].update(obs.anchors)
        totals[key] += obs.confidence
        anchors[key].update(obs.anchors)
        widths[key] = max(widths.get(key, (0.0, 0)), (obs.confidence, obs.width))

    ranked = []
    for key, total in totals.items():
        structure, field, offset = key
        observers = len(observed_by[(structure, field)]) or 1
        agreement = min(1.0, total / observers)
        support = len(anchors[key])
        corroboration = min(1.0, support / full_support_anchors)
        confidence = agreement * (base_confidence + (1.0 - base_confidence) * corroboration)
        ranked.append(
            StructureOffset(
                structure,
                field,
                offset,
                widths[key][1],
                confidence,
                support,
                tuple(sorted(anchors[key])),
            )
        )
    return tuple(sorted(ranked, key=rank_key))
