"""ARM64 instruction decoding on top of capstone.

Capstone's text form (``mnemonic`` + ``op_str``) carries everything the
xref and structure passes need: direct branch targets and immediate-offset
memory operands. Operand text is parsed here so the rest of the package
works on plain dataclasses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Literal

import capstone

AccessKind = Literal["load", "store"]

CALL_MNEMONICS = {"bl"}
UNCONDITIONAL_BRANCHES = {"b"}
COMPARE_BRANCHES = {"cbz", "cbnz", "tbz", "tbnz"}
RETURN_MNEMONICS = {"ret", "retaa", "retab", "eret"}
REGISTER_BRANCHES = {"br", "blr", "braa", "brab", "blraa", "blrab", "braaz", "brabz", "blraaz", "blrabz"}

LOADS = {
    "ldr", "ldrb", "ldrh", "ldrsb", "ldrsh", "ldrsw",
    "ldur", "ldurb", "ldurh", "ldursb", "ldursh", "ldursw",
    "ldar", "ldarb", "ldarh", "ldapr", "ldaprb", "ldaprh",
}
LOAD_PAIRS = {"ldp", "ldpsw", "ldnp"}
STORES = {"str", "strb", "strh", "stur", "sturb", "sturh", "stlr", "stlrb", "stlrh"}
STORE_PAIRS = {"stp", "stnp"}

# Instructions whose first operand is a source, not a destination
_NO_DESTINATION = (
    {"cmp", "cmn", "tst", "ccmp", "ccmn", "fcmp", "fcmpe", "nop", "prfm", "prfum", "msr",
     "dmb", "dsb", "isb", "hint", "brk", "svc", "udf", "pacibsp", "autibsp", "bti"}
    | STORES | STORE_PAIRS | CALL_MNEMONICS | UNCONDITIONAL_BRANCHES | COMPARE_BRANCHES
    | RETURN_MNEMONICS | REGISTER_BRANCHES
)

_REGISTER_WIDTH = {"x": 8, "w": 4, "d": 8, "s": 4, "h": 2, "b": 1, "q": 16}

_MEMORY_RE = re.compile(
    r"\[(?P<base>[a-z0-9]+)(?:,\s*(?P<inner>[^\]]+))?\](?P<pre>!)?"
    r"(?:,\s*#(?P<post>-?(?:0x[0-9a-f]+|\d+)))?"
)
_REGISTER_RE = re.compile(r"^(?:[xw]\d{1,2}|[xw]zr|sp|wsp|fp|lr)$")


@dataclass(frozen=True)
class Instruction:
    address: int
    size: int
    mnemonic: str
    op_str: str

    def operands(self) -> list[str]:
        """Top-level operands; commas inside ``[...]`` do not split."""
        parts: list[str] = []
        depth = 0
        current: list[str] = []
        for ch in self.op_str:
            if ch == "[":
                depth += 1
            elif ch == "]":
                depth -= 1
            if ch == "," and depth == 0:
                parts.append("".join(current).strip())
                current = []
                continue
            current.append(ch)
        tail = "".join(current).strip()
        if tail:
            parts.append(tail)
        return parts

    def __str__(self) -> str:
        return f"0x{self.address:x}: {self.mnemonic} {self.op_str}".rstrip()


@dataclass(frozen=True)
class MemoryAccess:
    """One immediate-offset memory access of a load or store."""

    kind: AccessKind
    base: str
    offset: int
    width: int
    register: str
    writeback: bool = False


def normalize_register(name: str) -> str:
    """Map a general-purpose register to its 64-bit name (``w3`` -> ``x3``)."""
    name = name.strip().lower()
    if name == "fp":
        return "x29"
    if name == "lr":
        return "x30"
    if name == "wsp":
        return "sp"
    if name == "wzr":
        return "xzr"
    if len(name) > 1 and name[0] == "w" and name[1:].isdigit():
        return "x" + name[1:]
    return name


def is_gp_register(text: str) -> bool:
    return bool(_REGISTER_RE.match(text.strip().lower()))


def _parse_immediate(text: str) -> int | None:
    text = text.strip().lstrip("#").strip()
    try:
        return int(text, 0)
    except ValueError:
        return None


class Decoder:
    """Thin capstone wrapper for ARM64 (little-endian, skipdata on).

    A capstone handle is not shareable between threads; each worker builds
    its own Decoder.
    """

    def __init__(self) -> None:
        self._cs = capstone.Cs(capstone.CS_ARCH_ARM64, capstone.CS_MODE_ARM)
        self._cs.skipdata = True

    def disassemble(self, code: bytes, address: int, count: int = 0) -> Iterator[Instruction]:
        for insn_addr, size, mnemonic, op_str in self._cs.disasm_lite(code, address, count):
            yield Instruction(insn_addr, size, mnemonic.lower(), op_str.lower())


def branch_target(insn: Instruction) -> int | None:
    """Target of a direct branch, or None for register/indirect control flow."""
    mnemonic = insn.mnemonic
    if not (
        mnemonic in CALL_MNEMONICS
        or mnemonic in UNCONDITIONAL_BRANCHES
        or mnemonic in COMPARE_BRANCHES
        or mnemonic.startswith("b.")
    ):
        return None
    operands = insn.operands()
    if not operands:
        return None
    return _parse_immediate(operands[-1])


def is_call(insn: Instruction) -> bool:
    return insn.mnemonic in CALL_MNEMONICS or insn.mnemonic in {"blr", "blraa", "blrab", "blraaz", "blrabz"}


def is_return(insn: Instruction) -> bool:
    return insn.mnemonic in RETURN_MNEMONICS


def ends_block(insn: Instruction) -> bool:
    """True for instructions after which straight-line decoding stops."""
    return (
        insn.mnemonic in RETURN_MNEMONICS
        or insn.mnemonic in UNCONDITIONAL_BRANCHES
        or insn.mnemonic in {"br", "braa", "brab", "braaz", "brabz"}
    )


def access_width(mnemonic: str, register: str) -> int | None:
    if mnemonic.endswith("sw"):
        return 4
    if mnemonic.endswith("b"):
        return 1
    if mnemonic.endswith("h"):
        return 2
    return _REGISTER_WIDTH.get(register[:1])


def memory_accesses(insn: Instruction) -> tuple[MemoryAccess, ...]:
    """Immediate-offset accesses of a load/store; register-indexed forms yield nothing.

    Pair instructions produce two accesses at consecutive offsets. Post-index
    forms access the unmodified base (offset 0) and write it back.
    """
    mnemonic = insn.mnemonic
    is_pair = mnemonic in LOAD_PAIRS or mnemonic in STORE_PAIRS
    if mnemonic in LOADS or mnemonic in LOAD_PAIRS:
        kind: AccessKind = "load"
    elif mnemonic in STORES or mnemonic in STORE_PAIRS:
        kind = "store"
    else:
        return ()

    match = _MEMORY_RE.search(insn.op_str)
    if match is None:
        return ()
    offset = 0
    inner = match.group("inner")
    if inner is not None:
        inner = inner.strip()
        if not inner.startswith("#"):
            return ()
        parsed = _parse_immediate(inner)
        if parsed is None:
            return ()
        offset = parsed
    writeback = bool(match.group("pre")) or match.group("post") is not None

    data_regs = [op for op in insn.operands() if not op.startswith("[") and not op.startswith("#")]
    data_regs = data_regs[: 2 if is_pair else 1]
    if not data_regs:
        return ()
    width = access_width(mnemonic, data_regs[0])
    if width not in (1, 2, 4, 8):
        return ()
    base = normalize_register(match.group("base"))

    accesses = []
    for index, reg in enumerate(data_regs):
        accesses.append(
            MemoryAccess(kind, base, offset + index * width, width, normalize_register(reg), writeback)
        )
    return tuple(accesses)


def written_registers(insn: Instruction) -> frozenset[str]:
    """General-purpose registers an instruction overwrites (calls excluded)."""
    mnemonic = insn.mnemonic
    written: set[str] = set()
    accesses = memory_accesses(insn)
    if accesses:
        if accesses[0].writeback:
            written.add(accesses[0].base)
        if accesses[0].kind == "load":
            written.update(a.register for a in accesses)
        return frozenset(written)
    if mnemonic in _NO_DESTINATION or mnemonic.startswith("b."):
        return frozenset()
    operands = insn.operands()
    if operands and is_gp_register(operands[0]):
        written.add(normalize_register(operands[0]))
    if mnemonic in LOAD_PAIRS and len(operands) > 1 and is_gp_register(operands[1]):
        written.add(normalize_register(operands[1]))
    return frozenset(written)


def move_source(insn: Instruction) -> str | None:
    """Source register of a register-to-register ``mov``, else None."""
    if insn.mnemonic != "mov":
        return None
    operands = insn.operands()
    if len(operands) != 2 or not is_gp_register(operands[1]):
        return None
    return normalize_register(operands[1])
