"""Symbol table reading: LC_SYMTAB nlist entries plus LC_FUNCTION_STARTS."""

from __future__ import annotations

import struct
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Literal

from revoffsets.errors import ImageReadError
from revoffsets.image.accessor import BinaryImage
from revoffsets.symbols.demangle import Demangler, default_demangler
from revoffsets.utils.logging import get_logger

log = get_logger(__name__)

NLIST_64 = struct.Struct("<IBBHQ")

N_STAB = 0xE0
N_TYPE = 0x0E
N_EXT = 0x01
N_ABS = 0x2
N_SECT = 0xE

SymbolKind = Literal["function", "data"]
SymbolSource = Literal["exported", "local", "inferred"]


@dataclass(frozen=True)
class Symbol:
    name: str
    demangled: str
    address: int
    kind: SymbolKind
    source: SymbolSource

    @property
    def base_name(self) -> str:
        """Demangled name without its parameter list."""
        head, sep, _ = self.demangled.partition("(")
        return head if sep else self.demangled


class SymbolTable:
    """Bidirectional name/address index over a list of symbols."""

    def __init__(self, symbols: Iterable[Symbol] = ()) -> None:
        self._symbols = tuple(symbols)
        self._by_name: dict[str, list[Symbol]] = defaultdict(list)
        self._by_address: dict[int, list[Symbol]] = defaultdict(list)
        for sym in self._symbols:
            for key in dict.fromkeys((sym.name, sym.demangled, sym.base_name)):
                self._by_name[key].append(sym)
            self._by_address[sym.address].append(sym)

    def __len__(self) -> int:
        return len(self._symbols)

    def __iter__(self):
        return iter(self._symbols)

    @property
    def symbols(self) -> tuple[Symbol, ...]:
        return self._symbols

    def lookup(self, name: str) -> tuple[Symbol, ...]:
        return tuple(self._by_name.get(name, ()))

    def at(self, address: int) -> tuple[Symbol, ...]:
        return tuple(self._by_address.get(address, ()))

    def addresses_for(self, names: Iterable[str]) -> tuple[int, ...]:
        found = {sym.address for name in names for sym in self.lookup(name)}
        return tuple(sorted(found))

    def function_addresses(self) -> tuple[int, ...]:
        return tuple(sorted({s.address for s in self._symbols if s.kind == "function"}))


def load_symbols(image: BinaryImage, demangler: Demangler | None = None) -> tuple[Symbol, ...]:
    """Read every defined symbol of ``image``, ordered by address then name.

    A stripped image yields an empty tuple. Symbols outside every segment are
    dropped; exact (name, address) duplicates are collapsed.
    """
    demangler = demangler or default_demangler()
    raw = _read_nlist(image)

    names = [name for name, _, _ in raw]
    demangled = demangler.demangle_all(names) if names else []

    seen: set[tuple[str, int]] = set()
    symbols: list[Symbol] = []
    for (name, address, external), pretty in zip(raw, demangled):
        if (name, address) in seen:
            continue
        seen.add((name, address))
        seg = image.segment_for(address)
        if seg is None:
            log.debug("symbol_outside_segments", name=name, address=hex(address))
            continue
        symbols.append(
            Symbol(
                name=name,
                demangled=pretty or name,
                address=address,
                kind="function" if seg.executable else "data",
                source="exported" if external else "local",
            )
        )

    covered = {s.address for s in symbols if s.kind == "function"}
    for start in image.function_starts():
        if start in covered or not image.is_executable(start):
            continue
        name = f"sub_{start:x}"
        symbols.append(Symbol(name, name, start, "function", "inferred"))

    symbols.sort(key=lambda s: (s.address, s.name))
    log.info(
        "symbols_loaded",
        total=len(symbols),
        inferred=sum(1 for s in symbols if s.source == "inferred"),
    )
    return tuple(symbols)


def _read_nlist(image: BinaryImage) -> list[tuple[str, int, bool]]:
    symtab = image.symtab
    if symtab is None or symtab.nsyms == 0:
        return []

    try:
        table = image.read_linkedit(symtab.symoff, symtab.nsyms * NLIST_64.size)
        strings = image.read_linkedit(symtab.stroff, symtab.strsize)
    except ImageReadError as exc:
        log.warning("symtab_unreadable", error=str(exc))
        return []

    entries: list[tuple[str, int, bool]] = []
    for index in range(symtab.nsyms):
        n_strx, n_type, _n_sect, _n_desc, n_value = NLIST_64.unpack_from(table, index * NLIST_64.size)
        if n_type & N_STAB:
            continue
        if (n_type & N_TYPE) not in (N_SECT, N_ABS) or n_value == 0:
            continue
        name = _string_at(strings, n_strx)
        if not name:
            continue
        # Symbol values are link-time addresses
        entries.append((name, n_value + image.slide, bool(n_type & N_EXT)))
    return entries


def _string_at(strings: bytes, offset: int) -> str:
    if offset <= 0 or offset >= len(strings):
        return ""
    end = strings.find(b"\x00", offset)
    if end == -1:
        end = len(strings)
    return strings[offset:end].decode("utf-8", errors="replace")
