"""Byte patterns with wildcards and their matching primitives."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Sequence

from revoffsets.errors import CatalogError

Token = int | None

_WILDCARDS = {"?", "??"}


def parse_pattern(text: str) -> tuple[Token, ...]:
    """Parse ``"F9 ?? 40 B9"`` into byte tokens, ``None`` standing for a wildcard."""
    tokens: list[Token] = []
    for part in text.split():
        if part in _WILDCARDS:
            tokens.append(None)
            continue
        if len(part) != 2:
            raise CatalogError(f"bad pattern token {part!r} in {text!r}")
        try:
            tokens.append(int(part, 16))
        except ValueError:
            raise CatalogError(f"bad pattern token {part!r} in {text!r}") from None
    if not tokens:
        raise CatalogError("empty pattern")
    return tuple(tokens)


def format_pattern(tokens: Sequence[Token]) -> str:
    return " ".join("??" if t is None else f"{t:02X}" for t in tokens)


def longest_literal_run(tokens: Sequence[Token]) -> tuple[int, bytes]:
    """Return (offset, bytes) of the longest run of non-wildcard tokens; earliest wins ties."""
    best_start, best_len = 0, 0
    start = None
    for i, tok in enumerate([*tokens, None]):
        if tok is not None:
            if start is None:
                start = i
            continue
        if start is not None:
            if i - start > best_len:
                best_start, best_len = start, i - start
            start = None
    run = bytes(t for t in tokens[best_start : best_start + best_len])  # type: ignore[misc]
    return best_start, run


@dataclass(frozen=True)
class PatternRule:
    rule_id: str
    target: str
    tokens: tuple[Token, ...]
    region: str | None = None
    alignment: int = 1

    @property
    def length(self) -> int:
        return len(self.tokens)

    @property
    def specificity(self) -> float:
        literal = sum(1 for t in self.tokens if t is not None)
        return literal / len(self.tokens)

    def compile(self) -> CompiledPattern:
        return CompiledPattern.from_tokens(self.tokens)


@dataclass(frozen=True)
class CompiledPattern:
    tokens: tuple[Token, ...]
    anchor: bytes
    anchor_offset: int
    literals: tuple[tuple[int, int], ...] = field(repr=False)

    @classmethod
    def from_tokens(cls, tokens: Sequence[Token]) -> CompiledPattern:
        offset, run = longest_literal_run(tokens)
        literals = tuple((i, t) for i, t in enumerate(tokens) if t is not None)
        return cls(tuple(tokens), run, offset, literals)

    @property
    def length(self) -> int:
        return len(self.tokens)

    def matches_at(self, buf: bytes | memoryview, pos: int) -> bool:
        if pos < 0 or pos + self.length > len(buf):
            return False
        for i, value in self.literals:
            if buf[pos + i] != value:
                return False
        return True

    def finditer(
        self,
        buf: bytes,
        lo: int = 0,
        hi: int | None = None,
        *,
        base: int = 0,
        alignment: int = 1,
        skip_search: bool = True,
    ) -> Iterator[int]:
        """Yield every match start in ``[lo, hi)`` in ascending order.

        ``base`` is the address of ``buf[0]``; alignment is applied to
        ``base + start``. Matches must fit entirely inside ``buf``.
        """
        last_start = len(buf) - self.length
        hi = last_start + 1 if hi is None else min(hi, last_start + 1)
        if lo >= hi:
            return

        if not self.anchor or not skip_search:
            yield from self._naive(buf, lo, hi, base, alignment)
            return

        off = self.anchor_offset
        end = min(len(buf), hi + off + len(self.anchor) - 1)
        pos = buf.find(self.anchor, lo + off, end)
        while pos != -1:
            start = pos - off
            if (base + start) % alignment == 0 and self.matches_at(buf, start):
                yield start
            pos = buf.find(self.anchor, pos + 1, end)

    def _naive(self, buf: bytes, lo: int, hi: int, base: int, alignment: int) -> Iterator[int]:
        first = lo + (-(base + lo)) % alignment
        if not self.literals:
            yield from range(first, hi, alignment)
            return
        for start in range(first, hi, alignment):
            if self.matches_at(buf, start):
                yield start
