"""Cross-reference graph over direct branches in executable code."""

from __future__ import annotations

import bisect
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Iterable, Literal

from revoffsets.config.defaults import DEFAULT_XREF_CHUNK_SIZE
from revoffsets.errors import ImageReadError, PipelineCancelled
from revoffsets.image.accessor import BinaryImage, Region
from revoffsets.utils.logging import get_logger
from revoffsets.xrefs.decoder import Decoder, branch_target

log = get_logger(__name__)

EdgeKind = Literal["call", "branch", "tail-call"]


@dataclass(frozen=True, order=True)
class XrefEdge:
    caller: int
    callee: int
    instruction: int
    kind: EdgeKind


class XrefGraph:
    """Directed multigraph of code references; cycles and self-loops are fine."""

    def __init__(self, edges: Iterable[XrefEdge] = ()) -> None:
        self._edges = frozenset(edges)
        self._out: dict[int, set[XrefEdge]] = defaultdict(set)
        self._in: dict[int, set[XrefEdge]] = defaultdict(set)
        for edge in self._edges:
            self._out[edge.caller].add(edge)
            self._in[edge.callee].add(edge)

    def __len__(self) -> int:
        return len(self._edges)

    def __contains__(self, edge: object) -> bool:
        return edge in self._edges

    @property
    def edges(self) -> tuple[XrefEdge, ...]:
        return tuple(sorted(self._edges))

    def edges_to(self, callee: int) -> tuple[XrefEdge, ...]:
        return tuple(sorted(self._in.get(callee, ())))

    def callers_of(self, address: int) -> tuple[int, ...]:
        return tuple(sorted({e.caller for e in self._in.get(address, ())}))

    def callees_of(self, address: int) -> tuple[int, ...]:
        return tuple(sorted({e.callee for e in self._out.get(address, ())}))

    def incoming_count(self, address: int) -> int:
        """Number of distinct callers referencing ``address``."""
        return len({e.caller for e in self._in.get(address, ())})

    def reachable(self, start: int) -> frozenset[int]:
        """Every address reachable from ``start`` (``start`` included)."""
        seen = {start}
        work = [start]
        while work:
            node = work.pop()
            for edge in self._out.get(node, ()):
                if edge.callee not in seen:
                    seen.add(edge.callee)
                    work.append(edge.callee)
        return frozenset(seen)

    def call_depth(self, source: int, target: int) -> int | None:
        """Fewest edges from ``source`` to ``target``, or None when unreachable."""
        if source == target:
            return 0
        seen = {source}
        queue = deque([(source, 0)])
        while queue:
            node, depth = queue.popleft()
            for edge in self._out.get(node, ()):
                if edge.callee == target:
                    return depth + 1
                if edge.callee not in seen:
                    seen.add(edge.callee)
                    queue.append((edge.callee, depth + 1))
        return None


def build_xrefs(
    image: BinaryImage,
    candidate_addresses: Iterable[int],
    *,
    function_starts: Iterable[int] = (),
    regions: Iterable[Region] | None = None,
    chunk_size: int = DEFAULT_XREF_CHUNK_SIZE,
    cancel: threading.Event | None = None,
    errors: list[ImageReadError] | None = None,
) -> XrefGraph:
    """Decode code regions and keep the direct branches touching a candidate.

    An edge is kept when its caller or callee is a candidate and the callee
    lies in an executable segment. A region that cannot be read is skipped
    and its error appended to ``errors``.
    """
    candidates = frozenset(candidate_addresses)
    starts = sorted(set(function_starts) | candidates)
    start_set = frozenset(starts)
    decoder = Decoder()
    edges: set[XrefEdge] = set()

    for region in regions if regions is not None else image.code_regions():
        try:
            code = image.read_bytes(region.start, region.size)
        except ImageReadError as exc:
            log.warning("xref_region_unreadable", region=region.name, error=str(exc))
            if errors is not None:
                errors.append(exc)
            continue
        # Fixed-width instructions: chunk boundaries stay aligned
        step = max(4, chunk_size - chunk_size % 4)
        for lo in range(0, len(code), step):
            if cancel is not None and cancel.is_set():
                raise PipelineCancelled("xref build cancelled")
            for insn in decoder.disassemble(code[lo : lo + step], region.start + lo):
                callee = branch_target(insn)
                if callee is None:
                    continue
                index = bisect.bisect_right(starts, insn.address) - 1
                caller = starts[index] if index >= 0 else insn.address
                if callee not in candidates and caller not in candidates:
                    continue
                if not image.is_executable(callee):
                    continue
                if insn.mnemonic == "bl":
                    kind: EdgeKind = "call"
                elif insn.mnemonic == "b" and callee in start_set and callee != caller:
                    kind = "tail-call"
                else:
                    kind = "branch"
                edges.add(XrefEdge(caller, callee, insn.address, kind))

    graph = XrefGraph(edges)
    log.info("xrefs_built", edges=len(graph), candidates=len(candidates))
    return graph
