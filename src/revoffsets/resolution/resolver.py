"""Candidate ranking for catalog targets and structure fields."""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Mapping, Sequence

from revoffsets.catalog.models import StructureSpec, TargetSpec
from revoffsets.errors import AmbiguousResolution
from revoffsets.resolution.evidence import Evidence, Weights, compute_confidence, dominant_method
from revoffsets.scanning.scanner import MatchCandidate
from revoffsets.snapshot.models import OffsetRecord, StructureOffset
from revoffsets.structures.inference import combine_observations
from revoffsets.symbols.reader import SymbolTable
from revoffsets.utils.logging import get_logger
from revoffsets.xrefs.graph import XrefGraph

log = get_logger(__name__)

# target -> candidate address -> field observations made from that address
StructureResults = Mapping[str, Mapping[int, frozenset[StructureOffset]]]


@dataclass(frozen=True)
class RankedCandidate:
    evidence: Evidence
    confidence: float

    @property
    def address(self) -> int:
        return self.evidence.address

    def sort_key(self) -> tuple[float, float, int]:
        return (-self.confidence, -self.evidence.pattern_specificity, self.address)


def structural_consistency(
    target: str,
    address: int,
    structure_results: StructureResults,
) -> float:
    """Share of the target's corroborable fields whose offset another anchor confirms."""
    own = structure_results.get(target, {})
    fields = {obs.key for observations in own.values() for obs in observations}
    if not fields:
        return 0.0

    others: dict[tuple[str, str], set[int]] = defaultdict(set)
    for other, by_address in structure_results.items():
        if other == target:
            continue
        for observations in by_address.values():
            for obs in observations:
                if obs.key in fields:
                    others[obs.key].add(obs.offset)
    if not others:
        return 0.0

    here = own.get(address, frozenset())
    confirmed = {obs.key for obs in here if obs.offset in others.get(obs.key, ())}
    return len(confirmed) / len(others)


def collect_evidence(
    target: TargetSpec,
    scanner_results: Mapping[str, Sequence[MatchCandidate]],
    symbol_results: SymbolTable,
    xref_graph: XrefGraph | None,
    structure_results: StructureResults | None = None,
    callers: Sequence[int] = (),
) -> list[Evidence]:
    """One Evidence per candidate, ascending by address.

    Candidates are symbol hits, pattern hits and the proposed ``callers``;
    each caller carries an equal share of the caller weight.
    """
    symbol_hits = set(symbol_results.addresses_for(target.symbol_names()))
    proposed = set(callers)

    # Best rule per address: highest specificity per match
    pattern: dict[int, tuple[float, int]] = {}
    for hits in scanner_results.values():
        if not hits or hits[0].target != target.name:
            continue
        for hit in hits:
            current = pattern.get(hit.address)
            if current is None or hit.score / len(hits) > current[0] / current[1]:
                pattern[hit.address] = (hit.score, len(hits))

    evidence = []
    for address in sorted(symbol_hits | set(pattern) | proposed):
        specificity, matches = pattern.get(address, (0.0, 0))
        evidence.append(
            Evidence(
                address=address,
                symbol_hit=address in symbol_hits,
                pattern_specificity=specificity,
                pattern_matches=matches,
                xref_count=xref_graph.incoming_count(address) if xref_graph is not None else 0,
                structural_consistency=(
                    structural_consistency(target.name, address, structure_results)
                    if structure_results
                    else 0.0
                ),
                caller_share=1 / len(proposed) if address in proposed else 0.0,
            )
        )
    return evidence


def rank(evidence: Sequence[Evidence], weights: Weights) -> list[RankedCandidate]:
    ranked = [RankedCandidate(e, compute_confidence(e, weights)) for e in evidence]
    ranked.sort(key=RankedCandidate.sort_key)
    return ranked


def resolve(
    target: TargetSpec,
    scanner_results: Mapping[str, Sequence[MatchCandidate]],
    symbol_results: SymbolTable,
    xref_graph: XrefGraph | None,
    structure_results: StructureResults | None,
    weights: Weights,
    *,
    issues: list[Exception] | None = None,
    callers: Sequence[int] = (),
) -> OffsetRecord:
    """Pick the best-supported address for ``target``.

    The winner must score strictly above ``weights.min_confidence``. When
    several candidates tie on confidence and specificity the lowest address
    wins, the record is flagged ambiguous and an AmbiguousResolution is
    appended to ``issues``.
    """
    ranked = rank(
        collect_evidence(target, scanner_results, symbol_results, xref_graph, structure_results, callers),
        weights,
    )
    if not ranked or ranked[0].confidence <= weights.min_confidence:
        log.debug("target_unresolved", target=target.name, candidates=len(ranked))
        return OffsetRecord(target.name, None, 0.0, "none", target.category, len(ranked))

    best = ranked[0]
    tied = tuple(
        c.address
        for c in ranked
        if math.isclose(c.confidence, best.confidence, abs_tol=1e-12)
        and math.isclose(c.evidence.pattern_specificity, best.evidence.pattern_specificity, abs_tol=1e-12)
    )
    ambiguous = len(tied) > 1
    if ambiguous:
        issue = AmbiguousResolution(target.name, tied)
        log.info("target_ambiguous", target=target.name, addresses=[hex(a) for a in tied])
        if issues is not None:
            issues.append(issue)

    return OffsetRecord(
        name=target.name,
        address=best.address,
        confidence=best.confidence,
        method=dominant_method(best.evidence, weights),
        category=target.category,
        candidates=len(ranked),
        ambiguous=ambiguous,
    )


def resolve_structure(
    spec: StructureSpec,
    observations_by_anchor: StructureResults,
    resolved_anchors: Mapping[str, int | None],
    *,
    base_confidence: float,
    full_support_anchors: int,
) -> tuple[StructureOffset, ...]:
    """Ranked field offsets using only each anchor's winning address."""
    observations: list[StructureOffset] = []
    for anchor in spec.anchor_targets():
        address = resolved_anchors.get(anchor)
        if address is None:
            continue
        found = observations_by_anchor.get(anchor, {}).get(address, frozenset())
        observations.extend(o for o in found if o.structure == spec.name)
    return combine_observations(
        observations,
        base_confidence=base_confidence,
        full_support_anchors=full_support_anchors,
    )
