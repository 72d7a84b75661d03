"""Tests for confidence fusion and candidate resolution."""

import random

import pytest

from revoffsets.catalog.models import StructureSpec, TargetSpec
from revoffsets.errors import AmbiguousResolution
from revoffsets.resolution.evidence import Evidence, Weights, compute_confidence, dominant_method
from revoffsets.resolution.resolver import resolve, resolve_structure, structural_consistency
from revoffsets.scanning.scanner import MatchCandidate
from revoffsets.snapshot.models import StructureOffset
from revoffsets.symbols.reader import Symbol, SymbolTable
from revoffsets.xrefs.graph import XrefEdge, XrefGraph

W = Weights()
TARGET = TargetSpec(name="lua_gettop")
EMPTY = SymbolTable()


def _hits(rule_id, target, addresses, score=0.5):
    return {rule_id: tuple(MatchCandidate(a, rule_id, target, score) for a in addresses)}


def _symbols(*entries):
    return SymbolTable(Symbol("_" + name, name, address, "function", "exported") for name, address in entries)


def test_symbol_only_confidence_is_symbol_weight():
    assert compute_confidence(Evidence(0x10, symbol_hit=True), W) == pytest.approx(0.95)


def test_no_evidence_is_zero():
    assert compute_confidence(Evidence(0x10), W) == 0.0


def test_xref_contribution_is_capped():
    assert compute_confidence(Evidence(0x10, xref_count=2), W) == pytest.approx(0.1)
    assert compute_confidence(Evidence(0x10, xref_count=50), W) == pytest.approx(0.15)


def test_pattern_contribution_divided_by_matches():
    one = compute_confidence(Evidence(0x10, pattern_specificity=0.5, pattern_matches=1), W)
    four = compute_confidence(Evidence(0x10, pattern_specificity=0.5, pattern_matches=4), W)
    assert one == pytest.approx(0.3)
    assert four == pytest.approx(0.075)


@pytest.mark.parametrize("seed", range(50))
def test_confidence_bounded_and_monotonic(seed):
    rng = random.Random(seed)
    evidence = Evidence(
        0x10,
        symbol_hit=rng.random() < 0.5,
        pattern_specificity=rng.random(),
        pattern_matches=rng.randint(0, 10),
        xref_count=rng.randint(0, 20),
        structural_consistency=rng.random(),
    )
    weights = Weights(
        symbol=rng.uniform(0, 2),
        pattern=rng.uniform(0, 2),
        xref=rng.uniform(0, 1),
        xref_cap=rng.uniform(0, 1),
        structure=rng.uniform(0, 1),
    )
    value = compute_confidence(evidence, weights)
    assert 0.0 <= value <= 1.0
    more = Evidence(
        0x10,
        symbol_hit=True,
        pattern_specificity=evidence.pattern_specificity,
        pattern_matches=evidence.pattern_matches,
        xref_count=evidence.xref_count + 1,
        structural_consistency=evidence.structural_consistency,
    )
    assert compute_confidence(more, weights) >= value


def test_callers_share_the_caller_weight():
    one = resolve(TARGET, {}, EMPTY, None, None, W, callers=[0x300])
    assert one.address == 0x300
    assert one.confidence == pytest.approx(0.3)
    assert one.method == "xref"
    assert one.candidates == 1

    # four equally plausible callers stay below the floor
    four = resolve(TARGET, {}, EMPTY, None, None, W, callers=[0x300, 0x400, 0x500, 0x600])
    assert four.address is None
    assert four.candidates == 4


def test_dominant_method():
    assert dominant_method(Evidence(1, symbol_hit=True, xref_count=1), W) == "symbol"
    assert dominant_method(Evidence(1, pattern_specificity=0.5, pattern_matches=1), W) == "pattern"
    assert dominant_method(Evidence(1), W) == "none"


def test_resolve_prefers_symbol():
    record = resolve(
        TARGET,
        _hits("lua_gettop#0", "lua_gettop", [0x100, 0x200]),
        _symbols(("lua_gettop", 0x200)),
        None,
        None,
        W,
    )
    assert record.address == 0x200
    assert record.method == "symbol"
    assert record.candidates == 2
    assert not record.ambiguous


def test_resolve_without_candidates_is_unresolved():
    record = resolve(TARGET, {}, EMPTY, None, None, W)
    assert record.address is None
    assert record.confidence == 0.0
    assert record.method == "none"


def test_floor_must_be_exceeded():
    # one weak pattern hit: 0.6 * 0.25 = 0.15, exactly the floor
    record = resolve(TARGET, _hits("lua_gettop#0", "lua_gettop", [0x100], score=0.25), EMPTY, None, None, W)
    assert record.address is None
    assert record.candidates == 1


def test_other_targets_hits_are_ignored():
    record = resolve(TARGET, _hits("lua_settop#0", "lua_settop", [0x100]), EMPTY, None, None, W)
    assert record.address is None
    assert record.candidates == 0


def test_tie_is_ambiguous_and_lowest_address_wins():
    issues = []
    record = resolve(
        TARGET,
        _hits("lua_gettop#0", "lua_gettop", [0x300, 0x100], score=1.0),
        EMPTY,
        None,
        None,
        W,
        issues=issues,
    )
    assert record.address == 0x100
    assert record.ambiguous
    assert record.confidence == pytest.approx(0.3)
    assert len(issues) == 1
    assert isinstance(issues[0], AmbiguousResolution)
    assert issues[0].addresses == (0x100, 0x300)


def test_xrefs_break_ties():
    graph = XrefGraph([XrefEdge(0x500, 0x300, 0x504, "call")])
    record = resolve(
        TARGET,
        _hits("lua_gettop#0", "lua_gettop", [0x100, 0x300], score=1.0),
        EMPTY,
        graph,
        None,
        W,
    )
    assert record.address == 0x300
    assert not record.ambiguous


def test_best_rule_per_address_wins():
    results = {}
    results.update(_hits("lua_gettop#0", "lua_gettop", [0x100, 0x200, 0x300], score=0.9))
    results.update(_hits("lua_gettop#1", "lua_gettop", [0x200], score=0.5))
    record = resolve(TARGET, results, EMPTY, None, None, W)
    # 0.5 / 1 beats 0.9 / 3
    assert record.address == 0x200
    assert record.confidence == pytest.approx(0.3)


def _offset(field, offset, anchor):
    return StructureOffset("lua_State", field, offset, 8, 1.0, 1, (anchor,))


def test_structural_consistency():
    results = {
        "lua_gettop": {0x100: frozenset({_offset("top", 0x10, "lua_gettop")}), 0x200: frozenset({_offset("top", 0x20, "lua_gettop")})},
        "lua_settop": {0x900: frozenset({_offset("top", 0x10, "lua_settop")})},
    }
    assert structural_consistency("lua_gettop", 0x100, results) == 1.0
    assert structural_consistency("lua_gettop", 0x200, results) == 0.0
    assert structural_consistency("lua_newthread", 0x100, results) == 0.0
    record = resolve(TARGET, _hits("lua_gettop#0", "lua_gettop", [0x100, 0x200], score=1.0), EMPTY, None, results, W)
    assert record.address == 0x100
    assert record.confidence == pytest.approx(0.6 / 2 + 0.1)


def test_resolve_structure_uses_winning_addresses():
    spec = StructureSpec.model_validate(
        {
            "name": "lua_State",
            "fields": [
                {"name": "top", "anchors": [{"target": "lua_gettop"}, {"target": "lua_settop"}]},
            ],
        }
    )
    results = {
        "lua_gettop": {0x100: frozenset({_offset("top", 0x10, "lua_gettop")}), 0x200: frozenset({_offset("top", 0x99, "lua_gettop")})},
        "lua_settop": {0x900: frozenset({_offset("top", 0x10, "lua_settop")})},
    }
    ranked = resolve_structure(
        spec,
        results,
        {"lua_gettop": 0x100, "lua_settop": 0x900},
        base_confidence=0.6,
        full_support_anchors=2,
    )
    assert [(o.offset, o.support) for o in ranked] == [(0x10, 2)]
    assert ranked[0].confidence == pytest.approx(1.0)

    partial = resolve_structure(spec, results, {"lua_gettop": 0x100, "lua_settop": None}, base_confidence=0.6, full_support_anchors=2)
    assert [(o.offset, round(o.confidence, 6)) for o in partial] == [(0x10, 0.8)]
