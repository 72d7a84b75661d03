"""Tests for the cross-reference graph."""

import threading

import pytest

from revoffsets.errors import PipelineCancelled
from revoffsets.image.accessor import FileImage
from revoffsets.xrefs.graph import XrefEdge, XrefGraph, build_xrefs
from synthetic_macho import CODE_ADDR, LUA_GETTOP, RET, b, bl, build_macho, cbz_x, place, words

F = CODE_ADDR
G = CODE_ADDR + 0x40
H = CODE_ADDR + 0x80


def _image(tmp_path, code):
    path = tmp_path / "xref_target"
    path.write_bytes(build_macho(code))
    return FileImage(path, path.read_bytes())


def _code():
    return place(
        {
            0x00: LUA_GETTOP,
            # G: calls F, tail-calls H
            0x40: words(bl(G, F), b(G + 4, H)),
            # H: conditional branch inside itself, then calls G (cycle G -> H -> G)
            0x80: words(cbz_x(0, H, H + 8), bl(H + 4, G), RET),
        }
    )


def test_edges_and_kinds(tmp_path):
    graph = build_xrefs(_image(tmp_path, _code()), [F, G, H], function_starts=[F, G, H])
    assert XrefEdge(G, F, G, "call") in graph
    assert XrefEdge(G, H, G + 4, "tail-call") in graph
    assert XrefEdge(H, G, H + 4, "call") in graph
    assert XrefEdge(H, H + 8, H, "branch") in graph
    assert graph.callers_of(F) == (G,)
    assert graph.callees_of(G) == (F, H)
    assert graph.incoming_count(G) == 1


def test_only_edges_touching_candidates(tmp_path):
    graph = build_xrefs(_image(tmp_path, _code()), [F], function_starts=[F, G, H])
    assert {(e.caller, e.callee) for e in graph.edges} == {(G, F)}


def test_caller_falls_back_to_instruction(tmp_path):
    code = place({0x00: words(bl(F, G), RET)})
    graph = build_xrefs(_image(tmp_path, code), [G])
    # no known start at or before F, so the instruction itself is the caller
    assert graph.edges == (XrefEdge(F, G, F, "call"),)


def test_branches_outside_code_are_dropped(tmp_path):
    code = place({0x00: words(bl(F, F + 0x4000), RET)})
    graph = build_xrefs(_image(tmp_path, code), [F], function_starts=[F])
    assert len(graph) == 0


def test_cancellation(tmp_path):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(PipelineCancelled):
        build_xrefs(_image(tmp_path, _code()), [F], cancel=cancel)


def test_reachability_handles_cycles_and_self_loops():
    graph = XrefGraph(
        [
            XrefEdge(1, 2, 10, "call"),
            XrefEdge(2, 3, 20, "call"),
            XrefEdge(3, 1, 30, "tail-call"),
            XrefEdge(3, 3, 31, "branch"),
            XrefEdge(4, 1, 40, "call"),
        ]
    )
    assert graph.reachable(1) == {1, 2, 3}
    assert graph.reachable(4) == {1, 2, 3, 4}
    assert graph.call_depth(1, 3) == 2
    assert graph.call_depth(4, 3) == 3
    assert graph.call_depth(1, 4) is None
    assert graph.call_depth(2, 2) == 0
    assert graph.incoming_count(1) == 2
    assert graph.incoming_count(3) == 2


def test_long_chain_does_not_recurse():
    edges = [XrefEdge(i, i + 1, i, "call") for i in range(5000)]
    graph = XrefGraph(edges)
    assert len(graph.reachable(0)) == 5001
    assert graph.call_depth(0, 5000) == 5000
