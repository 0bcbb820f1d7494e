from __future__ import annotations

import pytest

from loopsched import HIR, T, Schedule, Unsupported, unit
from loopsched.core.program import stage_cursor
from loopsched.rewrite.dependence import (
    DepKind,
    analyze_dependences,
    check_fusion,
    get_accesses,
)


def _stages(u, *names):
    return [stage_cursor(u, nm)._node for nm in names]


def test_accesses_of_a_reduction():
    @unit
    def foo(A: f32[8], B: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] += A[i]

    (s,) = _stages(foo, "S")
    accs = get_accesses([s])
    assert [(str(a.name), a.is_write) for a in accs] == [
        ("A", False),
        ("B", False),
        ("B", True),
    ]
    assert all(a.loops == [s] for a in accs)


def test_raw_dependence():
    @unit
    def foo(A: f32[8], B: f32[8], C: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] = A[i] + 1.0
        for i in seq(0, 8, stage="T"):
            C[i] = B[i] * 2.0

    s, t = _stages(foo, "S", "T")
    res = analyze_dependences(s, t)
    assert res.complete
    assert res.has(DepKind.RAW)
    assert not res.has(DepKind.WAR)
    assert res.strategy() == "producer-consumer"


def test_war_and_waw():
    @unit
    def foo(A: f32[8], B: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] = A[i]
        for i in seq(0, 8, stage="T"):
            A[i] = 0.0
            B[i] = 1.0

    s, t = _stages(foo, "S", "T")
    res = analyze_dependences(s, t)
    assert res.has(DepKind.WAR)
    assert res.has(DepKind.WAW)
    assert not res.has(DepKind.RAW)
    assert res.strategy() == "generic"


def test_disjoint_footprints():
    @unit
    def foo(A: f32[16], B: f32[16]):
        for i in seq(0, 8, stage="S"):
            A[i] = 1.0
        for i in seq(0, 8, stage="T"):
            B[i] = A[i + 8]

    s, t = _stages(foo, "S", "T")
    res = analyze_dependences(s, t)
    assert res.complete
    assert res.deps == []


def test_guarded_access_is_unknown():
    @unit
    def foo(A: f32[8], B: f32[8]):
        for i in seq(0, 8, stage="S"):
            A[i] = 1.0
        for i in seq(0, 8, stage="T"):
            if i > 2:
                B[i] = A[i]

    s, t = _stages(foo, "S", "T")
    res = analyze_dependences(s, t)
    assert not res.complete
    assert "guarded" in res.reason
    assert res.deps == []


def test_analysis_does_not_modify_stages():
    @unit
    def foo(A: f32[8], B: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] = A[i]
        for i in seq(0, 8, stage="T"):
            A[i] = B[i]

    s, t = _stages(foo, "S", "T")
    before = str(foo)
    analyze_dependences(s, t)
    check_fusion(s, t, 1)
    assert str(foo) == before


def test_fusion_same_iteration():
    @unit
    def foo(A: f32[8], B: f32[8], C: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] = A[i]
        for i in seq(0, 8, stage="T"):
            C[i] = B[i]

    s, t = _stages(foo, "S", "T")
    assert check_fusion(s, t, 1).ok


def test_fusion_reversing_a_dependence():
    @unit
    def foo(A: f32[9], B: f32[9], C: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] = A[i]
        for i in seq(0, 8, stage="T"):
            C[i] = B[i + 1]

    s, t = _stages(foo, "S", "T")
    check = check_fusion(s, t, 1)
    assert not check.ok
    assert "reverse" in check.reason


def test_fusion_needs_matching_trip_counts():
    @unit
    def foo(A: f32[8], B: f32[8], C: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] = A[i]
        for i in seq(0, 4, stage="T"):
            C[i] = B[i]

    s, t = _stages(foo, "S", "T")
    check = check_fusion(s, t, 1)
    assert not check.ok
    assert "computation slice" in check.reason


def gen_scalar_handoff():
    @unit
    def foo(x: f32, A: f32[8], B: f32[8]):
        for i in seq(0, 8, stage="S"):
            A[i] = 1.0
        for i in seq(0, 8, stage="T"):
            B[i] = x

    # the front-end only assigns to array elements; store into x by hand
    x_sym = foo.args[0].name
    s, t = foo.body
    store = s.body[0]
    rhs = HIR.Const(1.0, T.f32, store.srcinfo)
    s = s.update(body=[HIR.Assign(x_sym, T.f32, [], rhs, store.srcinfo)])
    return foo.update(body=[s, t])


def test_scalar_accesses_are_not_analyzed():
    foo = gen_scalar_handoff()
    s, t = _stages(foo, "S", "T")
    res = analyze_dependences(s, t)
    assert not res.complete
    assert res.reason == "'x' is not an array"
    assert res.deps == []


def test_compute_at_through_a_scalar():
    s = Schedule(gen_scalar_handoff())
    s.compute_at("S", "T", "i")
    with pytest.raises(Unsupported, match="'x' is not an array"):
        s.apply()
