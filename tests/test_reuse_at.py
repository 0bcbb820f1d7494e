from __future__ import annotations

import numpy as np
import pytest

from loopsched import (
    K,
    NotFound,
    PreconditionViolation,
    Schedule,
    Unsupported,
    run_interpreter,
    unit,
)
from loopsched.core.program import find_loop, loops_of


def gen_blur1d():
    @unit
    def blur1d(A: f32[10], B: f32[8]):
        for x in seq(0, 8, stage="S"):
            B[x] = A[x] + A[x + 1] + A[x + 2]

    return blur1d


def gen_box():
    @unit
    def box(A: f32[10, 10], B: f32[8, 8]):
        for y in seq(0, 8, stage="S"):
            for x in seq(0, 8):
                for r in seq(0, 3, kind="reduction"):
                    for c in seq(0, 3, kind="reduction"):
                        B[y, x] += A[y + r, x + c]

    return box


def _loads(p, rng, array="A"):
    entry = p.top_unit()
    args = {
        str(a.name): rng.uniform(-1.0, 1.0, size=a.type.shape()).astype(np.float32)
        for a in entry.args
    }
    return run_interpreter(p, args).loads[array]


def test_reuse_at_1d(check_equivalent, rng):
    blur1d = gen_blur1d()
    s = Schedule(blur1d)
    s.reuse_at("A", "S", "x")
    p = s.apply()

    _, _, buf = p.find_array("S_reuse_0")
    assert buf.shape() == [3]
    _, stage_c = p.find_stage("S")
    assert stage_c._node.trip_count() == 10
    # every element of A is loaded exactly once
    assert _loads(p, rng) == 10
    check_equivalent(blur1d, p)


def test_reuse_at_orders_loads_by_offset(check_equivalent, rng):
    @unit
    def shuffled(A: f32[10], B: f32[8]):
        for x in seq(0, 8, stage="S"):
            B[x] = A[x + 2] * 3.0 + A[x] - A[x + 1]

    s = Schedule(shuffled)
    s.reuse_at("A", "S", "x")
    p = s.apply()

    _, _, buf = p.find_array("S_reuse_0")
    assert buf.shape() == [3]
    assert _loads(p, rng) == 10
    check_equivalent(shuffled, p)


def test_reuse_at_window_with_a_gap():
    @unit
    def gapped(A: f32[13], B: f32[8]):
        for x in seq(0, 8, stage="S"):
            B[x] = A[x] + A[x + 1] + A[x + 5]

    s = Schedule(gapped)
    s.reuse_at("A", "S", "x")
    with pytest.raises(Unsupported, match="stride 1"):
        s.apply()


def test_reuse_at_named_buffer():
    s = Schedule(gen_blur1d())
    s.reuse_at("A", "S", "x", name="window")
    p = s.apply()
    assert p.find_array("window") is not None
    assert p.find_array("S_reuse_0") is None


def test_reuse_at_rows(check_equivalent, rng):
    box = gen_box()
    s = Schedule(box)
    s.reuse_at("A", "S", "y")
    p = s.apply()

    _, _, buf = p.find_array("S_reuse_0")
    assert buf.shape() == [3, 10]
    _, stage_c = p.find_stage("S")
    shift = [c._node for c in loops_of(stage_c) if c._node.info.kind is K.Spatial]
    assert len(shift) == 1
    assert shift[0].trip_count() == 10
    assert _loads(p, rng) == 100
    check_equivalent(box, p)


def test_reuse_at_rows_then_columns(check_equivalent, rng):
    box = gen_box()
    s = Schedule(box)
    s.reuse_at("A", "S", "y")
    s.reuse_at("S_reuse_0", "S", "x")
    p = s.apply()

    _, _, window = p.find_array("S_reuse_1")
    assert window.shape() == [3, 3]
    _, stage_c = p.find_stage("S")
    # the column shift of the row buffer runs in the steps of 'x'
    x = find_loop(stage_c, "x")
    assert x._node.trip_count() == 10
    assert stage_c._node.body == [x._node]
    assert _loads(p, rng) == 100
    check_equivalent(box, p)


def test_reuse_at_rows_then_columns_of_a_wider_array(check_equivalent):
    @unit
    def wide(A: f32[10, 12], B: f32[8, 8]):
        for y in seq(0, 8, stage="S"):
            for x in seq(0, 8):
                for r in seq(0, 3, kind="reduction"):
                    for c in seq(0, 3, kind="reduction"):
                        B[y, x] += A[y + r, x + c]

    s = Schedule(wide)
    s.reuse_at("A", "S", "y")
    s.reuse_at("S_reuse_0", "S", "x")
    p = s.apply()

    _, stage_c = p.find_stage("S")
    shift = {
        c._node.name(): c._node.trip_count()
        for c in loops_of(stage_c)
        if c._node.info.kind is K.Spatial
    }
    # the row shift spans 12 columns, x only 10 steps; they stay apart
    assert shift == {"S_reuse_0_s1": 12, "S_reuse_1_s0": 3}
    x = find_loop(stage_c, "x")
    assert x._node.trip_count() == 10
    assert len(stage_c._node.body) == 2
    check_equivalent(wide, p)


def test_reuse_at_non_unit_stride():
    @unit
    def strided(A: f32[16], B: f32[8]):
        for x in seq(0, 8, stage="S"):
            B[x] = A[2 * x] + A[2 * x + 1]

    s = Schedule(strided)
    s.reuse_at("A", "S", "x")
    before = str(s.program)
    with pytest.raises(Unsupported, match="Only support stride 1 reuse pattern"):
        s.apply()
    assert str(s.program) == before
    assert s.program.find_array("S_reuse_0") is None


def test_reuse_at_without_overlap():
    @unit
    def gapped(A: f32[12], B: f32[8]):
        for x in seq(0, 8, stage="S"):
            B[x] = A[x] + A[x + 3]

    s = Schedule(gapped)
    s.reuse_at("A", "S", "x")
    with pytest.raises(Unsupported, match="stride 1"):
        s.apply()


def test_reuse_at_negative_offset():
    @unit
    def back(A: f32[8], B: f32[8]):
        for x in seq(0, 8, stage="S"):
            B[x] = A[x - 1] + A[x]

    s = Schedule(back)
    s.reuse_at("A", "S", "x")
    with pytest.raises(Unsupported, match="negative offsets"):
        s.apply()


def test_reuse_at_window_exceeds_array():
    @unit
    def over(A: f32[8], B: f32[8]):
        for x in seq(0, 8, stage="S"):
            B[x] = A[x] + A[x + 1]

    s = Schedule(over)
    s.reuse_at("A", "S", "x")
    with pytest.raises(PreconditionViolation, match="exceeds the extent"):
        s.apply()


def test_reuse_at_reduction_axis():
    s = Schedule(gen_box())
    s.reuse_at("A", "S", "r")
    with pytest.raises(Unsupported, match="non-reduction loop"):
        s.apply()


def test_reuse_at_needs_normalized_loops():
    @unit
    def shifted(A: f32[12], B: f32[12]):
        for x in seq(2, 10, stage="S"):
            B[x] = A[x] + A[x + 1]

    s = Schedule(shifted)
    s.reuse_at("A", "S", "x")
    with pytest.raises(PreconditionViolation, match="zero lower bound"):
        s.apply()


def test_reuse_at_array_without_loads():
    s = Schedule(gen_blur1d())
    s.reuse_at("B", "S", "x")
    with pytest.raises(Unsupported, match="no loads of 'B'"):
        s.apply()


def test_reuse_at_missing_array():
    s = Schedule(gen_blur1d())
    s.reuse_at("Z", "S", "x")
    with pytest.raises(NotFound, match="ReuseAt: Cannot find array 'Z'"):
        s.apply()
