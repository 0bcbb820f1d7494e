from __future__ import annotations

import logging

import pytest

from loopsched import (
    PreconditionViolation,
    Program,
    Schedule,
    SchedulingError,
    apply_schedule,
    unit,
)
from loopsched.api.directives import D
from loopsched.core.program import find_loop, loop_labels


def gen_nest():
    @unit
    def nest(A: f32[8, 16], B: f32[8, 16]):
        for i in seq(0, 8, stage="S"):
            for j in seq(0, 16):
                B[i, j] = A[i, j] * 3.0

    return nest


def _labels(p, stage="S"):
    _, stage_c = p.find_stage(stage)
    return loop_labels(stage_c)


def test_directives_run_in_order(check_equivalent):
    nest = gen_nest()
    s = Schedule(nest)
    io, ii = s.split("S", "i", 4)
    s.reorder("S", io, "j", ii)
    s.parallel("S", io)
    assert [type(d) for d in s.directives] == [D.Split, D.Reorder, D.Parallel]

    p = s.apply()
    assert _labels(p) == ["i.outer", "j", "i.inner"]
    _, stage_c = p.find_stage("S")
    assert find_loop(stage_c, "i.outer")._node.info.parallel
    assert s.directives == []
    check_equivalent(nest, p)


def test_apply_schedule_on_a_program():
    p = Program([gen_nest()])
    s = Schedule(p)
    s.split("S", "j", 4)
    assert apply_schedule(p) is p
    assert _labels(p) == ["i", "j.outer", "j.inner"]


def test_failing_directive_stops_the_schedule():
    s = Schedule(gen_nest())
    s.unroll("S", "j", 2)
    s.split("S", "i", 100)
    s.parallel("S", "j")

    with pytest.raises(PreconditionViolation) as exc:
        s.apply()
    err = exc.value
    assert str(err).startswith("Split: The requested tiling factor (100)")
    assert isinstance(err.directive, D.Split)
    assert "tiling factor" in err.reason

    # the unroll before the failure is kept
    _, stage_c = s.program.find_stage("S")
    assert find_loop(stage_c, "j")._node.info.unroll == 2
    assert _labels(s.program) == ["i", "j"]
    # the failing directive and everything after it remain
    assert [type(d) for d in s.directives] == [D.Split, D.Parallel]


def test_resume_after_dropping_the_failing_directive():
    s = Schedule(gen_nest())
    s.split("S", "i", 100)
    s.parallel("S", "j")
    with pytest.raises(SchedulingError):
        s.apply()

    s.program.directives.pop(0)
    p = s.apply()
    _, stage_c = p.find_stage("S")
    assert find_loop(stage_c, "j")._node.info.parallel


def test_handles_are_collected():
    s = Schedule(gen_nest())
    io, ii = s.split("S", "i", 2)
    s.unroll("S", ii)
    assert io in s.program.handles and ii in s.program.handles
    assert not s.program.handles.is_bound(io)

    p = s.apply()
    assert len(p.handles) == 0


def test_failed_schedule_keeps_referenced_handles():
    s = Schedule(gen_nest())
    s.unroll("S", "j", 2)
    io, ii = s.split("S", "i", 100)
    s.parallel("S", io)
    with pytest.raises(SchedulingError):
        s.apply()

    live = set(s.program.handles)
    assert io in live and ii in live
    assert not s.program.handles.is_bound(io)


def test_bad_options():
    s = Schedule(gen_nest())
    s.parallel("S", "i")
    with pytest.raises(TypeError, match="expected ScheduleOptions"):
        s.apply({"allow_structural_fallback": True})


def test_unknown_directive():
    p = Program([gen_nest()])
    p.directives.append(object())
    with pytest.raises(NotImplementedError, match="bad case"):
        apply_schedule(p)


def test_driver_logs_each_directive(caplog):
    s = Schedule(gen_nest())
    s.split("S", "i", 4)
    with caplog.at_level(logging.DEBUG, logger="loopsched"):
        s.apply()
    messages = [r.getMessage() for r in caplog.records]
    assert "Scanning -> Dispatch: Split" in messages
    assert "Dispatch -> Rewritten: Split" in messages
