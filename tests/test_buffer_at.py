from __future__ import annotations

import numpy as np
import pytest

from loopsched import (
    HIR,
    K,
    NotFound,
    PreconditionViolation,
    Schedule,
    Unsupported,
    run_interpreter,
    unit,
)
from loopsched.core.program import find_loop


def gen_gemm():
    @unit
    def gemm(A: f32[4, 6], B: f32[6, 8], C: f32[4, 8]):
        for i in seq(0, 4, stage="S"):
            for j in seq(0, 8):
                for k in seq(0, 6, kind="reduction"):
                    C[i, j] += A[i, k] * B[k, j]

    return gemm


def _check_gemm(p, rng):
    A = rng.uniform(-1.0, 1.0, size=(4, 6)).astype(np.float32)
    B = rng.uniform(-1.0, 1.0, size=(6, 8)).astype(np.float32)
    C = np.zeros((4, 8), dtype=np.float32)
    run_interpreter(p, {"A": A, "B": B, "C": C})
    np.testing.assert_allclose(C, A @ B, rtol=1e-5, atol=1e-5)


def test_buffer_at_row(rng):
    s = Schedule(gen_gemm())
    s.buffer_at("C", "S", "i")
    p = s.apply()

    _, stage_c = p.find_stage("S")
    i = stage_c._node
    alloc = i.body[0]
    assert isinstance(alloc, HIR.Alloc)
    assert str(alloc.name) == "C_buf"
    assert alloc.type.shape() == [8]

    for label in ("j_init", "j_back"):
        info = find_loop(stage_c, label)._node.info
        assert info.kind is K.Buffer
        assert info.pipeline == 1
    # the accumulation itself targets the buffer
    j = find_loop(stage_c, "j")._node
    assert "C_buf[j] += A[i, k] * B[k, j]" in str(j)
    _check_gemm(p, rng)


def test_buffer_at_single_element(rng):
    s = Schedule(gen_gemm())
    s.buffer_at("C", "S", "j", name="acc")
    p = s.apply()

    _, stage_c = p.find_stage("S")
    j = find_loop(stage_c, "j")._node
    alloc = j.body[0]
    assert str(alloc.name) == "acc"
    assert alloc.type.shape() == [1]
    assert [type(b) for b in j.body] == [HIR.Alloc, HIR.Assign, HIR.For, HIR.Assign]
    _check_gemm(p, rng)


def test_buffer_at_with_init_in_stage(check_equivalent):
    @unit
    def gemm_init(A: f32[4, 6], B: f32[6, 8], C: f32[4, 8]):
        for i in seq(0, 4, stage="S"):
            for j in seq(0, 8):
                C[i, j] = 0.0
                for k in seq(0, 6, kind="reduction"):
                    C[i, j] += A[i, k] * B[k, j]

    s = Schedule(gemm_init)
    s.buffer_at("C", "S", "i")
    p = s.apply()
    check_equivalent(gemm_init, p)


def test_buffer_at_innermost_loop():
    s = Schedule(gen_gemm())
    s.buffer_at("C", "S", "k")
    with pytest.raises(PreconditionViolation, match="Cannot buffer at the inner-most loop"):
        s.apply()


def test_buffer_at_inside_reduction():
    @unit
    def gemm_kj(A: f32[4, 6], B: f32[6, 8], C: f32[4, 8]):
        for i in seq(0, 4, stage="S"):
            for k in seq(0, 6, kind="reduction"):
                for j in seq(0, 8):
                    C[i, j] += A[i, k] * B[k, j]

    s = Schedule(gemm_kj)
    s.buffer_at("C", "S", "k")
    with pytest.raises(PreconditionViolation, match="inside the reduction loops"):
        s.apply()


def test_buffer_at_mismatched_indices():
    @unit
    def smear(A: f32[4, 8], C: f32[4, 8]):
        for i in seq(0, 4, stage="S"):
            for j in seq(0, 8):
                for k in seq(0, 2):
                    C[i, j] = C[i, 0] + A[i, j]

    s = Schedule(smear)
    s.buffer_at("C", "S", "i")
    before = str(s.program)
    with pytest.raises(Unsupported, match="do not share one index"):
        s.apply()
    assert str(s.program) == before


def test_buffer_at_index_over_reduction():
    s = Schedule(gen_gemm())
    s.buffer_at("A", "S", "i")
    with pytest.raises(Unsupported, match="must be a function of the loops"):
        s.apply()


def test_buffer_at_missing_array():
    s = Schedule(gen_gemm())
    s.buffer_at("D", "S", "i")
    with pytest.raises(NotFound, match="BufferAt: Cannot find array 'D'"):
        s.apply()
