from __future__ import annotations

import numpy as np
import pytest

from loopsched import (
    NotFound,
    PreconditionViolation,
    Program,
    Schedule,
    run_interpreter,
    unit,
)


def gen_scale():
    @unit
    def scale(A: f32[4, 6], B: f32[4, 6]):
        for i in seq(0, 4, stage="S"):
            for j in seq(0, 6):
                B[i, j] = A[i, j] * 2.0

    return scale


def gen_call():
    @unit
    def bump(X: f32[8]):
        for i in seq(0, 8, stage="K"):
            X[i] = X[i] + 1.0

    @unit
    def top(A: f32[8]):
        bump(A)

    return Program([bump, top])


def _run(p, A):
    B = np.zeros((4, 6), dtype=np.float32)
    run_interpreter(p, {"A": A, "B": B})
    return B


# --------------------------------------------------------------------------- #
# reshape


@pytest.mark.parametrize("shape", [[24], [2, 12], [2, 3, 4]])
def test_reshape(rng, shape):
    s = Schedule(gen_scale())
    s.reshape("A", shape)
    p = s.apply()

    _, _, typ = p.find_array("A")
    assert typ.shape() == shape
    assert typ.layout is None

    A = rng.uniform(-1.0, 1.0, size=(4, 6)).astype(np.float32)
    B = _run(p, A.reshape(shape))
    np.testing.assert_allclose(B, A * 2.0)


def test_reshape_to_a_flat_index():
    s = Schedule(gen_scale())
    s.reshape("A", [24])
    p = s.apply()
    text = str(p.unit("scale"))
    assert "A[6 * i + j]" in text or "A[j + 6 * i]" in text


def test_reshape_element_count_mismatch():
    s = Schedule(gen_scale())
    s.reshape("A", [5, 5])
    with pytest.raises(PreconditionViolation, match=r"\(24 elements\)"):
        s.apply()


def test_reshape_bad_shape():
    s = Schedule(gen_scale())
    s.reshape("A", [0, 24])
    with pytest.raises(PreconditionViolation, match="positive integers"):
        s.apply()


def test_reshape_across_a_call():
    s = Schedule(gen_call())
    s.reshape("A", [2, 4])
    with pytest.raises(PreconditionViolation, match="crosses a call boundary"):
        s.apply()

    # the callee's parameter is passed in by the caller too
    s = Schedule(gen_call())
    s.reshape("X", [2, 4])
    with pytest.raises(PreconditionViolation, match="crosses a call boundary"):
        s.apply()


def test_reshape_missing_array():
    s = Schedule(gen_scale())
    s.reshape("Z", [24])
    with pytest.raises(NotFound, match="Reshape: Cannot find array 'Z'"):
        s.apply()


# --------------------------------------------------------------------------- #
# layout


def test_layout_transpose(rng):
    s = Schedule(gen_scale())
    s.layout("A", [1, 0])
    p = s.apply()

    _, _, typ = p.find_array("A")
    assert typ.shape() == [6, 4]
    assert "B[i, j] = A[j, i] * 2.0" in str(p.unit("scale"))

    A = rng.uniform(-1.0, 1.0, size=(4, 6)).astype(np.float32)
    B = _run(p, np.ascontiguousarray(A.T))
    np.testing.assert_allclose(B, A * 2.0)


def test_layout_identity_is_a_no_op():
    scale = gen_scale()
    s = Schedule(scale)
    s.layout("A", [0, 1])
    p = s.apply()
    assert str(p.unit("scale")) == str(scale)


def test_layout_not_a_permutation():
    s = Schedule(gen_scale())
    s.layout("A", [0, 0])
    with pytest.raises(PreconditionViolation, match="expected a permutation"):
        s.apply()


def test_layout_across_a_call():
    s = Schedule(gen_call())
    s.layout("A", [0])
    with pytest.raises(PreconditionViolation, match="crosses a call boundary"):
        s.apply()


# --------------------------------------------------------------------------- #
# inter-kernel streams


def test_stream_default_depth():
    s = Schedule(gen_scale())
    s.to("B")
    p = s.apply()

    _, _, typ = p.find_array("B")
    assert typ.stream == 24
    assert "B: f32[4, 6] @ stream(24)" in str(p.unit("scale"))


def test_stream_depth():
    s = Schedule(gen_scale())
    s.to("B", depth=4)
    p = s.apply()
    assert p.find_array("B")[2].stream == 4


def test_stream_propagates_into_callees():
    s = Schedule(gen_call())
    s.to("A", depth=2)
    p = s.apply()
    assert p.unit("top").args[0].type.stream == 2
    assert p.unit("bump").args[0].type.stream == 2


def test_stream_bad_depth():
    s = Schedule(gen_scale())
    s.to("B", depth=0)
    with pytest.raises(PreconditionViolation, match="positive FIFO depth"):
        s.apply()


def test_stream_missing_array():
    s = Schedule(gen_scale())
    s.to("Z")
    with pytest.raises(NotFound, match="InterKernel: Cannot find array 'Z'"):
        s.apply()
