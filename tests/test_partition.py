from __future__ import annotations

import itertools

import pytest

from loopsched import NotFound, PreconditionViolation, Program, Schedule, unit
from loopsched.core.affine import evaluate_map, permutation_map


def gen_copy(n=8, m=8):
    @unit
    def copy(A: f32[n, m], B: f32[n, m]):
        for i in seq(0, n, stage="S"):
            for j in seq(0, m):
                B[i, j] = A[i, j]

    return copy


def gen_copy1(n):
    @unit
    def copy1(A: f32[n], B: f32[n]):
        for i in seq(0, n, stage="S"):
            B[i] = A[i]

    return copy1


def _layout(p, array):
    _, _, typ = p.find_array(array)
    return typ.layout


def test_complete_partition_of_one_dimension(check_equivalent):
    copy = gen_copy()
    s = Schedule(copy)
    s.partition("A", "complete", dim=1)
    p = s.apply()

    layout = _layout(p, "A")
    for i, j in itertools.product(range(8), range(8)):
        bank_i, bank_j, off_i, off_j = evaluate_map(layout, (i, j))
        assert (bank_i, off_i) == (i, 0)
        # the second dimension keeps identity addressing
        assert (bank_j, off_j) == (0, j)
    check_equivalent(copy, p)


def test_complete_partition_of_every_dimension():
    s = Schedule(gen_copy(4, 4))
    s.partition("A")
    p = s.apply()

    layout = _layout(p, "A")
    for i, j in itertools.product(range(4), range(4)):
        assert evaluate_map(layout, (i, j)) == (i, j, 0, 0)


def test_cyclic_partition():
    s = Schedule(gen_copy1(16))
    s.partition("A", "cyclic", dim=1, factor=4)
    p = s.apply()

    layout = _layout(p, "A")
    assert evaluate_map(layout, (10,)) == (2, 2)
    assert 'layout("(d0) -> (d0 mod 4, d0 floordiv 4)")' in str(p.unit("copy1"))


def test_block_partition():
    s = Schedule(gen_copy1(10))
    s.partition("A", "Block", dim=1, factor=4)
    p = s.apply()

    # blocks of ceil(10 / 4) == 3 elements
    layout = _layout(p, "A")
    assert evaluate_map(layout, (7,)) == (2, 1)
    assert evaluate_map(layout, (9,)) == (3, 0)


def test_partition_does_not_touch_accesses():
    copy = gen_copy()
    s = Schedule(copy)
    s.partition("B", "cyclic", dim=2, factor=2)
    p = s.apply()

    _, stage_c = p.find_stage("S")
    _, orig_c = Program([copy]).find_stage("S")
    assert str(stage_c._node) == str(orig_c._node)
    assert _layout(p, "A") is None


def test_repeated_partition_keeps_the_old_banks():
    s = Schedule(gen_copy(4, 4))
    s.partition("A", "cyclic", dim=1, factor=2)
    s.partition("A", "block", dim=2, factor=2)
    with pytest.warns(UserWarning, match="partitioned before"):
        p = s.apply()

    layout = _layout(p, "A")
    for i, j in itertools.product(range(4), range(4)):
        assert evaluate_map(layout, (i, j)) == (i % 2, j // 2, i // 2, j % 2)


def test_partition_needs_a_factor():
    s = Schedule(gen_copy())
    s.partition("A", "cyclic", dim=1)
    with pytest.raises(PreconditionViolation, match="requires a positive factor"):
        s.apply()


def test_partition_bad_dimension():
    s = Schedule(gen_copy())
    s.partition("A", "complete", dim=3)
    with pytest.raises(PreconditionViolation, match="between 0 and 2"):
        s.apply()


def test_partition_bad_kind():
    s = Schedule(gen_copy())
    with pytest.raises(ValueError, match="partition kind"):
        s.partition("A", "diagonal")


def test_partition_missing_array():
    @unit
    def foo(n: index, A: f32[8]):
        for i in seq(0, 8, stage="S"):
            A[i] = 0.0

    s = Schedule(foo)
    s.partition("Z")
    with pytest.raises(NotFound, match="Partition: Cannot find array 'Z'"):
        s.apply()

    s = Schedule(foo)
    s.partition("n")
    with pytest.raises(NotFound, match="Cannot find array 'n'"):
        s.apply()


def test_partition_propagates_into_callees(check_equivalent):
    @unit
    def bump(X: f32[8]):
        for i in seq(0, 8, stage="K"):
            X[i] = X[i] + 1.0

    @unit
    def top(A: f32[8]):
        bump(A)

    before = Program([bump, top])
    s = Schedule(Program([bump, top]))
    s.partition("A", "cyclic", dim=1, factor=2)
    p = s.apply()

    assert p.unit("top").args[0].type.layout is not None
    assert p.unit("bump").args[0].type.layout == p.unit("top").args[0].type.layout
    call = p.unit("top").body[0]
    assert call.args[0].type.layout is not None
    check_equivalent(before, p)


def test_partition_of_a_name_shared_with_a_callee(check_equivalent):
    @unit
    def bump(A: f32[8]):
        for i in seq(0, 8, stage="K"):
            A[i] = A[i] + 1.0

    @unit
    def top(A: f32[8]):
        bump(A)

    before = Program([bump, top])
    s = Schedule(Program([bump, top]))
    s.partition("A", "cyclic", dim=1, factor=2)
    p = s.apply()

    top_layout = p.unit("top").args[0].type.layout
    assert top_layout is not None
    assert p.unit("bump").args[0].type.layout == top_layout
    check_equivalent(before, p)


def test_partition_after_outline(check_equivalent):
    @unit
    def pipe(A: f32[8], B: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] = A[i] * 2.0

    s = Schedule(pipe)
    s.outline("S")
    s.partition("A", "cyclic", dim=1, factor=2)
    p = s.apply()

    assert p.unit_names() == ["Stage_S", "pipe"]
    top_layout = p.unit("pipe").args[0].type.layout
    assert str(top_layout) == "(d0) -> (d0 mod 2, d0 floordiv 2)"
    assert p.unit("Stage_S").args[0].type.layout == top_layout
    call = p.unit("pipe").body[0]
    assert call.args[0].type.layout == top_layout
    check_equivalent(pipe, p)


def test_partition_of_a_transposed_array():
    copy = gen_copy(4, 4)
    a = copy.args[0]
    transposed = a.type.update(layout=permutation_map([1, 0]))
    copy = copy.update(args=[a.update(type=transposed), copy.args[1]])

    s = Schedule(copy)
    s.partition("A", "cyclic", dim=1, factor=2)
    with pytest.warns(UserWarning, match="partitioned before"):
        p = s.apply()

    # banks and offsets are taken of the transposed address
    layout = _layout(p, "A")
    for i, j in itertools.product(range(4), range(4)):
        assert evaluate_map(layout, (i, j)) == (j % 2, 0, j // 2, i)
