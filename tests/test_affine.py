from __future__ import annotations

import itertools

import pytest

from loopsched.core import affine as A
from loopsched.core.affine import NotAffineError


def test_folding_constructors():
    assert A.get_constant(A.add(3, 4)) == 7
    assert A.get_constant(A.mul(A.dim(0), 0)) == 0
    assert str(A.mul(A.dim(0), 1)) == "d0"
    assert str(A.add(A.dim(0), 0)) == "d0"
    assert str(A.mod(A.dim(0), 1)) == "0"


def test_division_by_zero():
    with pytest.raises(ZeroDivisionError):
        A.floordiv(A.dim(0), 0)
    with pytest.raises(ZeroDivisionError):
        A.mod(A.dim(0), 0)


def test_constant_extraction():
    e = A.add(A.add(A.dim(0), 5), A.mul(A.dim(1), 3))
    assert A.constant_term(e) == 5
    assert A.get_constant(e) is None
    assert A.get_constant(A.sub(A.add(A.dim(0), 2), A.dim(0))) == 2


def test_simplify_merges_terms():
    e = A.add(A.mul(A.dim(0), 2), A.add(A.dim(0), 3))
    assert str(A.simplify(e)) == "d0 * 3 + 3"


def test_simplify_divisible_terms():
    linear = A.add(A.mul(A.dim(0), 8), A.dim(1))
    assert str(A.simplify(A.floordiv(linear, 8))) == "d0 + d1 floordiv 8"
    assert str(A.simplify(A.mod(linear, 8))) == "d1 mod 8"


def test_substitution():
    e = A.add(A.mul(A.dim(0), 4), A.symbol(0))
    assert A.get_constant(A.substitute(e, dims=[2], syms=[3])) == 11
    partial = A.substitute(e, syms=[1])
    assert str(A.simplify(partial)) == "d0 * 4 + 1"


def test_compose():
    f = A.Affine.map(1, 0, [A.mul(A.dim(0), 2)])
    g = A.Affine.map(2, 0, [A.add(A.dim(0), A.dim(1))])
    fg = A.compose(f, g)
    assert fg.ndims == 2
    assert str(fg) == "(d0, d1) -> (d0 * 2 + d1 * 2)"

    with pytest.raises(ValueError, match="cannot compose"):
        A.compose(g, f)


def test_compare_by_offset():
    a = A.add(A.dim(0), 1)
    b = A.add(A.dim(0), 3)
    assert A.compare_by_offset(a, b) == -1
    assert A.compare_by_offset(b, a) == 1
    assert A.compare_by_offset(a, A.add(A.dim(1), 1)) == 0


def test_linear_form():
    e = A.add(A.add(A.mul(A.dim(0), 3), A.symbol(1)), 7)
    dims, syms, const = A.linear_form(e)
    assert dims == {0: 3}
    assert syms == {1: 1}
    assert const == 7

    with pytest.raises(NotAffineError):
        A.linear_form(A.mul(A.dim(0), A.dim(1)))


def test_pure_affine():
    assert A.is_pure_affine(A.floordiv(A.dim(0), 4))
    assert A.is_pure_affine(A.mul(A.dim(0), 3))
    assert not A.is_pure_affine(A.mul(A.dim(0), A.dim(1)))
    assert not A.is_pure_affine(A.mod(A.dim(0), A.dim(1)))


def test_identity_and_permutation():
    assert A.is_identity(A.identity_map(3))
    assert not A.is_identity(A.permutation_map([1, 0]))
    assert A.evaluate_map(A.permutation_map([1, 0]), (3, 5)) == (5, 3)


def test_linearize_delinearize():
    old, new = [4, 8], [8, 4]
    dims = [A.dim(0), A.dim(1)]
    remapped = A.Affine.map(2, 0, A.delinearize(A.linearize(dims, old), new))
    for i, j in itertools.product(range(4), range(8)):
        lin = i * 8 + j
        assert A.evaluate_map(remapped, (i, j)) == (lin // 4, lin % 4)


def test_coalesced_indices():
    trip_counts = [2, 3, 4]
    ivs = A.coalesced_indices(A.dim(0), trip_counts)
    seen = [tuple(A.evaluate(iv, (f,)) for iv in ivs) for f in range(24)]
    assert seen == list(itertools.product(range(2), range(3), range(4)))


def test_map_printing():
    m = A.Affine.map(1, 0, [A.mod(A.dim(0), 4), A.floordiv(A.dim(0), 4)])
    assert str(m) == "(d0) -> (d0 mod 4, d0 floordiv 4)"
