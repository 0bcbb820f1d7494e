from __future__ import annotations

from typing import Optional

from asdl_adt import ADT

from .prelude import extclass

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Affine expressions and maps
#
#   Dimensions (d0, d1, ...) are the loop-varying inputs of a map, symbols
#   (s0, s1, ...) are loop-invariant parameters.  Expressions are built from
#   addition, multiplication, floor division and modulo.  Only products with a
#   constant factor and divisions by a positive constant are pure affine, but
#   the ADT can represent the general (semi-affine) case.


Affine = ADT(
    """
module Affine {
    map  = ( int ndims, int nsyms, expr* results )

    expr = Dim( int pos )
         | Symbol( int pos )
         | Cst( int val )
         | Add( expr lhs, expr rhs )
         | Mul( expr lhs, expr rhs )
         | FloorDiv( expr lhs, expr rhs )
         | Mod( expr lhs, expr rhs )
}""",
    ext_types={"int": int},
)


class NotAffineError(ValueError):
    pass


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Folding constructors


def dim(pos):
    return Affine.Dim(pos)


def symbol(pos):
    return Affine.Symbol(pos)


def cst(val):
    return Affine.Cst(int(val))


def _as_expr(x):
    if isinstance(x, int):
        return cst(x)
    assert isinstance(x, Affine.expr), f"expected affine expression, got {type(x)}"
    return x


def add(lhs, rhs):
    lhs, rhs = _as_expr(lhs), _as_expr(rhs)
    if isinstance(lhs, Affine.Cst) and isinstance(rhs, Affine.Cst):
        return cst(lhs.val + rhs.val)
    if isinstance(lhs, Affine.Cst):
        lhs, rhs = rhs, lhs
    if isinstance(rhs, Affine.Cst) and rhs.val == 0:
        return lhs
    return Affine.Add(lhs, rhs)


def mul(lhs, rhs):
    lhs, rhs = _as_expr(lhs), _as_expr(rhs)
    if isinstance(lhs, Affine.Cst) and isinstance(rhs, Affine.Cst):
        return cst(lhs.val * rhs.val)
    if isinstance(lhs, Affine.Cst):
        lhs, rhs = rhs, lhs
    if isinstance(rhs, Affine.Cst):
        if rhs.val == 0:
            return cst(0)
        if rhs.val == 1:
            return lhs
    return Affine.Mul(lhs, rhs)


def neg(e):
    return mul(e, -1)


def sub(lhs, rhs):
    return add(lhs, neg(_as_expr(rhs)))


def floordiv(lhs, rhs):
    lhs, rhs = _as_expr(lhs), _as_expr(rhs)
    if isinstance(rhs, Affine.Cst):
        if rhs.val == 0:
            raise ZeroDivisionError("affine floordiv by zero")
        if rhs.val == 1:
            return lhs
        if isinstance(lhs, Affine.Cst):
            return cst(lhs.val // rhs.val)
    return Affine.FloorDiv(lhs, rhs)


def mod(lhs, rhs):
    lhs, rhs = _as_expr(lhs), _as_expr(rhs)
    if isinstance(rhs, Affine.Cst):
        if rhs.val == 0:
            raise ZeroDivisionError("affine mod by zero")
        if rhs.val == 1:
            return cst(0)
        if isinstance(lhs, Affine.Cst):
            return cst(lhs.val % rhs.val)
    return Affine.Mod(lhs, rhs)


def ceildiv(lhs, rhs):
    # ceil(a / b) == floor((a + b - 1) / b) for positive b
    rhs = _as_expr(rhs)
    assert isinstance(rhs, Affine.Cst) and rhs.val > 0
    return floordiv(add(lhs, rhs.val - 1), rhs)


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Canonical linear form


def _key(e):
    if isinstance(e, Affine.Dim):
        return (0, e.pos)
    elif isinstance(e, Affine.Symbol):
        return (1, e.pos)
    elif isinstance(e, Affine.Cst):
        return (2, e.val)
    elif isinstance(e, Affine.Add):
        return (3, _key(e.lhs), _key(e.rhs))
    elif isinstance(e, Affine.Mul):
        return (4, _key(e.lhs), _key(e.rhs))
    elif isinstance(e, Affine.FloorDiv):
        return (5, _key(e.lhs), _key(e.rhs))
    elif isinstance(e, Affine.Mod):
        return (6, _key(e.lhs), _key(e.rhs))
    else:
        assert False, "bad case"


class _Linear:
    """sum(coeff * term) + const, terms keyed structurally"""

    def __init__(self, terms=None, const=0):
        self.terms = terms or {}
        self.const = const

    def is_const(self):
        return not self.terms

    def scale(self, k):
        if k == 0:
            return _Linear()
        return _Linear(
            {key: (c * k, node) for key, (c, node) in self.terms.items()},
            self.const * k,
        )

    def plus(self, other):
        terms = dict(self.terms)
        for key, (c, node) in other.terms.items():
            if key in terms:
                c = c + terms[key][0]
            if c == 0:
                terms.pop(key, None)
            else:
                terms[key] = (c, node)
        return _Linear(terms, self.const + other.const)

    def split_divisible(self, k):
        """separate the terms whose coefficient is a multiple of k"""
        div = _Linear(
            {key: (c // k, n) for key, (c, n) in self.terms.items() if c % k == 0},
            self.const // k,
        )
        rest = _Linear(
            {key: (c, n) for key, (c, n) in self.terms.items() if c % k != 0},
            self.const % k,
        )
        return div, rest

    def build(self):
        res = None
        for key in sorted(self.terms):
            c, node = self.terms[key]
            term = node if c == 1 else mul(node, c)
            res = term if res is None else add(res, term)
        if res is None:
            return cst(self.const)
        return add(res, self.const)


def _opaque(node):
    return _Linear({_key(node): (1, node)}, 0)


def _linearize(e) -> _Linear:
    if isinstance(e, Affine.Cst):
        return _Linear({}, e.val)
    elif isinstance(e, (Affine.Dim, Affine.Symbol)):
        return _opaque(e)
    elif isinstance(e, Affine.Add):
        return _linearize(e.lhs).plus(_linearize(e.rhs))
    elif isinstance(e, Affine.Mul):
        lhs, rhs = _linearize(e.lhs), _linearize(e.rhs)
        if rhs.is_const():
            return lhs.scale(rhs.const)
        if lhs.is_const():
            return rhs.scale(lhs.const)
        return _opaque(Affine.Mul(lhs.build(), rhs.build()))
    elif isinstance(e, (Affine.FloorDiv, Affine.Mod)):
        lhs, rhs = _linearize(e.lhs), _linearize(e.rhs)
        if not rhs.is_const() or rhs.const <= 0:
            ctor = Affine.FloorDiv if isinstance(e, Affine.FloorDiv) else Affine.Mod
            return _opaque(ctor(lhs.build(), rhs.build()))
        k = rhs.const
        # floor((k*q + r) / k) == q + floor(r / k)  and  (k*q + r) mod k == r mod k
        div, rest = lhs.split_divisible(k)
        if isinstance(e, Affine.FloorDiv):
            if rest.is_const():
                return div.plus(_Linear({}, rest.const // k))
            return div.plus(_opaque(Affine.FloorDiv(rest.build(), cst(k))))
        else:
            if rest.is_const():
                return _Linear({}, rest.const % k)
            return _opaque(Affine.Mod(rest.build(), cst(k)))
    else:
        assert False, "bad case"


def simplify(e):
    """Canonicalize an expression: fold constants, merge like terms and pull
    multiples of the divisor out of floordiv/mod."""
    return _linearize(_as_expr(e)).build()


def simplify_map(m):
    return m.update(results=[simplify(r) for r in m.results])


def constant_term(e) -> int:
    """The constant summand of an expression in canonical form"""
    return _linearize(_as_expr(e)).const


def get_constant(e) -> Optional[int]:
    lin = _linearize(_as_expr(e))
    return lin.const if lin.is_const() else None


def compare_by_offset(a, b) -> int:
    """Three-way comparison of two expressions by their constant term"""
    ca, cb = constant_term(a), constant_term(b)
    return (ca > cb) - (ca < cb)


def linear_form(e):
    """
    Returns (dim_coeffs, sym_coeffs, const) such that
        e == sum(c * d_i) + sum(c * s_j) + const
    Raises NotAffineError if `e` is not linear in its dims and symbols.
    """
    lin = _linearize(_as_expr(e))
    dims, syms = {}, {}
    for c, node in lin.terms.values():
        if isinstance(node, Affine.Dim):
            dims[node.pos] = c
        elif isinstance(node, Affine.Symbol):
            syms[node.pos] = c
        else:
            raise NotAffineError(f"{e} is not a linear expression")
    return dims, syms, lin.const


def used_dims(e) -> set:
    if isinstance(e, Affine.Dim):
        return {e.pos}
    elif isinstance(e, (Affine.Symbol, Affine.Cst)):
        return set()
    else:
        return used_dims(e.lhs) | used_dims(e.rhs)


def is_function_of_dim(e, pos) -> bool:
    return pos in used_dims(simplify(e))


def is_pure_affine(e) -> bool:
    if isinstance(e, (Affine.Dim, Affine.Symbol, Affine.Cst)):
        return True
    elif isinstance(e, Affine.Add):
        return is_pure_affine(e.lhs) and is_pure_affine(e.rhs)
    elif isinstance(e, Affine.Mul):
        return (
            is_pure_affine(e.lhs)
            and is_pure_affine(e.rhs)
            and (get_constant(e.lhs) is not None or get_constant(e.rhs) is not None)
        )
    else:
        k = get_constant(e.rhs)
        return is_pure_affine(e.lhs) and k is not None and k > 0


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Substitution, composition and evaluation


def substitute(e, dims=None, syms=None):
    """Replace d_i by dims[i] and s_j by syms[j] (None entries are kept)"""
    dims = dims or {}
    syms = syms or {}
    if isinstance(dims, (list, tuple)):
        dims = dict(enumerate(dims))
    if isinstance(syms, (list, tuple)):
        syms = dict(enumerate(syms))

    def subst(e):
        if isinstance(e, Affine.Dim):
            r = dims.get(e.pos)
            return e if r is None else _as_expr(r)
        elif isinstance(e, Affine.Symbol):
            r = syms.get(e.pos)
            return e if r is None else _as_expr(r)
        elif isinstance(e, Affine.Cst):
            return e
        elif isinstance(e, Affine.Add):
            return add(subst(e.lhs), subst(e.rhs))
        elif isinstance(e, Affine.Mul):
            return mul(subst(e.lhs), subst(e.rhs))
        elif isinstance(e, Affine.FloorDiv):
            return floordiv(subst(e.lhs), subst(e.rhs))
        elif isinstance(e, Affine.Mod):
            return mod(subst(e.lhs), subst(e.rhs))
        else:
            assert False, "bad case"

    return subst(_as_expr(e))


def compose(f, g):
    """
    Returns f . g, i.e. the map x -> f(g(x)).  The symbols of the result are
    the symbols of g followed by the symbols of f.
    """
    if len(g.results) != f.ndims:
        raise ValueError(
            f"cannot compose: inner map produces {len(g.results)} results, "
            f"outer map expects {f.ndims} dims"
        )
    shifted = {j: symbol(g.nsyms + j) for j in range(f.nsyms)}
    results = [
        simplify(substitute(r, dims=list(g.results), syms=shifted)) for r in f.results
    ]
    return Affine.map(g.ndims, g.nsyms + f.nsyms, results)


def evaluate(e, dims=(), syms=()) -> int:
    if isinstance(e, Affine.Dim):
        return dims[e.pos]
    elif isinstance(e, Affine.Symbol):
        return syms[e.pos]
    elif isinstance(e, Affine.Cst):
        return e.val
    lhs, rhs = evaluate(e.lhs, dims, syms), evaluate(e.rhs, dims, syms)
    if isinstance(e, Affine.Add):
        return lhs + rhs
    elif isinstance(e, Affine.Mul):
        return lhs * rhs
    elif isinstance(e, Affine.FloorDiv):
        return lhs // rhs
    elif isinstance(e, Affine.Mod):
        return lhs % rhs
    else:
        assert False, "bad case"


def evaluate_map(m, dims=(), syms=()) -> tuple:
    assert len(dims) == m.ndims
    return tuple(evaluate(r, dims, syms) for r in m.results)


def identity_map(n):
    return Affine.map(n, 0, [dim(i) for i in range(n)])


def permutation_map(perm):
    return Affine.map(len(perm), 0, [dim(p) for p in perm])


def is_identity(m) -> bool:
    return (
        m.nsyms == 0
        and len(m.results) == m.ndims
        and all(
            isinstance(r, Affine.Dim) and r.pos == i for i, r in enumerate(m.results)
        )
    )


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Index decompositions


def linearize(indices, shape):
    """Row-major linear offset of `indices` into an array of `shape`"""
    assert len(indices) == len(shape)
    linear = cst(0)
    weight = 1
    for idx, extent in reversed(list(zip(indices, shape))):
        linear = add(linear, mul(_as_expr(idx), weight))
        weight *= extent
    return simplify(linear)


def delinearize(linear, shape):
    """
    Inverse of `linearize`: peels off the least significant dimension first
    with mod/floordiv and returns the indices outermost-first.
    """
    linear = _as_expr(linear)
    res = []
    for extent in reversed(shape[1:]):
        res.append(simplify(mod(linear, extent)))
        linear = floordiv(linear, extent)
    res.append(simplify(linear))
    res.reverse()
    return res


def coalesced_indices(fused, trip_counts):
    """
    Recover the iterators of a coalesced loop nest from the fused iterator.
    `trip_counts` are listed outermost-first; the reconstruction runs
    innermost-to-outermost so that each level divides out the product of the
    levels inside it.  The outermost iterator needs no modulo.
    """
    n = len(trip_counts)
    assert n >= 1
    fused = _as_expr(fused)
    ivs = [None] * n
    previous = fused
    for idx in range(n, 0, -1):
        if idx != n:
            previous = floordiv(previous, trip_counts[idx])
        if idx == 1:
            ivs[idx - 1] = previous
        else:
            ivs[idx - 1] = mod(previous, trip_counts[idx - 1])
    return ivs


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Printing


_prec = {Affine.Add: 10, Affine.Mul: 20, Affine.FloorDiv: 20, Affine.Mod: 20}


def _print_expr(e, prec=0):
    if isinstance(e, Affine.Dim):
        return f"d{e.pos}"
    elif isinstance(e, Affine.Symbol):
        return f"s{e.pos}"
    elif isinstance(e, Affine.Cst):
        s = str(e.val)
        return f"({s})" if e.val < 0 and prec > 0 else s

    local = _prec[type(e)]
    if isinstance(e, Affine.Add):
        lhs = _print_expr(e.lhs, local)
        rhs = e.rhs
        if isinstance(rhs, Affine.Cst) and rhs.val < 0:
            s = f"{lhs} - {-rhs.val}"
        elif (
            isinstance(rhs, Affine.Mul)
            and isinstance(rhs.rhs, Affine.Cst)
            and rhs.rhs.val < 0
        ):
            neg_rhs = rhs.lhs if rhs.rhs.val == -1 else mul(rhs.lhs, -rhs.rhs.val)
            s = f"{lhs} - {_print_expr(neg_rhs, local + 1)}"
        else:
            s = f"{lhs} + {_print_expr(rhs, local)}"
    else:
        op = {Affine.Mul: "*", Affine.FloorDiv: "floordiv", Affine.Mod: "mod"}[type(e)]
        s = f"{_print_expr(e.lhs, local)} {op} {_print_expr(e.rhs, local + 1)}"

    return f"({s})" if local < prec else s


@extclass(Affine.expr)
def __str__(self):
    return _print_expr(self)


@extclass(Affine.map)
def __str__(self):
    dims = ", ".join(f"d{i}" for i in range(self.ndims))
    syms = ", ".join(f"s{i}" for i in range(self.nsyms))
    results = ", ".join(_print_expr(r) for r in self.results)
    syms = f"[{syms}]" if self.nsyms else ""
    return f"({dims}){syms} -> ({results})"


del __str__
