from __future__ import annotations

from . import affine as A
from .affine import Affine, NotAffineError
from .HIR import HIR, T, HIR_Rewrite
from .prelude import Sym, null_srcinfo

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Index expression constructors


def idx_read(sym, srcinfo=None):
    assert isinstance(sym, Sym)
    return HIR.Read(sym, [], T.index, srcinfo or null_srcinfo())


def idx_const(val, srcinfo=None):
    return HIR.Const(int(val), T.index, srcinfo or null_srcinfo())


def idx_binop(op, lhs, rhs, srcinfo=None):
    if isinstance(lhs, int):
        lhs = idx_const(lhs)
    if isinstance(rhs, int):
        rhs = idx_const(rhs)
    typ = T.bool if op in ("<", ">", "<=", ">=", "==", "and", "or") else T.index
    return HIR.BinOp(op, lhs, rhs, typ, srcinfo or lhs.srcinfo)


def index_syms(e):
    """index variables read (without subscripts) by `e`, in first-use order"""
    res = []

    def walk(e):
        if isinstance(e, HIR.Read):
            if not e.idx and e.type.is_indexable() and e.name not in res:
                res.append(e.name)
            for i in e.idx:
                walk(i)
        elif isinstance(e, HIR.BinOp):
            walk(e.lhs)
            walk(e.rhs)
        elif isinstance(e, HIR.USub):
            walk(e.arg)

    walk(e)
    return res


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Lifting to the affine algebra


def lift_index(e, dims):
    """
    Lift an index expression to an affine expression where the i-th symbol
    of `dims` becomes d_i.  Raises NotAffineError on anything else.
    """
    pos = {sym: i for i, sym in enumerate(dims)}

    def lift(e):
        if isinstance(e, HIR.Read):
            if e.idx or e.name not in pos:
                raise NotAffineError(f"'{e.name}' is not an affine index variable")
            return A.dim(pos[e.name])
        elif isinstance(e, HIR.Const):
            if not isinstance(e.val, int) or isinstance(e.val, bool):
                raise NotAffineError(f"non-integer constant {e.val}")
            return A.cst(e.val)
        elif isinstance(e, HIR.USub):
            return A.neg(lift(e.arg))
        elif isinstance(e, HIR.BinOp):
            if e.op == "+":
                return A.add(lift(e.lhs), lift(e.rhs))
            elif e.op == "-":
                return A.sub(lift(e.lhs), lift(e.rhs))
            elif e.op == "*":
                return A.mul(lift(e.lhs), lift(e.rhs))
            elif e.op == "/":
                return A.floordiv(lift(e.lhs), lift(e.rhs))
            elif e.op == "%":
                return A.mod(lift(e.lhs), lift(e.rhs))
            raise NotAffineError(f"operator '{e.op}' is not affine")
        else:
            assert False, "bad case"

    return lift(e)


def lower_affine(a, dims, srcinfo=None):
    """
    Build an index expression from an affine expression.  d_i becomes the
    i-th entry of `dims`, which may be a Sym or an index expression.
    """
    srcinfo = srcinfo or null_srcinfo()

    def dim_expr(i):
        d = dims[i]
        return idx_read(d, srcinfo) if isinstance(d, Sym) else d

    def lower(a):
        if isinstance(a, Affine.Dim):
            return dim_expr(a.pos)
        elif isinstance(a, Affine.Symbol):
            raise NotAffineError("cannot lower an affine symbol to an index")
        elif isinstance(a, Affine.Cst):
            return idx_const(a.val, srcinfo)
        elif isinstance(a, Affine.Add):
            rhs = a.rhs
            if isinstance(rhs, Affine.Cst) and rhs.val < 0:
                return idx_binop("-", lower(a.lhs), -rhs.val, srcinfo)
            if (
                isinstance(rhs, Affine.Mul)
                and isinstance(rhs.rhs, Affine.Cst)
                and rhs.rhs.val < 0
            ):
                return idx_binop(
                    "-", lower(a.lhs), lower(A.mul(rhs.lhs, -rhs.rhs.val)), srcinfo
                )
            return idx_binop("+", lower(a.lhs), lower(rhs), srcinfo)
        elif isinstance(a, Affine.Mul):
            if isinstance(a.rhs, Affine.Cst):
                return idx_binop("*", lower(a.rhs), lower(a.lhs), srcinfo)
            return idx_binop("*", lower(a.lhs), lower(a.rhs), srcinfo)
        elif isinstance(a, Affine.FloorDiv):
            return idx_binop("/", lower(a.lhs), lower(a.rhs), srcinfo)
        elif isinstance(a, Affine.Mod):
            return idx_binop("%", lower(a.lhs), lower(a.rhs), srcinfo)
        else:
            assert False, "bad case"

    return lower(a)


def simplify_index(e):
    """Canonicalize an index expression through the affine algebra; parts
    that are not affine (e.g. min) are simplified piecewise."""
    if isinstance(e, HIR.BinOp) and e.op == "min":
        return e.update(lhs=simplify_index(e.lhs), rhs=simplify_index(e.rhs))
    dims = index_syms(e)
    try:
        a = lift_index(e, dims)
    except NotAffineError:
        return e
    return lower_affine(A.simplify(a), dims, e.srcinfo)


def linear_coeffs(e, dims):
    """
    Returns ({sym: coeff}, const) for an index expression that is linear in
    `dims`; raises NotAffineError otherwise.
    """
    d, s, c = A.linear_form(lift_index(e, dims))
    assert not s
    return {dims[i]: k for i, k in d.items()}, c


def same_index(e1, e2):
    """Structural equality of two index expressions up to affine simplification"""
    dims = index_syms(e1)
    dims += [d for d in index_syms(e2) if d not in dims]
    try:
        diff = A.simplify(A.sub(lift_index(e1, dims), lift_index(e2, dims)))
    except NotAffineError:
        return False
    return A.get_constant(diff) == 0


class SimplifyIndices(HIR_Rewrite):
    """simplify every subscript, loop bound and index comparison"""

    def map_s(self, s):
        if isinstance(s, (HIR.Assign, HIR.Reduce)):
            rhs = self.map_e(s.rhs)
            return [
                s.update(idx=[simplify_index(i) for i in s.idx], rhs=rhs or s.rhs)
            ]
        elif isinstance(s, HIR.For):
            body = self.map_stmts(s.body)
            return [
                s.update(
                    lo=simplify_index(s.lo),
                    hi=simplify_index(s.hi),
                    body=body if body is not None else s.body,
                )
            ]
        return super().map_s(s)

    def map_e(self, e):
        if isinstance(e, HIR.Read) and e.idx:
            return e.update(idx=[simplify_index(i) for i in e.idx])
        elif (
            isinstance(e, HIR.BinOp)
            and e.op in ("<", ">", "<=", ">=", "==")
            and e.lhs.type.is_indexable()
        ):
            return e.update(lhs=simplify_index(e.lhs), rhs=simplify_index(e.rhs))
        return super().map_e(e)


def simplify_stmts(stmts):
    return SimplifyIndices().apply_stmts(stmts)
