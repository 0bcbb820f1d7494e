from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import cmp_to_key

from ..core import affine as A
from ..core.affine import NotAffineError
from ..core.HIR import (
    HIR,
    HIR_Do,
    K,
    T,
    RemapAccesses,
    SubstArgs,
    const_val,
    get_loops,
    get_writes_of_stmts,
    mk_loop_info,
)
from ..core.index_analysis import (
    idx_binop,
    idx_const,
    idx_read,
    index_syms,
    lift_index,
    linear_coeffs,
    simplify_index,
    simplify_stmts,
)
from ..core.internal_cursors import Cursor
from ..core.prelude import Sym, sanitize_name
from ..core.program import enclosing_loops, fresh_array_name, loops_of, unit_array
from .errors import NotFound, PreconditionViolation, Unsupported

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Reuse buffers
#
#   A load of the target array inside the reuse axis is indexed, along one
#   dimension (the axis dimension), by  axis + red + c  where `red` is a sum
#   of reduction iterators and `c` a constant.  The offsets red + c taken
#   over all loads and reduction iterations form the window of the axis.
#   The reuse buffer holds that window; every step of the rewritten axis
#   shifts the window by one and loads one new element along the axis.
#
#   Every other dimension is either
#     kept     - indexed by a non-reduction loop inside the axis; the buffer
#                spans the full extent of the array,
#     spanned  - indexed by  outer + red + c ; the buffer spans the offsets
#                red + c, the outer part being the same for all loads,
#     dropped  - as spanned, with a single offset.


def _linear_expr(coeffs, const):
    e = idx_const(const)
    for sym, k in coeffs.items():
        term = idx_read(sym)
        if k != 1:
            term = idx_binop("*", k, term)
        e = idx_binop("+", term, e)
    return simplify_index(e)


class _Loads(HIR_Do):
    def __init__(self, name):
        self.name = name
        self.loads = []
        self.whole = False

    def do_e(self, e):
        if isinstance(e, HIR.Read) and e.name is self.name:
            if e.idx:
                self.loads.append(e)
            else:
                self.whole = True
        super().do_e(e)


@dataclass
class _DimInfo:
    kind: str  # "axis", "kept", "spanned" or "dropped"
    lo: int = 0  # smallest offset over all loads
    hi: int = 0  # largest offset over all loads
    outer: dict = None  # common outer part of a spanned dimension

    @property
    def span(self):
        return self.hi - self.lo + 1


class _ReusePattern:
    def __init__(self, axis_c, sym, typ, axis_pos):
        axis = axis_c._node
        self.axis = axis
        self.axis_pos = axis_pos
        self.sym = sym
        self.typ = typ

        self.outer = {c._node.iter for c in enclosing_loops(axis_c)}
        inner = get_loops(axis.body)
        self.red = {s.iter: s.trip_count() for s in inner if s.is_reduction()}
        self.inner = {s.iter for s in inner if s.info.kind is K.Plain}

        finder = _Loads(sym)
        finder.do_stmts(axis.body)
        if finder.whole:
            raise Unsupported(f"'{sym}' is passed as a whole inside the reuse axis")
        if not finder.loads:
            raise Unsupported(f"no loads of '{sym}' inside loop '{axis.name()}'")
        if any(w is sym for w, _ in get_writes_of_stmts(axis.body)):
            raise Unsupported(f"'{sym}' is written inside loop '{axis.name()}'")

        self.loads = [self._decompose(ld) for ld in finder.loads]
        self.axis_dim = self._find_axis_dim()
        self.axis_idx = [
            lift_index(ld.idx[self.axis_dim], index_syms(ld.idx[self.axis_dim]))
            for ld in finder.loads
        ]
        self.dims = [self._dim_info(j) for j in range(len(typ.dims))]

        axis_info = self.dims[self.axis_dim]
        self.base = axis_info.lo
        self.distance = axis_info.hi - axis_info.lo

    def _stride_error(self):
        return Unsupported(
            f"Cannot find reuse pattern on axis {self.axis_pos}. "
            f"Only support stride 1 reuse pattern now"
        )

    def _inconsistent(self, j):
        return Unsupported(
            f"inconsistent accesses along dimension {j} of '{self.sym}'"
        )

    def _decompose(self, ld):
        """[(coeffs, const)] per dimension of the load"""
        res = []
        allowed = self.outer | self.inner | set(self.red) | {self.axis.iter}
        for i in ld.idx:
            syms = index_syms(i)
            if any(s not in allowed for s in syms):
                raise Unsupported(
                    f"unsupported index expression {i} on '{self.sym}'"
                )
            try:
                coeffs, c = linear_coeffs(i, syms)
            except NotAffineError:
                raise Unsupported(
                    f"non-affine index expression {i} on '{self.sym}'"
                )
            for s, k in coeffs.items():
                if (s is self.axis.iter or s in self.red) and k != 1:
                    raise self._stride_error()
            res.append((coeffs, c))
        return res

    def _find_axis_dim(self):
        dims = set()
        for ld in self.loads:
            found = [j for j, (co, _) in enumerate(ld) if self.axis.iter in co]
            if len(found) != 1:
                raise self._stride_error()
            dims.add(found[0])
        if len(dims) != 1:
            raise self._stride_error()
        return dims.pop()

    def _offsets(self, coeffs, c):
        width = sum(self.red[s] - 1 for s in coeffs if s in self.red)
        return c, c + width

    def _dim_info(self, j):
        infos = [ld[j] for ld in self.loads]

        if j == self.axis_dim:
            # from the smallest offset up, each window must touch the last
            by_offset = cmp_to_key(A.compare_by_offset)
            order = sorted(range(len(infos)), key=lambda k: by_offset(self.axis_idx[k]))
            lo = hi = None
            for k in order:
                co, c = infos[k]
                if any(s in self.outer or s in self.inner for s in co):
                    raise Unsupported(
                        f"the reuse dimension of '{self.sym}' depends on loops "
                        f"other than '{self.axis.name()}' and reduction loops"
                    )
                start, end = self._offsets(co, c)
                if hi is not None and start > hi + 1:
                    raise self._stride_error()
                lo = start if lo is None else lo
                hi = end if hi is None else max(hi, end)
            if hi == lo:
                raise self._stride_error()
            if lo < 0:
                raise Unsupported(
                    f"negative offsets along the reuse dimension of '{self.sym}'"
                )
            return _DimInfo("axis", lo, hi)

        kept = [any(s in self.inner for s in co) for co, _ in infos]
        if all(kept):
            for co, _ in infos:
                if any(s in self.outer or s is self.axis.iter for s in co):
                    raise Unsupported(
                        f"dimension {j} of '{self.sym}' mixes inner and outer loops"
                    )
            return _DimInfo("kept")
        elif any(kept):
            raise self._inconsistent(j)

        outer_parts = [
            {s: k for s, k in co.items() if s in self.outer} for co, _ in infos
        ]
        if any(o != outer_parts[0] for o in outer_parts):
            raise self._inconsistent(j)
        ranges = [self._offsets(co, c) for co, c in infos]
        lo = min(r[0] for r in ranges)
        hi = max(r[1] for r in ranges)
        kind = "spanned" if hi > lo else "dropped"
        return _DimInfo(kind, lo, hi, outer_parts[0])

    # -------------------------------- #
    #     buffer layout
    # -------------------------------- #

    def extent(self, j):
        d = self.dims[j]
        if d.kind == "axis":
            return self.distance + 1
        elif d.kind == "kept":
            return self.typ.dims[j]
        elif d.kind == "spanned":
            return d.span
        return None

    def buffer_shape(self):
        return [self.extent(j) for j, d in enumerate(self.dims) if d.kind != "dropped"]

    def buffer_index(self, idx):
        """the buffer index of a load of the target array"""
        res = []
        for i, d in zip(idx, self.dims):
            if d.kind == "kept":
                res.append(i)
                continue
            elif d.kind == "dropped":
                continue
            coeffs, c = linear_coeffs(i, index_syms(i))
            red = {s: k for s, k in coeffs.items() if s in self.red}
            shift = self.base if d.kind == "axis" else d.lo
            res.append(_linear_expr(red, c - shift))
        return res


def DoReuseAt(stage_c, axis_c, array, buf_name=None):
    u = stage_c.get_root()
    if (found := unit_array(u, array)) is None or not found[1].is_tensor():
        raise NotFound(f"Cannot find array '{array}'")
    sym, typ = found

    loops = [c._node for c in loops_of(stage_c)]
    for s in loops:
        if not s.is_normalized() or const_val(s.hi) is None:
            raise PreconditionViolation(
                f"Loop {s.name()} must have (1) constant bounds (2) constant "
                f"step (3) zero lower bound"
            )

    axis = axis_c._node
    if axis.info.kind is not K.Plain:
        raise Unsupported(
            f"expected loop '{axis.name()}' to be a non-reduction loop"
        )
    nonred = [s for s in loops if s.info.kind is K.Plain]
    axis_pos = next(i for i, s in enumerate(nonred) if s is axis)

    pat = _ReusePattern(axis_c, sym, typ, axis_pos)
    D, b = pat.distance, pat.base

    new_hi = axis.trip_count() + D + b
    if new_hi > typ.dims[pat.axis_dim]:
        raise PreconditionViolation(
            f"the reuse window along loop '{axis.name()}' exceeds the extent "
            f"of '{array}'"
        )

    stage = stage_c._node.info.stage
    buf_name = fresh_array_name(u, buf_name or f"{stage}_reuse_{axis_pos}")
    buf = Sym(buf_name)
    elem = typ.basetype()
    buf_typ = T.Tensor(pat.buffer_shape(), elem, None, None)
    srcinfo = axis.srcinfo
    a = axis.iter.copy()

    logger.debug(
        "reuse_at '%s' along '%s': distance %d, base offset %d, buffer %s",
        array,
        axis.name(),
        D,
        b,
        buf_typ,
    )

    # shift the window and load one new element per step
    shift_iters = {}
    for j, d in enumerate(pat.dims):
        if d.kind in ("kept", "spanned"):
            shift_iters[j] = Sym(sanitize_name(f"{buf_name}_s{j}"))

    def buf_idx(k):
        res = []
        for j, d in enumerate(pat.dims):
            if d.kind == "axis":
                res.append(idx_const(k, srcinfo))
            elif j in shift_iters:
                res.append(idx_read(shift_iters[j], srcinfo))
        return res

    load_idx = []
    for j, d in enumerate(pat.dims):
        if d.kind == "axis":
            load_idx.append(idx_read(a, srcinfo))
        elif d.kind == "kept":
            load_idx.append(idx_read(shift_iters[j], srcinfo))
        else:
            e = _linear_expr(d.outer, d.lo)
            if d.kind == "spanned":
                e = simplify_index(idx_binop("+", e, idx_read(shift_iters[j])))
            load_idx.append(e)

    def assign(idx, rhs):
        return HIR.Assign(buf, elem, idx, rhs, srcinfo)

    shift = [
        assign(buf_idx(k), HIR.Read(buf, buf_idx(k + 1), elem, srcinfo))
        for k in range(D)
    ]
    shift.append(assign(buf_idx(D), HIR.Read(sym, load_idx, elem, srcinfo)))
    for j in reversed(list(shift_iters)):
        shift = [
            HIR.For(
                shift_iters[j],
                idx_const(0, srcinfo),
                idx_const(pat.extent(j), srcinfo),
                1,
                shift,
                mk_loop_info(f"{buf_name}_s{j}", kind=K.Spatial),
                srcinfo,
            )
        ]

    # redirect the loads and delay the computation until the window is full
    body = RemapAccesses(sym, pat.buffer_index, new_name=buf).apply_stmts(axis.body)
    delay = idx_binop("-", idx_read(a, srcinfo), D + b)
    body = simplify_stmts(SubstArgs(body, {axis.iter: delay}).result())
    cond = idx_binop(">=", idx_read(a, srcinfo), D + b)
    guarded = HIR.If(cond, body, [], srcinfo)

    new_axis = axis.update(
        iter=a, hi=idx_const(new_hi, srcinfo), body=shift + [guarded]
    )

    ir = _merge_with_shift_loop(axis_c, new_axis)
    if ir is None:
        ir = axis_c._replace([new_axis])

    stage_idx = stage_c.get_index()
    stage_node = Cursor.create(ir).body()[stage_idx]
    alloc = HIR.Alloc(buf, buf_typ, srcinfo)
    return stage_node._replace([alloc, stage_node._node])


def _merge_with_shift_loop(axis_c, new_axis):
    """
    When the axis is guarded by an earlier reuse buffer of the enclosing
    loop, fold the earlier shift loop into the new axis so both windows
    advance in the same step.  Returns None when the shape does not match.
    """
    guard_c = axis_c.parent()
    guard = guard_c._node
    if not isinstance(guard, HIR.If) or guard.orelse or len(guard.body) != 1:
        return None

    outer_c = guard_c.parent()
    outer = outer_c._node
    if not isinstance(outer, HIR.For) or len(outer.body) != 2:
        return None
    prev_shift = outer.body[0]
    if outer.body[1] is not guard or not isinstance(prev_shift, HIR.For):
        return None
    if prev_shift.info.kind is not K.Spatial:
        return None
    if prev_shift.trip_count() != new_axis.trip_count():
        logger.debug(
            "skip merging shift loop '%s' into '%s': trip counts %s and %s differ",
            prev_shift.name(),
            new_axis.name(),
            prev_shift.trip_count(),
            new_axis.trip_count(),
        )
        return None

    moved = SubstArgs(
        prev_shift.body, {prev_shift.iter: idx_read(new_axis.iter, new_axis.srcinfo)}
    ).result()
    merged = new_axis.update(
        body=moved + [HIR.If(guard.cond, new_axis.body, [], guard.srcinfo)]
    )
    logger.debug("merged shift loop '%s' into '%s'", prev_shift.name(), merged.name())
    return outer_c._replace([outer.update(body=[merged])])
