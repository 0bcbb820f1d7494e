from __future__ import annotations

import logging

from ..core import affine as A
from ..core.HIR import HIR, SubstArgs, const_val, mk_loop_info
from ..core.index_analysis import (
    idx_binop,
    idx_const,
    idx_read,
    index_syms,
    lower_affine,
    simplify_index,
    simplify_stmts,
)
from ..core.prelude import Sym, is_pos_int, sanitize_name
from ..core.program import enclosing_loops, loop_labels, perfect_band
from .errors import NotFound, PreconditionViolation

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Helpers


def stage_root(loop_c):
    """cursor to the root loop of the stage containing `loop_c`"""
    outer = enclosing_loops(loop_c)
    return outer[0] if outer else loop_c


def _constant_trip_count(s):
    n = s.trip_count()
    if n is None:
        raise PreconditionViolation(
            f"expected loop '{s.name()}' to have constant bounds, "
            f"got {s.lo} and {s.hi}"
        )
    return n


def _substitute(body, binding):
    return simplify_stmts(SubstArgs(body, binding).result())


def _strip_pragmas(info):
    return info.update(parallel=False, pipeline=None, unroll=None, thread=None)


def _check_fresh_labels(stage_c, labels):
    taken = set(loop_labels(stage_c))
    for nm in labels:
        if nm in taken:
            raise PreconditionViolation(f"a loop named '{nm}' already exists")


class _SplitParts:
    """
    The pieces of an outer/inner split of a constant-bound loop.  `index` is
    the expression recovering the original iterator from the two new ones.
    """

    def __init__(self, s, factor, outer_label, inner_label):
        N = _constant_trip_count(s)
        if not is_pos_int(factor):
            raise PreconditionViolation(
                f"expected the tiling factor to be a positive integer, got {factor}"
            )
        if factor >= N:
            raise PreconditionViolation(
                f"The requested tiling factor ({factor}) is larger than the "
                f"upper bound ({N}) of the loop"
            )

        srcinfo = s.srcinfo
        self.loop = s
        self.outer_label = outer_label
        self.inner_label = inner_label
        self.outer = Sym(sanitize_name(outer_label))
        self.inner = Sym(sanitize_name(inner_label))

        self.outer_hi = idx_const(-(-N // factor), srcinfo)
        if N % factor == 0:
            self.inner_hi = idx_const(factor, srcinfo)
        else:
            # the last tile is partial
            rest = idx_binop(
                "-",
                idx_const(N, srcinfo),
                idx_binop("*", factor, idx_read(self.outer, srcinfo)),
            )
            self.inner_hi = idx_binop("min", idx_const(factor, srcinfo), rest)

        orig = idx_binop(
            "+",
            idx_binop("*", idx_read(self.outer, srcinfo), factor),
            idx_read(self.inner, srcinfo),
        )
        if s.step != 1:
            orig = idx_binop("*", s.step, orig)
        self.index = simplify_index(idx_binop("+", s.lo, orig))

    def outer_loop(self, body):
        s = self.loop
        info = _strip_pragmas(s.info).update(label=self.outer_label)
        return HIR.For(
            self.outer, idx_const(0), self.outer_hi, 1, body, info, s.srcinfo
        )

    def inner_loop(self, body):
        s = self.loop
        info = mk_loop_info(self.inner_label, kind=s.info.kind)
        return HIR.For(
            self.inner, idx_const(0), self.inner_hi, 1, body, info, s.srcinfo
        )


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Split and Tile


def DoSplit(loop_c, factor, outer_label=None, inner_label=None):
    s = loop_c._node
    outer_label = outer_label or f"{s.name()}.outer"
    inner_label = inner_label or f"{s.name()}.inner"

    parts = _SplitParts(s, factor, outer_label, inner_label)
    _check_fresh_labels(stage_root(loop_c), [outer_label, inner_label])

    body = _substitute(s.body, {s.iter: parts.index})
    new_loop = parts.outer_loop([parts.inner_loop(body)])

    logger.debug(
        "split '%s' into %s x %s", s.name(), parts.outer_hi, parts.inner_hi
    )
    return loop_c._replace([new_loop])


def DoTile(x_c, y_c, fx, fy, labels=None):
    x, y = x_c._node, y_c._node
    if len(x.body) != 1 or x.body[0] is not y:
        raise NotFound(
            f"expected loop '{y.name()}' to be directly nested in loop '{x.name()}'"
        )

    x_out, x_in, y_out, y_in = labels or (
        f"{x.name()}.outer",
        f"{x.name()}.inner",
        f"{y.name()}.outer",
        f"{y.name()}.inner",
    )

    xp = _SplitParts(x, fx, x_out, x_in)
    yp = _SplitParts(y, fy, y_out, y_in)
    _check_fresh_labels(stage_root(x_c), [x_out, x_in, y_out, y_in])

    body = _substitute(y.body, {x.iter: xp.index, y.iter: yp.index})
    nest = xp.outer_loop([yp.outer_loop([xp.inner_loop([yp.inner_loop(body)])])])

    return x_c._replace([nest])


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Reorder


def DoReorder(stage_c, names):
    names = list(names)
    if len(names) < 2:
        raise PreconditionViolation("Should at least input 2 loops to be reordered")
    if len(set(names)) != len(names):
        raise PreconditionViolation(f"duplicate loops in reorder list {names}")

    band = [c._node for c in perfect_band(stage_c)]
    if len(band) < 2:
        raise PreconditionViolation(
            f"expected a perfectly nested band of at least 2 loops under "
            f"stage '{band[0].info.stage}'"
        )

    labels = [s.name() for s in band]
    for nm in names:
        if nm not in labels:
            raise NotFound(
                f"loop '{nm}' is not part of the perfectly nested band {labels}"
            )

    # named loops take the band slots of the named loops, in the given order
    slots = sorted(labels.index(nm) for nm in names)
    order = list(range(len(band)))
    for slot, nm in zip(slots, names):
        order[slot] = labels.index(nm)
    assert sorted(order) == list(range(len(band)))

    new_band = [band[i] for i in order]
    for p, s in enumerate(new_band):
        inner_iters = {t.iter for t in new_band[p:]}
        for b in (s.lo, s.hi):
            for v in index_syms(b):
                if v in inner_iters:
                    raise PreconditionViolation(
                        f"the bound of loop '{s.name()}' depends on '{v}' which "
                        f"would no longer enclose it"
                    )

    stage = band[0].info.stage
    nest = band[-1].body
    for p in reversed(range(len(new_band))):
        s = new_band[p]
        info = s.info.update(stage=stage if p == 0 else None)
        nest = [s.update(body=nest, info=info)]

    logger.debug("reorder %s -> %s", labels, [s.name() for s in new_band])
    return stage_c._replace(nest)


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Loop annotations


def _annotate(loop_c, **kwargs):
    s = loop_c._node
    return loop_c._replace([s.update(info=s.info.update(**kwargs))])


def DoUnroll(loop_c, factor=0):
    if not isinstance(factor, int) or factor < 0:
        raise PreconditionViolation(
            f"expected a non-negative unroll factor, got {factor}"
        )
    return _annotate(loop_c, unroll=factor)


def DoParallel(loop_c):
    return _annotate(loop_c, parallel=True)


def DoPipeline(loop_c, ii=1):
    if not is_pos_int(ii):
        raise PreconditionViolation(
            f"expected a positive initiation interval, got {ii}"
        )
    return _annotate(loop_c, pipeline=ii)


def DoThreadBind(loop_c, dim):
    if not isinstance(dim, int) or dim < 0:
        raise PreconditionViolation(f"expected a non-negative thread axis, got {dim}")
    return _annotate(loop_c, thread=dim)


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Fuse


def DoFuse(loop_c, names, fused_label=None):
    names = list(names)
    if len(names) < 2:
        raise PreconditionViolation("Should at least input 2 loops to be fused")

    chain_c = [loop_c]
    for nm in names[1:]:
        s = chain_c[-1]._node
        if len(s.body) != 1 or not isinstance(s.body[0], HIR.For):
            raise NotFound(
                f"loops {names} do not form a contiguous perfectly nested chain"
            )
        nxt = chain_c[-1].body()[0]
        if nxt._node.name() != nm:
            raise NotFound(
                f"loops {names} do not form a contiguous perfectly nested chain"
            )
        chain_c.append(nxt)
    chain = [c._node for c in chain_c]

    for s in chain:
        if not s.is_normalized() or const_val(s.hi) is None:
            raise PreconditionViolation(
                f"expected loop '{s.name()}' to be zero-based with unit step "
                f"and a constant bound"
            )

    fused_label = fused_label or "_".join(names) + "_fused"
    _check_fresh_labels(stage_root(loop_c), [fused_label])

    trip_counts = [s.trip_count() for s in chain]
    total = 1
    for n in trip_counts:
        total *= n

    # rebuild each iterator from the fused one with the trip counts held
    # symbolic, then fold them to constants
    fused = Sym(sanitize_name(fused_label))
    ivs = A.coalesced_indices(A.dim(0), [A.symbol(k) for k in range(len(chain))])
    binding = {}
    for s, iv in zip(chain, ivs):
        iv = A.simplify(A.substitute(iv, syms=trip_counts))
        binding[s.iter] = lower_affine(iv, [fused], s.srcinfo)

    outer = chain[0]
    body = _substitute(chain[-1].body, binding)
    new_loop = HIR.For(
        fused,
        idx_const(0),
        idx_const(total),
        1,
        body,
        outer.info.update(label=fused_label),
        outer.srcinfo,
    )

    logger.debug("fused %s into '%s' with trip count %d", names, fused_label, total)
    return loop_c._replace([new_loop])
