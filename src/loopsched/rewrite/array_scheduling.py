from __future__ import annotations

import logging
import warnings

from ..core import affine as A
from ..core.affine import Affine, NotAffineError
from ..core.HIR import HIR, RemapAccesses, RetypeBuffer
from ..core.index_analysis import index_syms, lift_index, lower_affine
from ..core.prelude import is_pos_int
from ..core.program import calls_in, unit_array
from .errors import NotFound, PreconditionViolation, Unsupported

logger = logging.getLogger(__name__)

PARTITION_KINDS = ("cyclic", "block", "complete")

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Array type updates


def _lookup_array(program, array):
    """
    (unit, sym, type) of the array `array`.  The top unit is searched first,
    then every unit in program order.  A parameter is followed up to the
    array its caller passes for it, so retyping starts where the array
    originates.
    """
    top = program.top_unit()
    found = unit_array(top, array)
    if found is not None and found[1].is_tensor():
        found = (top, *found)
    else:
        found = program.find_array(array)
    if found is None or not found[2].is_tensor():
        raise NotFound(f"Cannot find array '{array}'")
    return _array_origin(program, *found)


def _array_origin(program, u, sym, typ):
    seen = set()
    while (u.name, sym) not in seen:
        seen.add((u.name, sym))
        pos = [i for i, a in enumerate(u.args) if a.name is sym]
        callers = program.callers_of(u.name)
        if not pos or not callers:
            break
        # first caller
        caller, call = callers[0]
        arg = call.args[pos[0]]
        if not isinstance(arg, HIR.Read) or arg.idx:
            break
        found = unit_array(caller, str(arg.name))
        if found is None or found[0] is not arg.name:
            break
        logger.debug(
            "array '%s' of '%s' originates in '%s'", sym, u.name, caller.name
        )
        u, (sym, typ) = caller, found
    return u, sym, typ


def _retype(program, u, sym, typ, visited=None):
    """
    Give the array `sym` of unit `u` the type `typ` and follow every call
    passing it as a whole into the callee's parameter, transitively.
    """
    visited = visited if visited is not None else set()
    if (u.name, sym) in visited:
        return
    visited.add((u.name, sym))

    u = RetypeBuffer(sym, typ).apply_unit(u)
    program.replace_unit(u)

    for c in calls_in(u.body):
        callee = program.unit(c.f)
        assert callee is not None, f"call of unknown unit '{c.f}'"
        for a, param in zip(c.args, callee.args):
            if isinstance(a, HIR.Read) and a.name is sym and not a.idx:
                logger.debug(
                    "propagate type of '%s' into '%s' as '%s'", sym, c.f, param.name
                )
                _retype(program, callee, param.name, typ, visited)
                callee = program.unit(c.f)


def _crosses_call_boundary(program, u, sym):
    if any(a.name is sym for a in u.args) and program.callers_of(u.name):
        return True
    for c in calls_in(u.body):
        if any(isinstance(a, HIR.Read) and a.name is sym for a in c.args):
            return True
    return False


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Partition


def _bank_offset(kind, d, extent, factor):
    if kind == "cyclic":
        return A.mod(d, factor), A.floordiv(d, factor)
    elif kind == "block":
        block = -(-extent // factor)
        return A.floordiv(d, block), A.mod(d, block)
    elif kind == "complete":
        return d, A.cst(0)
    else:
        assert False, "bad case"


def DoPartition(program, array, kind, dim=0, factor=None):
    """
    Bank the array `array` along dimension `dim` (1-based, 0 for every
    dimension).  The layout map sends an index to (banks..., offsets...).
    """
    if kind not in PARTITION_KINDS:
        raise ValueError(f"expected a partition kind in {PARTITION_KINDS}, got {kind}")
    u, sym, typ = _lookup_array(program, array)
    rank = typ.rank()

    if not isinstance(dim, int) or not 0 <= dim <= rank:
        raise PreconditionViolation(
            f"expected a partition dimension between 0 and {rank}, got {dim}"
        )
    if kind != "complete" and not is_pos_int(factor):
        raise PreconditionViolation(
            f"{kind} partition of '{array}' requires a positive factor, got {factor}"
        )

    old = typ.layout
    if old is not None:
        warnings.warn(
            "Partition on the array partitioned before. "
            "The original layout map will be rewritten!"
        )
    if old is not None and len(old.results) == 2 * rank:
        banks, offsets = list(old.results[:rank]), list(old.results[rank:])
    else:
        banks = [A.cst(0)] * rank
        offsets = [A.dim(i) for i in range(rank)]

    for i in range(rank):
        if dim in (0, i + 1):
            b, o = _bank_offset(kind, A.dim(i), typ.shape()[i], factor)
            banks[i], offsets[i] = A.simplify(b), A.simplify(o)

    layout = Affine.map(rank, 0, banks + offsets)
    if old is not None and len(old.results) == rank and not A.is_identity(old):
        # bank the addresses of a plain addressing map
        layout = A.compose(layout, old)
    logger.debug("partition '%s' with layout %s", array, layout)
    _retype(program, u, sym, typ.update(layout=layout))


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Reshape and Layout


def _rewrite_indices(u, sym, array, remap):
    def fn(idx):
        dims = []
        for i in idx:
            dims += [d for d in index_syms(i) if d not in dims]
        lifted = [lift_index(i, dims) for i in idx]
        srcinfo = idx[0].srcinfo
        return [lower_affine(A.simplify(r), dims, srcinfo) for r in remap(lifted)]

    try:
        return RemapAccesses(sym, fn).apply_unit(u)
    except NotAffineError as err:
        raise Unsupported(
            f"an access to '{array}' has a non-affine index: {err}"
        ) from err


def _check_local(program, u, sym, array, what):
    if _crosses_call_boundary(program, u, sym):
        raise PreconditionViolation(
            f"cannot {what} '{array}' because it crosses a call boundary"
        )


def DoReshape(program, array, shape):
    shape = list(shape)
    if not shape or not all(is_pos_int(s) for s in shape):
        raise PreconditionViolation(f"expected a shape of positive integers: {shape}")
    u, sym, typ = _lookup_array(program, array)

    n = 1
    for s in shape:
        n *= s
    if n != typ.num_elements():
        raise PreconditionViolation(
            f"cannot reshape '{array}' of shape {typ.shape()} ({typ.num_elements()} "
            f"elements) into shape {shape} ({n} elements)"
        )
    _check_local(program, u, sym, array, "reshape")

    old_shape = typ.shape()
    u = _rewrite_indices(
        u,
        sym,
        array,
        lambda idx: A.delinearize(A.linearize(idx, old_shape), shape),
    )
    u = RetypeBuffer(sym, typ.update(dims=shape, layout=None)).apply_unit(u)
    program.replace_unit(u)
    logger.debug("reshape '%s' from %s to %s", array, old_shape, shape)


def DoLayout(program, array, perm):
    perm = list(perm)
    u, sym, typ = _lookup_array(program, array)
    if sorted(perm) != list(range(typ.rank())):
        raise PreconditionViolation(
            f"expected a permutation of the {typ.rank()} dimensions of '{array}', "
            f"got {perm}"
        )
    _check_local(program, u, sym, array, "change the layout of")

    shape = [typ.shape()[p] for p in perm]
    u = _rewrite_indices(u, sym, array, lambda idx: [idx[p] for p in perm])
    u = RetypeBuffer(sym, typ.update(dims=shape, layout=None)).apply_unit(u)
    program.replace_unit(u)
    logger.debug("permute '%s' with %s", array, perm)


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Inter-kernel data placement


def DoInterKernel(program, array, depth=None):
    u, sym, typ = _lookup_array(program, array)

    if depth is None:
        depth = typ.num_elements()
    elif not is_pos_int(depth):
        raise PreconditionViolation(
            f"expected a positive FIFO depth for '{array}', got {depth}"
        )

    logger.debug("stream '%s' with depth %d", array, depth)
    _retype(program, u, sym, typ.update(stream=depth))
