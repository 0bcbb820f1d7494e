from __future__ import annotations

import logging

from ..core.HIR import (
    HIR,
    HIR_Do,
    K,
    T,
    RemapAccesses,
    SubstArgs,
    const_val,
    mk_loop_info,
)
from ..core.index_analysis import idx_const, idx_read, index_syms, same_index
from ..core.prelude import Sym, sanitize_name
from ..core.program import fresh_array_name, perfect_band, unit_array
from .errors import NotFound, PreconditionViolation, Unsupported

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Local accumulation buffers


class _Accesses(HIR_Do):
    def __init__(self, name):
        self.name = name
        self.indices = []
        self.whole = False

    def do_s(self, s):
        if isinstance(s, (HIR.Assign, HIR.Reduce)) and s.name is self.name:
            self.indices.append(s.idx)
        super().do_s(s)

    def do_e(self, e):
        if isinstance(e, HIR.Read) and e.name is self.name:
            if e.idx:
                self.indices.append(e.idx)
            else:
                self.whole = True
        super().do_e(e)


def _zero(typ, srcinfo):
    return HIR.Const(0.0 if typ.is_float() else 0, typ, srcinfo)


def _buffer_nest(loops, suffix, body, srcinfo):
    """
    copies of `loops` (outermost first) labelled `<loop><suffix>`, with
    `body` built from the new iterators; the innermost is pipelined
    """
    iters = [Sym(sanitize_name(f"{s.name()}{suffix}")) for s in loops]
    nest = body(iters)
    for k in reversed(range(len(loops))):
        s = loops[k]
        info = mk_loop_info(f"{s.name()}{suffix}", kind=K.Buffer)
        if k == len(loops) - 1:
            info = info.update(pipeline=1)
        nest = [
            HIR.For(iters[k], idx_const(0, srcinfo), s.hi, 1, nest, info, srcinfo)
        ]
    return nest


def DoBufferAt(stage_c, axis_c, array, buf_name=None):
    u = stage_c.get_root()
    if (found := unit_array(u, array)) is None or not found[1].is_tensor():
        raise NotFound(f"Cannot find array '{array}'")
    sym, typ = found

    band = [c._node for c in perfect_band(stage_c)]
    axis = axis_c._node
    if not any(s is axis for s in band):
        raise NotFound(
            f"loop '{axis.name()}' is not part of the perfectly nested band of "
            f"stage '{band[0].info.stage}'"
        )
    pos = next(i for i, s in enumerate(band) if s is axis)
    reductions = [i for i, s in enumerate(band) if s.is_reduction()]
    first_red = reductions[0] if reductions else len(band) - 1

    if pos + 1 >= len(band):
        raise PreconditionViolation(
            f"Cannot buffer at the inner-most loop: axis={pos} "
            f"inner-most axis={len(band) - 1}"
        )
    if pos >= first_red:
        raise PreconditionViolation(
            f"Cannot buffer inside the reduction loops: axis={pos}, "
            f"first reduction axis={first_red}"
        )

    inner = [s for s in band[pos + 1 :] if not s.is_reduction()]
    for s in inner:
        if not s.is_normalized() or const_val(s.hi) is None:
            raise PreconditionViolation(
                f"Loop {s.name()} must have (1) constant bounds (2) constant "
                f"step (3) zero lower bound"
            )

    # all accesses inside the region must touch the same element
    region = band[pos + 1]
    acc = _Accesses(sym)
    acc.do_s(region)
    if acc.whole:
        raise Unsupported(
            f"'{array}' is passed as a whole inside the buffered region"
        )
    if not acc.indices:
        raise Unsupported(f"'{array}' is not accessed inside loop '{axis.name()}'")

    idx = acc.indices[0]
    for other in acc.indices[1:]:
        if len(other) != len(idx) or not all(map(same_index, idx, other)):
            raise Unsupported(
                f"accesses to '{array}' inside loop '{axis.name()}' do not share "
                f"one index"
            )
    allowed = {s.iter for s in band[: pos + 1]} | {s.iter for s in inner}
    used = {v for i in idx for v in index_syms(i)}
    if not used <= allowed or not all(s.iter in used for s in inner):
        raise Unsupported(
            f"the index of '{array}' must be a function of the loops around "
            f"'{axis.name()}' and of every non-reduction loop inside it"
        )

    srcinfo = axis.srcinfo
    elem = typ.basetype()
    buf = Sym(fresh_array_name(u, buf_name or f"{array}_buf"))

    if not inner:
        buf_typ = T.Tensor([1], elem, None, None)
        zero_idx = [idx_const(0, srcinfo)]

        def buf_index(_):
            return list(zero_idx)

        init = [HIR.Assign(buf, elem, zero_idx, _zero(elem, srcinfo), srcinfo)]
        rhs = HIR.Read(buf, zero_idx, elem, srcinfo)
        back = [HIR.Assign(sym, elem, idx, rhs, srcinfo)]
    else:
        buf_typ = T.Tensor([s.trip_count() for s in inner], elem, None, None)

        def buf_index(_):
            return [idx_read(s.iter, srcinfo) for s in inner]

        def init_body(iters):
            b_idx = [idx_read(i, srcinfo) for i in iters]
            return [HIR.Assign(buf, elem, b_idx, _zero(elem, srcinfo), srcinfo)]

        def back_body(iters):
            b_idx = [idx_read(i, srcinfo) for i in iters]
            binding = {s.iter: e for s, e in zip(inner, b_idx)}
            a_idx = SubstArgs(idx, binding).result()
            rhs = HIR.Read(buf, b_idx, elem, srcinfo)
            return [HIR.Assign(sym, elem, a_idx, rhs, srcinfo)]

        init = _buffer_nest(inner, "_init", init_body, srcinfo)
        back = _buffer_nest(inner, "_back", back_body, srcinfo)

    new_region = RemapAccesses(sym, buf_index, new_name=buf).apply_s(region)
    body = [HIR.Alloc(buf, buf_typ, srcinfo)] + init + new_region + back

    logger.debug(
        "buffer_at '%s' at loop '%s': buffer '%s' of type %s",
        array,
        axis.name(),
        buf,
        buf_typ,
    )
    return axis_c._replace([axis.update(body=body)])
