from __future__ import annotations

import logging
import warnings

from ..core.HIR import (
    HIR,
    HIR_Do,
    HIR_Rewrite,
    Alpha_Rename,
    SubstArgs,
    const_val,
    get_reads_of_expr,
    get_reads_of_stmts,
    get_writes_of_stmts,
)
from ..core.index_analysis import (
    idx_binop,
    idx_read,
    same_index,
    simplify_index,
    simplify_stmts,
)
from ..core.internal_cursors import Cursor
from ..core.program import enclosing_loops, find_loop, loop_labels, stage_cursor
from .dependence import analyze_dependences, check_fusion, fusion_prefix
from .errors import Infeasible, NotFound, PreconditionViolation, Unsupported

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Compute-at (producer/consumer fusion)


def _names(reads_or_writes):
    return {nm for nm, _ in reads_or_writes}


def _check_block_between(u, p_idx, c_idx, producer):
    """moving the producer past the statements between the two stages must
    not reorder conflicting accesses"""
    p_reads = _names(get_reads_of_stmts([producer]))
    p_writes = _names(get_writes_of_stmts([producer]))
    between = u.body[p_idx + 1 : c_idx]
    b_reads = _names(get_reads_of_stmts(between))
    b_writes = _names(get_writes_of_stmts(between))
    if (p_writes & (b_reads | b_writes)) or (p_reads & b_writes):
        raise Infeasible("fusion would violate another dependence in block")


def _iter_map(p_loop, c_loop):
    """producer iterator in terms of the consumer iterator of the same trip"""
    same_lo = const_val(p_loop.lo) == const_val(c_loop.lo)
    if same_lo and p_loop.step == c_loop.step:
        return idx_read(c_loop.iter, c_loop.srcinfo)
    n = idx_binop("-", idx_read(c_loop.iter, c_loop.srcinfo), c_loop.lo)
    if c_loop.step != 1:
        n = idx_binop("/", n, c_loop.step)
    if p_loop.step != 1:
        n = idx_binop("*", p_loop.step, n)
    return simplify_index(idx_binop("+", p_loop.lo, n))


class _Relabel(HIR_Rewrite):
    def __init__(self, taken, prefix):
        self.taken = taken
        self.prefix = prefix

    def map_s(self, s):
        if isinstance(s, HIR.For) and s.info.label in self.taken:
            body = self.map_stmts(s.body)
            label = f"{self.prefix}.{s.info.label}"
            return [
                s.update(
                    body=body if body is not None else s.body,
                    info=s.info.update(label=label),
                )
            ]
        return super().map_s(s)


def _relabel(p_body, consumer_c, prefix):
    """producer loops moved into the consumer get '<producer>.<label>' on a
    clash with a consumer loop label"""
    return _Relabel(set(loop_labels(consumer_c)), prefix).apply_stmts(p_body)


def DoComputeAt(
    axis_c,
    producer_c,
    consumer_c,
    allow_structural_fallback=False,
    forward_intermediate_buffers=True,
    solver_name=None,
):
    u = consumer_c.get_root()
    if producer_c.get_root() is not u:
        raise NotFound("Cannot find corresponding producer and consumer")
    if not (consumer_c.is_ancestor_of(axis_c)):
        raise NotFound(
            f"loop '{axis_c._node.name()}' is not part of stage "
            f"'{consumer_c._node.info.stage}'"
        )

    producer, consumer, axis = producer_c._node, consumer_c._node, axis_c._node
    p_idx, c_idx = producer_c.get_index(), consumer_c.get_index()
    if p_idx > c_idx:
        raise PreconditionViolation(
            f"expected producer stage '{producer.info.stage}' to precede "
            f"consumer stage '{consumer.info.stage}'"
        )
    _check_block_between(u, p_idx, c_idx, producer)

    depth = len(enclosing_loops(axis_c)) + 1

    deps = analyze_dependences(producer, consumer, solver_name)
    if not deps.complete:
        raise Unsupported(f"cannot analyze dependences: {deps.reason}")

    if not deps.deps:
        if not allow_structural_fallback:
            raise Infeasible(
                "no dependence between the producer and the consumer was found; "
                "the unchecked structural merge is disabled"
            )
        warnings.warn(
            "Dependence analysis found no dependence between "
            f"'{producer.info.stage}' and '{consumer.info.stage}'. "
            "Falling back to an unchecked structural merge."
        )
        return _structural_merge(axis_c, producer_c, consumer_c, depth)

    logger.debug(
        "compute_at '%s' into '%s' at depth %d with %s strategy",
        producer.info.stage,
        consumer.info.stage,
        depth,
        deps.strategy(),
    )

    check = check_fusion(producer, consumer, depth, solver_name)
    if not check.ok:
        raise Infeasible(f"Cannot merge these two loops because {check.reason}")

    p_loops = fusion_prefix(producer, depth)
    c_loops = fusion_prefix(consumer, depth)
    if c_loops[-1] is not axis:
        raise Infeasible(
            "Cannot merge these two loops because unable to compute a "
            "computation slice"
        )

    binding = {p.iter: _iter_map(p, c) for p, c in zip(p_loops, c_loops)}
    p_body = simplify_stmts(SubstArgs(p_loops[-1].body, binding).result())
    p_body = _relabel(p_body, consumer_c, producer.info.stage)

    ir = axis_c._replace([axis.update(body=p_body + axis.body)])
    ir = Cursor.create(ir).body()[p_idx]._delete()

    if forward_intermediate_buffers:
        stage = consumer.info.stage
        ir = _forward_buffers(ir, stage, axis.name())

    return ir


def _structural_merge(axis_c, producer_c, consumer_c, depth):
    producer, axis = producer_c._node, axis_c._node
    p_loops = fusion_prefix(producer, depth)
    if p_loops is None:
        raise Infeasible(
            "Cannot merge these two loops because unable to compute a "
            "computation slice"
        )

    c_loops = [c._node for c in enclosing_loops(axis_c)] + [axis]
    binding = {
        p.iter: idx_read(c.iter, c.srcinfo) for p, c in zip(p_loops, c_loops)
    }
    p_body = Alpha_Rename(SubstArgs(p_loops[-1].body, binding).result()).result()
    p_body = _relabel(p_body, consumer_c, producer.info.stage)

    p_idx = producer_c.get_index()
    ir = axis_c._replace([axis.update(body=p_body + axis.body)])
    return Cursor.create(ir).body()[p_idx]._delete()


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Intermediate buffer forwarding


class _ElementReads(HIR_Do):
    def __init__(self, name):
        self.name = name
        self.reads = []
        self.whole = False

    def do_e(self, e):
        if isinstance(e, HIR.Read) and e.name is self.name:
            if e.idx:
                self.reads.append(e)
            else:
                self.whole = True
        super().do_e(e)


def _element_reads(stmts, name):
    finder = _ElementReads(name)
    finder.do_stmts(stmts)
    return finder


class _ForwardStore(HIR_Rewrite):
    def __init__(self, name, rhs):
        self.name = name
        self.rhs = rhs

    def map_e(self, e):
        if isinstance(e, HIR.Read) and e.name is self.name:
            return self.rhs
        return super().map_e(e)


def _forwardable(u, block, k):
    """the buffer name if the store block[k] can be forwarded, else None"""
    s = block[k]
    if not isinstance(s, HIR.Assign):
        return None
    name = s.name
    if not any(isinstance(a, HIR.Alloc) and a.name is name for a in u.body):
        return None
    if len([w for w, _ in get_writes_of_stmts(u.body) if w is name]) != 1:
        return None

    later = block[k + 1 :]
    everywhere = _element_reads(u.body, name)
    here = _element_reads(later, name)
    if everywhere.whole or not here.reads:
        return None
    if len(everywhere.reads) != len(here.reads):
        return None
    for r in here.reads:
        if len(r.idx) != len(s.idx):
            return None
        if not all(same_index(i, j) for i, j in zip(r.idx, s.idx)):
            return None

    rhs_names = _names(get_reads_of_expr(s.rhs))
    if name in rhs_names or rhs_names & _names(get_writes_of_stmts(later)):
        return None
    return name


def _forward_buffers(ir, stage, axis_label):
    while True:
        axis_c = find_loop(stage_cursor(ir, stage), axis_label)
        block = axis_c._node.body
        for k in range(len(block)):
            if (name := _forwardable(ir, block, k)) is None:
                continue

            s = block[k]
            later = _ForwardStore(name, s.rhs).apply_stmts(block[k + 1 :])
            ir = axis_c._replace([axis_c._node.update(body=block[:k] + later)])
            alloc_idx = next(
                i
                for i, a in enumerate(ir.body)
                if isinstance(a, HIR.Alloc) and a.name is name
            )
            ir = Cursor.create(ir).body()[alloc_idx]._delete()
            logger.debug("forwarded intermediate buffer '%s'", name)
            break
        else:
            return ir
