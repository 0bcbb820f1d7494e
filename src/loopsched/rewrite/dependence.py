from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pysmt import shortcuts as SMT

from ..core.affine import NotAffineError
from ..core.HIR import HIR, HIR_Do

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Memory accesses of a stage


@dataclass
class Access:
    name: object  # Sym of the accessed buffer
    idx: list
    is_write: bool
    loops: list  # enclosing HIR.For statements, outermost first
    guarded: bool = False
    is_array: bool = True
    whole: bool = False  # whole-array argument of a call


class GetAccesses(HIR_Do):
    def __init__(self, stmts):
        self.accesses = []
        self.loops = []
        self.guards = 0
        self.do_stmts(stmts)

    def result(self):
        return self.accesses

    def _add(self, name, typ, idx, is_write, whole=False):
        self.accesses.append(
            Access(
                name,
                list(idx),
                is_write,
                list(self.loops),
                guarded=self.guards > 0,
                is_array=bool(idx) or typ.is_tensor(),
                whole=whole,
            )
        )

    def do_s(self, s):
        if isinstance(s, (HIR.Assign, HIR.Reduce)):
            for e in s.idx:
                self.do_e(e)
            self.do_e(s.rhs)
            if isinstance(s, HIR.Reduce):
                self._add(s.name, s.type, s.idx, False)
            self._add(s.name, s.type, s.idx, True)
        elif isinstance(s, HIR.If):
            self.do_e(s.cond)
            self.guards += 1
            self.do_stmts(s.body)
            self.do_stmts(s.orelse)
            self.guards -= 1
        elif isinstance(s, HIR.For):
            self.do_e(s.lo)
            self.do_e(s.hi)
            self.loops.append(s)
            self.do_stmts(s.body)
            self.loops.pop()
        elif isinstance(s, HIR.Call):
            for a in s.args:
                if isinstance(a, HIR.Read) and a.type.is_tensor():
                    self._add(a.name, a.type, [], False, whole=True)
                    self._add(a.name, a.type, [], True, whole=True)
                else:
                    self.do_e(a)
        else:
            super().do_s(s)

    def do_e(self, e):
        if isinstance(e, HIR.Read):
            for i in e.idx:
                self.do_e(i)
            if e.idx or not e.type.is_indexable():
                self._add(e.name, e.type, e.idx, False, whole=e.type.is_tensor())
        elif isinstance(e, HIR.BinOp):
            self.do_e(e.lhs)
            self.do_e(e.rhs)
        elif isinstance(e, HIR.USub):
            self.do_e(e.arg)


def get_accesses(stmts):
    return GetAccesses(stmts).result()


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Dependences between two stages


class DepKind(Enum):
    RAW = "RAW"  # producer writes, consumer reads
    WAR = "WAR"  # producer reads, consumer writes
    WAW = "WAW"  # both write


@dataclass
class Dependence:
    kind: DepKind
    name: object
    src: Access
    dst: Access

    def __str__(self):
        return f"{self.kind.value} on {self.name}"


@dataclass
class DependenceResult:
    """
    The dependences found between a producer and a consumer stage.  When
    `complete` is false the analyzer met something it cannot reason about
    (given in `reason`) and an empty `deps` means "unknown", not
    "independent".
    """

    deps: list = field(default_factory=list)
    complete: bool = True
    reason: Optional[str] = None

    def has(self, kind):
        return any(d.kind is kind for d in self.deps)

    def strategy(self):
        return "producer-consumer" if self.has(DepKind.RAW) else "generic"


def _dep_kind(src, dst):
    if src.is_write and dst.is_write:
        return DepKind.WAW
    elif src.is_write:
        return DepKind.RAW
    elif dst.is_write:
        return DepKind.WAR
    return None


def _overlap_formula(lifter, src, dst):
    """formula satisfiable iff the two accesses can touch the same element"""
    conds = [
        lifter.loop_domain(src.loops, "_p"),
        lifter.loop_domain(dst.loops, "_c"),
    ]
    for i1, i2 in zip(src.idx, dst.idx):
        conds.append(SMT.Equals(lifter.lift(i1, "_p"), lifter.lift(i2, "_c")))
    return SMT.And(conds)


def analyze_dependences(producer, consumer, solver_name=None) -> DependenceResult:
    """
    Classify the overlapping access pairs between two stages.  This is a
    pure query; neither stage is modified.
    """
    from .lift_to_smt import IndexLifter

    p_accs = get_accesses([producer])
    c_accs = get_accesses([consumer])
    c_names = {a.name for a in c_accs}

    result = DependenceResult()
    for src in p_accs:
        if src.name not in c_names:
            continue
        for dst in c_accs:
            if dst.name is not src.name:
                continue
            kind = _dep_kind(src, dst)
            if kind is None:
                continue

            if not src.is_array or not dst.is_array:
                result.complete = False
                result.reason = f"'{src.name}' is not an array"
                continue
            if src.guarded or dst.guarded:
                result.complete = False
                result.reason = f"access to '{src.name}' is guarded by a condition"
                continue
            if src.whole or dst.whole:
                result.deps.append(Dependence(kind, src.name, src, dst))
                continue

            lifter = IndexLifter(solver_name)
            try:
                overlap = lifter.is_sat(_overlap_formula(lifter, src, dst))
            except NotAffineError:
                overlap = True
            if overlap:
                result.deps.append(Dependence(kind, src.name, src, dst))

    logger.debug(
        "dependences between stages: %s (complete=%s)",
        [str(d) for d in result.deps],
        result.complete,
    )
    return result


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Compute-at legality


@dataclass
class FusionCheck:
    ok: bool
    reason: Optional[str] = None


def fusion_prefix(stage, depth):
    """the first `depth` loops of a stage if they are perfectly nested"""
    loops = [stage]
    while len(loops) < depth:
        body = loops[-1].body
        if len(body) != 1 or not isinstance(body[0], HIR.For):
            return None
        loops.append(body[0])
    return loops


def check_fusion(producer, consumer, depth, solver_name=None) -> FusionCheck:
    """
    Decide whether the producer stage can be computed inside the first
    `depth` loops of the consumer stage.  Both prefixes must be perfectly
    nested with equal constant trip counts, and no dependence between the
    two stages may be reversed by interleaving them.  Pure query.
    """
    from .lift_to_smt import IndexLifter

    p_loops = fusion_prefix(producer, depth)
    c_loops = fusion_prefix(consumer, depth)
    if p_loops is None or c_loops is None:
        return FusionCheck(False, "unable to compute a computation slice")
    for p, c in zip(p_loops, c_loops):
        if p.trip_count() is None or p.trip_count() != c.trip_count():
            return FusionCheck(False, "unable to compute a computation slice")

    deps = analyze_dependences(producer, consumer, solver_name)
    for d in deps.deps:
        if d.src.whole or d.dst.whole:
            return FusionCheck(False, "fusion would reverse dependences between loops")

        lifter = IndexLifter(solver_name)
        try:
            overlap = _overlap_formula(lifter, d.src, d.dst)
            # lexicographic order of the fused iterations
            n_p = [lifter.iteration_number(s, "_p") for s in p_loops]
            n_c = [lifter.iteration_number(s, "_c") for s in c_loops]
            later = []
            for k in range(depth):
                same = [SMT.Equals(n_p[j], n_c[j]) for j in range(k)]
                later.append(SMT.And(same + [SMT.GT(n_p[k], n_c[k])]))
            reversed_dep = lifter.is_sat(SMT.And(overlap, SMT.Or(later)))
        except NotAffineError:
            reversed_dep = True

        if reversed_dep:
            logger.debug("fusion at depth %d reverses %s", depth, d)
            return FusionCheck(False, "fusion would reverse dependences between loops")

    return FusionCheck(True)
