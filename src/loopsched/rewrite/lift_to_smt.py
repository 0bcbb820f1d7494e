import pysmt
from pysmt import logics
from pysmt import shortcuts as SMT

from ..core.affine import NotAffineError
from ..core.HIR import HIR, const_val
from ..core.prelude import Sym


def _get_smt_solver(name=None):
    if name is not None:
        return pysmt.shortcuts.Solver(name=name, logic=logics.LIA)
    factory = pysmt.factory.Factory(pysmt.shortcuts.get_env())
    slvs = factory.all_solvers(logic=logics.LIA)
    if len(slvs) == 0:
        raise OSError("Could not find any SMT solvers")
    return pysmt.shortcuts.Solver(name=next(iter(slvs)), logic=logics.LIA)


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Lifting index expressions and loop domains to SMT formulas


class IndexLifter:
    """
    Translates index expressions into linear integer arithmetic.  Iterators
    are instantiated per `tag`, so the same statement can be lifted twice to
    talk about two different dynamic instances of it.  Division and modulo by
    a constant introduce fresh variables whose defining constraints are
    collected in `side` and must be conjoined with any query.
    """

    def __init__(self, solver_name=None):
        self.solver_name = solver_name
        self.env = {}
        self.side = []

    def sym_to_smt(self, sym, tag=""):
        key = (sym, tag)
        if key not in self.env:
            self.env[key] = SMT.Symbol(f"{sym!r}{tag}", SMT.INT)
        return self.env[key]

    def fresh(self, nm):
        return self.sym_to_smt(Sym(nm))

    def lift(self, e, tag=""):
        if isinstance(e, HIR.Read):
            if e.idx or not e.type.is_indexable():
                raise NotAffineError(f"'{e.name}' is not an index variable")
            return self.sym_to_smt(e.name, tag)
        elif isinstance(e, HIR.Const):
            if isinstance(e.val, bool):
                return SMT.Bool(e.val)
            if not isinstance(e.val, int):
                raise NotAffineError(f"non-integer constant {e.val}")
            return SMT.Int(e.val)
        elif isinstance(e, HIR.USub):
            return SMT.Minus(SMT.Int(0), self.lift(e.arg, tag))
        elif isinstance(e, HIR.BinOp):
            lhs = self.lift(e.lhs, tag)
            rhs = self.lift(e.rhs, tag)
            if e.op == "+":
                return SMT.Plus(lhs, rhs)
            elif e.op == "-":
                return SMT.Minus(lhs, rhs)
            elif e.op == "*":
                if const_val(e.lhs) is None and const_val(e.rhs) is None:
                    raise NotAffineError("product of two index variables")
                return SMT.Times(lhs, rhs)
            elif e.op in ("/", "%"):
                k = const_val(e.rhs)
                if k is None or k <= 0:
                    raise NotAffineError("division by a non-constant")
                # z == lhs // k  <=>  k*z <= lhs < k*(z+1)
                z = self.fresh("div_tmp")
                self.side.append(SMT.LE(SMT.Times(rhs, z), lhs))
                self.side.append(SMT.LT(lhs, SMT.Times(rhs, SMT.Plus(z, SMT.Int(1)))))
                if e.op == "/":
                    return z
                return SMT.Minus(lhs, SMT.Times(rhs, z))
            elif e.op == "min":
                return SMT.Ite(SMT.LE(lhs, rhs), lhs, rhs)
            elif e.op == "<":
                return SMT.LT(lhs, rhs)
            elif e.op == ">":
                return SMT.GT(lhs, rhs)
            elif e.op == "<=":
                return SMT.LE(lhs, rhs)
            elif e.op == ">=":
                return SMT.GE(lhs, rhs)
            elif e.op == "==":
                return SMT.Equals(lhs, rhs)
            elif e.op == "and":
                return SMT.And(lhs, rhs)
            elif e.op == "or":
                return SMT.Or(lhs, rhs)
            else:
                assert False, f"bad case: {e.op}"
        else:
            assert False, f"bad case: {type(e)}"

    def loop_domain(self, loops, tag=""):
        """iteration domain of a nest of HIR.For statements, outermost first"""
        conds = []
        for s in loops:
            i = self.sym_to_smt(s.iter, tag)
            lo = self.lift(s.lo, tag)
            hi = self.lift(s.hi, tag)
            conds += [SMT.LE(lo, i), SMT.LT(i, hi)]
            if s.step != 1:
                k = self.fresh("step_tmp")
                conds += [
                    SMT.GE(k, SMT.Int(0)),
                    SMT.Equals(i, SMT.Plus(lo, SMT.Times(SMT.Int(s.step), k))),
                ]
        return SMT.And(conds)

    def iteration_number(self, s, tag=""):
        """the zero-based iteration count of loop `s` for its current iterator"""
        i = self.sym_to_smt(s.iter, tag)
        n = self.fresh("iter_tmp")
        lo = self.lift(s.lo, tag)
        self.side.append(
            SMT.Equals(i, SMT.Plus(lo, SMT.Times(SMT.Int(s.step), n)))
        )
        return n

    def is_sat(self, formula):
        solver = _get_smt_solver(self.solver_name)
        return solver.is_sat(SMT.And(formula, *self.side))
