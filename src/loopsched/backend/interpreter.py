from __future__ import annotations

from collections import ChainMap, Counter

import numpy as np

from ..core.HIR import HIR, T
from ..core.program import Program

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# HIR Interpreter


_dtypes = {
    T.I8: np.int8,
    T.I32: np.int32,
    T.I64: np.int64,
    T.F32: np.float32,
    T.F64: np.float64,
    T.Bool: np.bool_,
    T.Int: np.int64,
    T.Index: np.int64,
}


def _dtype(typ):
    return _dtypes[type(typ.basetype())]


def run_interpreter(program_or_unit, kwargs, units=None):
    """
    Run a unit (or the top unit of a program) on the numpy arrays and
    integers in `kwargs`, which are updated in place.  Returns the
    interpreter, whose `loads` counts the element reads of every array.
    """
    if isinstance(program_or_unit, Program):
        units = program_or_unit.units
        entry = program_or_unit.top_unit()
    elif isinstance(program_or_unit, HIR.unit):
        entry = program_or_unit
        units = list(units or []) + [entry]
    else:
        raise TypeError(f"expected a unit or a program, got {type(program_or_unit)}")

    return Interpreter(entry, kwargs, units)


class Interpreter:
    def __init__(self, unit, kwargs, units=()):
        if not isinstance(unit, HIR.unit):
            raise TypeError(f"Expected {unit} to be of type unit")

        self.units = {u.name: u for u in units}
        self.env = ChainMap()
        # array symbol -> name of the array it was passed in as
        self.origin = {}
        self.loads = Counter()

        self.eval_unit(unit, kwargs)

    def _new_scope(self):
        self.env = self.env.new_child()

    def _del_scope(self):
        self.env = self.env.parents

    def typecheck_input_buffer(self, arg, kwargs):
        nm = arg.name
        buf = kwargs[str(nm)]

        pre = f"bad argument '{nm}'"
        if not isinstance(buf, np.ndarray):
            raise TypeError(f"{pre}: expected numpy.ndarray")
        if buf.dtype != _dtype(arg.type):
            raise TypeError(f"{pre}: received {buf.dtype} values")

        shape = tuple(arg.type.shape())
        if shape != tuple(buf.shape):
            raise TypeError(
                f"{pre}: expected buffer of shape {shape}, "
                f"but got shape {tuple(buf.shape)}"
            )

    def eval_unit(self, unit, kwargs, origins=None):
        for a in unit.args:
            if str(a.name) not in kwargs:
                raise TypeError(f"expected argument '{a.name}' to be supplied")

            val = kwargs[str(a.name)]
            if a.type.is_tensor():
                self.typecheck_input_buffer(a, kwargs)
                self.origin[a.name] = (origins or {}).get(str(a.name), str(a.name))
            elif a.type.is_indexable():
                if not isinstance(val, (int, np.integer)) or isinstance(val, bool):
                    raise TypeError(
                        f"expected index variable '{a.name}' to be an integer"
                    )
            elif a.type is T.bool:
                if not isinstance(val, bool):
                    raise TypeError(f"expected bool variable '{a.name}' to be a bool")
            self.env[a.name] = val

        self.eval_stmts(unit.body)

    def eval_stmts(self, stmts):
        for s in stmts:
            self.eval_s(s)

    def eval_s(self, s):
        if isinstance(s, HIR.Pass):
            pass

        elif isinstance(s, (HIR.Assign, HIR.Reduce)):
            lbuf = self.env[s.name]
            idx = tuple(self.eval_e(a) for a in s.idx)
            rhs = self.eval_e(s.rhs)
            if isinstance(s, HIR.Assign):
                lbuf[idx] = rhs
            else:
                lbuf[idx] += rhs

        elif isinstance(s, HIR.If):
            if self.eval_e(s.cond):
                self._new_scope()
                self.eval_stmts(s.body)
                self._del_scope()
            elif s.orelse:
                self._new_scope()
                self.eval_stmts(s.orelse)
                self._del_scope()

        elif isinstance(s, HIR.For):
            lo = self.eval_e(s.lo)
            hi = self.eval_e(s.hi)
            self._new_scope()
            for itr in range(lo, hi, s.step):
                self.env[s.iter] = itr
                self.eval_stmts(s.body)
            self._del_scope()

        elif isinstance(s, HIR.Alloc):
            self.env[s.name] = np.zeros(s.type.shape(), dtype=_dtype(s.type))
            self.origin[s.name] = str(s.name)

        elif isinstance(s, HIR.Call):
            callee = self.units.get(s.f)
            if callee is None:
                raise TypeError(f"call of unknown unit '{s.f}'")

            kwargs, origins = {}, {}
            for param, a in zip(callee.args, s.args):
                if param.type.is_tensor():
                    kwargs[str(param.name)] = self.env[a.name]
                    origins[str(param.name)] = self.origin[a.name]
                else:
                    kwargs[str(param.name)] = self.eval_e(a)

            saved = self.env
            self.env = ChainMap()
            self.eval_unit(callee, kwargs, origins)
            self.env = saved

        else:
            assert False, "bad statement case"

    def eval_e(self, e):
        if isinstance(e, HIR.Read):
            val = self.env[e.name]
            if not e.idx:
                return val
            self.loads[self.origin[e.name]] += 1
            return val[tuple(self.eval_e(a) for a in e.idx)]

        elif isinstance(e, HIR.Const):
            return e.val

        elif isinstance(e, HIR.BinOp):
            lhs, rhs = self.eval_e(e.lhs), self.eval_e(e.rhs)
            if e.op == "+":
                return lhs + rhs
            elif e.op == "-":
                return lhs - rhs
            elif e.op == "*":
                return lhs * rhs
            elif e.op == "/":
                if e.type.is_indexable():
                    return lhs // rhs
                return lhs / rhs
            elif e.op == "%":
                return lhs % rhs
            elif e.op == "min":
                return min(lhs, rhs)
            elif e.op == "==":
                return lhs == rhs
            elif e.op == "<":
                return lhs < rhs
            elif e.op == ">":
                return lhs > rhs
            elif e.op == "<=":
                return lhs <= rhs
            elif e.op == ">=":
                return lhs >= rhs
            elif e.op == "and":
                return lhs and rhs
            elif e.op == "or":
                return lhs or rhs
            else:
                assert False, "bad binop case"

        elif isinstance(e, HIR.USub):
            return -self.eval_e(e.arg)

        else:
            assert False, "bad expression case"
