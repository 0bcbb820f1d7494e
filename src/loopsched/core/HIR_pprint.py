from collections import ChainMap
from dataclasses import dataclass, field

# google python formatting project to save myself the trouble of being overly
# clever run the function FormatCode to transform one string into a formatted
# string
from yapf.yapflib.yapf_api import FormatCode

from .HIR import HIR, K, T
from .prelude import extclass

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
#   Notes on Layout Schemes...

"""
  functions should return a list of strings, one for each line

  standard inputs
  indent  - holds a string of white-space
  prec    - the operator precedence of the surrounding text
            if this string contains a lower precedence operation then
            we must wrap it in parentheses.
"""

# We expect pprint to install functions on the IR rather than
# expose functions; therefore hide all variables as local
__all__ = []

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Operator Precedence

op_prec = {
    "or": 10,
    #
    "and": 20,
    #
    "<": 30,
    ">": 30,
    "<=": 30,
    ">=": 30,
    "==": 30,
    #
    "+": 40,
    "-": 40,
    #
    "*": 50,
    "/": 50,
    "%": 50,
    #
    # unary minus
    "~": 60,
}


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# HIR Pretty Printing


def _format_code(code):
    return FormatCode(code)[0].rstrip("\n")


@extclass(HIR.unit)
def __str__(self):
    return _format_code("\n".join(_print_unit(self, PrintEnv(), "")))


@extclass(HIR.fnarg)
def __str__(self):
    return _print_fnarg(self, PrintEnv())


@extclass(HIR.stmt)
def __str__(self):
    return _format_code("\n".join(_print_stmt(self, PrintEnv(), "")))


@extclass(HIR.expr)
def __str__(self):
    return _print_expr(self, PrintEnv())


@extclass(HIR.type)
def __str__(self):
    return _print_type(self)


del __str__


@dataclass
class PrintEnv:
    env: ChainMap = field(default_factory=ChainMap)
    names: ChainMap = field(default_factory=ChainMap)

    def push(self) -> "PrintEnv":
        return PrintEnv(self.env.new_child(), self.names.new_child())

    def get_name(self, nm):
        if resolved := self.env.get(nm):
            return resolved

        candidate = str(nm)
        num = self.names.get(candidate, 1)
        while candidate in self.names:
            candidate = f"{nm}_{num}"
            num += 1

        self.env[nm] = candidate
        self.names[str(nm)] = num
        return candidate


def _print_unit(u, env: PrintEnv, indent: str) -> list:
    args = [_print_fnarg(a, env) for a in u.args]

    lines = [f"{indent}def {u.name}({', '.join(args)}):"]
    lines.extend(_print_block(u.body, env, indent + "  "))

    return lines


def _print_block(blk, env: PrintEnv, indent: str) -> list:
    lines = []
    for stmt in blk:
        lines.extend(_print_stmt(stmt, env, indent))
    return lines


def _print_stmt(stmt, env: PrintEnv, indent: str) -> list:
    if isinstance(stmt, HIR.Pass):
        return [f"{indent}pass"]

    elif isinstance(stmt, (HIR.Assign, HIR.Reduce)):
        op = "=" if isinstance(stmt, HIR.Assign) else "+="

        lhs = env.get_name(stmt.name)

        idx = [_print_expr(e, env) for e in stmt.idx]
        idx = f"[{', '.join(idx)}]" if idx else ""

        rhs = _print_expr(stmt.rhs, env)

        return [f"{indent}{lhs}{idx} {op} {rhs}"]

    elif isinstance(stmt, HIR.Alloc):
        return [f"{indent}{env.get_name(stmt.name)}: {_print_type(stmt.type)}"]

    elif isinstance(stmt, HIR.Call):
        args = [_print_expr(a, env) for a in stmt.args]
        return [f"{indent}{stmt.f}({', '.join(args)})"]

    elif isinstance(stmt, HIR.If):
        cond = _print_expr(stmt.cond, env)
        lines = [f"{indent}if {cond}:"]
        lines.extend(_print_block(stmt.body, env.push(), indent + "  "))
        if stmt.orelse:
            lines.append(f"{indent}else:")
            lines.extend(_print_block(stmt.orelse, env.push(), indent + "  "))
        return lines

    elif isinstance(stmt, HIR.For):
        body_env = env.push()
        itr = body_env.get_name(stmt.iter)
        lines = [f"{indent}for {itr} in {_print_range(stmt, itr, env)}:"]
        lines.extend(_print_block(stmt.body, body_env, indent + "  "))
        return lines

    assert False, f"unrecognized stmt: {type(stmt)}"


_kind_names = {
    HIR.Reduction: "reduction",
    HIR.Spatial: "spatial",
    HIR.Buffer: "buffer",
}


def _print_range(s, itr, env: PrintEnv) -> str:
    args = [_print_expr(s.lo, env), _print_expr(s.hi, env)]
    if s.step != 1:
        args.append(str(s.step))

    info = s.info
    if info.label != itr:
        args.append(f'name="{info.label}"')
    if info.stage:
        args.append(f'stage="{info.stage}"')
    if info.kind is not K.Plain:
        args.append(f'kind="{_kind_names[type(info.kind)]}"')
    if info.parallel:
        args.append("parallel=True")
    if info.pipeline is not None:
        args.append(f"pipeline={info.pipeline}")
    if info.unroll is not None:
        args.append(f"unroll={info.unroll}")
    if info.thread is not None:
        args.append(f"thread={info.thread}")

    return f"seq({', '.join(args)})"


def _print_fnarg(a, env: PrintEnv) -> str:
    return f"{env.get_name(a.name)}: {_print_type(a.type)}"


def _print_expr(e, env: PrintEnv, prec: int = 0) -> str:
    if isinstance(e, HIR.Read):
        name = env.get_name(e.name)
        idx = f"[{', '.join(_print_expr(i, env) for i in e.idx)}]" if e.idx else ""
        return f"{name}{idx}"

    elif isinstance(e, HIR.Const):
        return str(e.val)

    elif isinstance(e, HIR.USub):
        return f'-{_print_expr(e.arg, env, prec=op_prec["~"])}'

    elif isinstance(e, HIR.BinOp):
        if e.op == "min":
            return f"min({_print_expr(e.lhs, env)}, {_print_expr(e.rhs, env)})"

        local_prec = op_prec[e.op]
        # increment rhs by 1 to account for left-associativity
        lhs = _print_expr(e.lhs, env, prec=local_prec)
        rhs = _print_expr(e.rhs, env, prec=local_prec + 1)
        s = f"{lhs} {e.op} {rhs}"
        # if we have a lower precedence than the environment...
        if local_prec < prec:
            s = f"({s})"
        return s

    assert False, f"unrecognized expr: {type(e)}"


def _print_type(t) -> str:
    if isinstance(t, T.Tensor):
        base = _print_type(t.basetype())
        dims = ", ".join(str(n) for n in t.dims)
        s = f"{base}[{dims}]"
        if t.layout is not None:
            s += f' @ layout("{t.layout}")'
        if t.stream is not None:
            s += f" @ stream({t.stream})"
        return s

    return t.type_name()
