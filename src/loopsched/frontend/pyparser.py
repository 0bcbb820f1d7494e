from __future__ import annotations

import ast as pyast
import inspect
import re
import textwrap
import types
from collections import ChainMap
from dataclasses import dataclass
from typing import Any, Callable

from ..core.HIR import HIR, K, T, get_loops, mk_loop_info, scalar_types
from ..core.prelude import SrcInfo, Sym, is_pos_int

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Helpers


class ParseError(Exception):
    pass


@dataclass
class SourceInfo:
    """
    Source code locations that are needed to compute the location of AST nodes.
    """

    src_file: str
    src_line_offset: int
    src_col_offset: int

    def get_src_info(self, node: pyast.AST):
        return SrcInfo(
            filename=self.src_file,
            lineno=node.lineno + self.src_line_offset,
            col_offset=node.col_offset + self.src_col_offset,
            end_lineno=(
                None
                if node.end_lineno is None
                else node.end_lineno + self.src_line_offset
            ),
            end_col_offset=(
                None
                if node.end_col_offset is None
                else node.end_col_offset + self.src_col_offset
            ),
        )


def get_ast_from_python(f: Callable[..., Any]) -> tuple[pyast.stmt, SourceInfo]:
    # note that we must dedent in case the function is defined
    # inside of a local scope
    rawsrc = inspect.getsource(f)
    src = textwrap.dedent(rawsrc)
    n_dedent = len(re.match("^(.*)", rawsrc).group()) - len(
        re.match("^(.*)", src).group()
    )

    # convert into AST nodes; which should be a module with a single node
    module = pyast.parse(src)
    assert len(module.body) == 1

    return module.body[0], SourceInfo(
        src_file=inspect.getsourcefile(f),
        src_line_offset=inspect.getsourcelines(f)[1] - 1,
        src_col_offset=n_dedent,
    )


def get_src_locals(*, depth):
    """
    Get the local environment of a calling frame for context capture purposes
    """
    stack_frames = inspect.stack()
    assert len(stack_frames) >= depth
    # a snapshot; f_locals of a function frame is a proxy on newer interpreters
    func_locals = dict(stack_frames[depth].frame.f_locals)
    return ChainMap(func_locals)


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Top-level decorator


def unit(f) -> HIR.unit:
    """
    Parse a restricted Python function into a unit.

        @unit
        def add_one(A: f32[8], B: f32[8]):
            for i in seq(0, 8, stage="S"):
                B[i] = A[i] + 1.0
    """
    if not isinstance(f, types.FunctionType):
        raise TypeError("@unit decorator must be applied to a function")

    body, src_info = get_ast_from_python(f)
    assert isinstance(body, pyast.FunctionDef)

    parser = Parser(
        body,
        src_info,
        func_globals=f.__globals__,
        srclocals=get_src_locals(depth=2),
    )
    return parser.result()


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Parser Pass object

_kinds = {
    "plain": K.Plain,
    "reduction": K.Reduction,
    "spatial": K.Spatial,
    "buffer": K.Buffer,
}

_binops = {
    pyast.Add: "+",
    pyast.Sub: "-",
    pyast.Mult: "*",
    pyast.Div: "/",
    pyast.FloorDiv: "/",
    pyast.Mod: "%",
}

_cmpops = {
    pyast.Lt: "<",
    pyast.Gt: ">",
    pyast.LtE: "<=",
    pyast.GtE: ">=",
    pyast.Eq: "==",
}

_loop_keywords = {"name", "stage", "kind", "parallel", "pipeline", "unroll", "thread"}


class Parser:
    def __init__(self, module_ast, src_info, func_globals=None, srclocals=None):
        self.module_ast = module_ast
        self.src_info = src_info
        self.globals = func_globals or {}
        self.locals = srclocals or ChainMap()
        self.env = ChainMap()
        self.types = {}
        self.depth = 0

        self.push()
        self._cached_result = self.parse_fdef(module_ast)
        self.pop()

    def getsrcinfo(self, ast):
        return self.src_info.get_src_info(ast)

    def result(self):
        return self._cached_result

    def push(self):
        self.env = self.env.new_child()

    def pop(self):
        self.env = self.env.parents

    # - # - # - # - # - # - # - # - # - # - # - # - # - # - # - #
    # parser helper routines

    def err(self, node, errstr, origin=None):
        raise ParseError(f"{self.getsrcinfo(node)}: {errstr}") from origin

    def lookup_python(self, name):
        if name in self.locals:
            return True, self.locals[name]
        if name in self.globals:
            return True, self.globals[name]
        return False, None

    def bind(self, node, name, typ):
        if name in self.env.maps[0]:
            self.err(node, f"'{name}' is already defined in this scope")
        sym = Sym(name)
        self.env[name] = sym
        self.types[sym] = typ
        return sym

    # - # - # - # - # - # - # - # - # - # - # - # - # - # - # - #
    # structural parsing rules...

    def parse_fdef(self, fdef):
        assert isinstance(fdef, pyast.FunctionDef)

        fargs = fdef.args
        if (
            len(fargs.posonlyargs) > 0
            or fargs.vararg is not None
            or len(fargs.kwonlyargs) > 0
            or fargs.kwarg is not None
            or len(fargs.defaults) > 0
        ):
            self.err(fargs, "expected plain, typed, positional arguments only")
        if fdef.returns is not None:
            self.err(fdef, "units do not have return types")

        args = []
        for a in fargs.args:
            if a.annotation is None:
                self.err(a, "expected argument to be typed, i.e. 'x : T'")
            typ = self.parse_type(a.annotation)
            sym = self.bind(a, a.arg, typ)
            args.append(HIR.fnarg(sym, typ, self.getsrcinfo(a)))

        body = fdef.body
        # skip a docstring
        if (
            body
            and isinstance(body[0], pyast.Expr)
            and isinstance(body[0].value, pyast.Constant)
            and isinstance(body[0].value.value, str)
        ):
            body = body[1:]

        return HIR.unit(
            fdef.name, args, self.parse_stmt_block(body), self.getsrcinfo(fdef)
        )

    def parse_type(self, node):
        # ` type ` or ` type @ stream(depth) `
        stream = None
        if isinstance(node, pyast.BinOp) and isinstance(node.op, pyast.MatMult):
            ann = node.right
            if (
                isinstance(ann, pyast.Call)
                and isinstance(ann.func, pyast.Name)
                and ann.func.id == "stream"
                and len(ann.args) == 1
                and isinstance(ann.args[0], pyast.Constant)
                and is_pos_int(ann.args[0].value)
            ):
                stream = ann.args[0].value
            else:
                self.err(ann, "expected a type annotation of the form '@ stream(n)'")
            node = node.left

        if isinstance(node, pyast.Name):
            if stream is not None:
                self.err(node, "only arrays can be streamed")
            if node.id not in scalar_types:
                self.err(node, f"unknown type '{node.id}'")
            return scalar_types[node.id]
        elif isinstance(node, pyast.Subscript):
            if not isinstance(node.value, pyast.Name):
                self.err(node, "expected an array type of the form 'f32[n, m]'")
            base = self.parse_type(node.value)
            if not base.is_numeric():
                self.err(node, f"cannot build an array of '{node.value.id}'")
            if isinstance(node.slice, pyast.Tuple):
                dims = node.slice.elts
            else:
                dims = [node.slice]
            shape = [self.eval_const(d) for d in dims]
            if not all(is_pos_int(s) for s in shape):
                self.err(node, "array extents must be positive integer constants")
            return T.Tensor(shape, base, None, stream)
        else:
            self.err(node, "expected a type")

    def eval_const(self, node):
        if isinstance(node, pyast.Constant):
            return node.value
        elif isinstance(node, pyast.Name):
            found, val = self.lookup_python(node.id)
            if found and isinstance(val, (int, float)):
                return val
        elif isinstance(node, pyast.UnaryOp) and isinstance(node.op, pyast.USub):
            return -self.eval_const(node.operand)
        self.err(node, "expected a constant")

    def parse_stmt_block(self, stmts):
        assert isinstance(stmts, list)

        rstmts = []
        for s in stmts:
            if isinstance(s, pyast.AnnAssign):
                if s.value is not None:
                    self.err(s, "allocations cannot be initialized")
                if not isinstance(s.target, pyast.Name):
                    self.err(s, "expected an allocation of the form 'x : T'")
                typ = self.parse_type(s.annotation)
                sym = self.bind(s, s.target.id, typ)
                rstmts.append(HIR.Alloc(sym, typ, self.getsrcinfo(s)))

            elif isinstance(s, (pyast.Assign, pyast.AugAssign)):
                if isinstance(s, pyast.Assign):
                    if len(s.targets) != 1:
                        self.err(s, "expected exactly one assignment target")
                    target = s.targets[0]
                elif isinstance(s.op, pyast.Add):
                    target = s.target
                else:
                    self.err(s, "only '+=' reductions are supported")

                sym, idx, typ = self.parse_lvalue(target)
                rhs = self.parse_expr(s.value, expect=typ)
                ctor = HIR.Assign if isinstance(s, pyast.Assign) else HIR.Reduce
                rstmts.append(ctor(sym, typ, idx, rhs, self.getsrcinfo(s)))

            elif isinstance(s, pyast.For):
                rstmts.append(self.parse_for(s))

            elif isinstance(s, pyast.If):
                cond = self.parse_expr(s.test, expect=T.bool)
                if cond.type is not T.bool:
                    self.err(s.test, "expected a boolean condition")
                self.push()
                body = self.parse_stmt_block(s.body)
                self.pop()
                self.push()
                orelse = self.parse_stmt_block(s.orelse)
                self.pop()
                rstmts.append(HIR.If(cond, body, orelse, self.getsrcinfo(s)))

            elif isinstance(s, pyast.Expr) and isinstance(s.value, pyast.Call):
                rstmts.append(self.parse_call(s.value))

            elif isinstance(s, pyast.Pass):
                rstmts.append(HIR.Pass(self.getsrcinfo(s)))

            else:
                self.err(s, f"unsupported statement: {type(s).__name__}")

        return rstmts

    def parse_for(self, s):
        if s.orelse:
            self.err(s, "else clause on for-loops is not supported")
        if not isinstance(s.target, pyast.Name):
            self.err(s.target, "expected a single loop iteration variable")

        cond = s.iter
        if not (
            isinstance(cond, pyast.Call)
            and isinstance(cond.func, pyast.Name)
            and cond.func.id == "seq"
        ):
            self.err(cond, "expected for loop condition of the form 'seq(...)'")
        if len(cond.args) not in (2, 3):
            self.err(cond, "seq() expects a lower bound, an upper bound and a step")

        lo = self.parse_expr(cond.args[0], expect=T.index)
        hi = self.parse_expr(cond.args[1], expect=T.index)
        step = 1
        if len(cond.args) == 3:
            step = self.eval_const(cond.args[2])
            if not is_pos_int(step):
                self.err(cond, "expected a positive constant step")

        kw = {}
        for k in cond.keywords:
            if k.arg not in _loop_keywords:
                self.err(k, f"unknown loop attribute '{k.arg}'")
            kw[k.arg] = self.eval_const(k.value)

        info = mk_loop_info(kw.get("name", s.target.id), stage=kw.get("stage"))
        if "kind" in kw:
            if kw["kind"] not in _kinds:
                self.err(cond, f"unknown loop kind '{kw['kind']}'")
            info = info.update(kind=_kinds[kw["kind"]])
        info = info.update(
            parallel=bool(kw.get("parallel", False)),
            pipeline=kw.get("pipeline"),
            unroll=kw.get("unroll"),
            thread=kw.get("thread"),
        )
        if info.stage is not None and self.depth > 0:
            self.err(cond, "only loops at the top of a unit can be stages")

        self.push()
        self.depth += 1
        itr = self.bind(s.target, s.target.id, T.index)
        body = self.parse_stmt_block(s.body)
        self.depth -= 1
        self.pop()

        loop = HIR.For(itr, lo, hi, step, body, info, self.getsrcinfo(s))
        if info.stage is not None:
            labels = [lp.info.label for lp in get_loops([loop])]
            if len(set(labels)) != len(labels):
                self.err(s, f"loop names in stage '{info.stage}' must be unique")
        return loop

    def parse_call(self, call):
        if not isinstance(call.func, pyast.Name) or call.keywords:
            self.err(call, "expected a call of the form 'f(x, y)'")
        found, callee = self.lookup_python(call.func.id)
        if not found or not isinstance(callee, HIR.unit):
            self.err(call, f"'{call.func.id}' is not a unit")
        if len(call.args) != len(callee.args):
            self.err(
                call,
                f"expected {len(callee.args)} arguments to '{callee.name}', "
                f"got {len(call.args)}",
            )

        args = []
        for a, param in zip(call.args, callee.args):
            if param.type.is_tensor():
                if not isinstance(a, pyast.Name) or a.id not in self.env:
                    self.err(a, f"expected an array argument for '{param.name}'")
                sym = self.env[a.id]
                typ = self.types[sym]
                if not typ.is_tensor() or typ.shape() != param.type.shape():
                    self.err(a, f"expected '{a.id}' to have type {param.type}")
                args.append(HIR.Read(sym, [], typ, self.getsrcinfo(a)))
            else:
                args.append(self.parse_expr(a, expect=param.type))
        return HIR.Call(callee.name, args, self.getsrcinfo(call))

    # parse the left-hand-side of an assignment
    def parse_lvalue(self, node):
        if not isinstance(node, (pyast.Name, pyast.Subscript)):
            self.err(node, "expected lhs of form 'x' or 'x[...]'")
        sym, idx = self.parse_array_indexing(node)
        typ = self.types[sym]
        if not typ.is_tensor() or not idx:
            self.err(node, "only array elements can be assigned to")
        return sym, idx, typ.basetype()

    def parse_array_indexing(self, node):
        if isinstance(node, pyast.Name):
            nm, dims = node, []
        else:
            if not isinstance(node.value, pyast.Name):
                self.err(node, "expected access to have form 'x' or 'x[...]'")
            if isinstance(node.slice, pyast.Slice):
                self.err(node, "index-slicing not allowed")
            nm = node.value
            if isinstance(node.slice, pyast.Tuple):
                dims = node.slice.elts
            else:
                dims = [node.slice]

        if nm.id not in self.env:
            self.err(nm, f"variable '{nm.id}' undefined")
        sym = self.env[nm.id]
        typ = self.types[sym]
        if dims and len(dims) != len(typ.shape()):
            self.err(
                node,
                f"expected {len(typ.shape())} indices for '{nm.id}', got {len(dims)}",
            )
        idx = [self.parse_expr(d, expect=T.index) for d in dims]
        for i, d in zip(idx, dims):
            if not i.type.is_indexable():
                self.err(d, "expected an index expression")
        return sym, idx

    # - # - # - # - # - # - # - # - # - # - # - # - # - # - # - #
    # expressions

    def const(self, node, val, expect):
        srcinfo = self.getsrcinfo(node)
        if isinstance(val, bool):
            return HIR.Const(val, T.bool, srcinfo)
        elif isinstance(val, int):
            if expect is None or expect is T.bool:
                expect = T.index
            if expect.is_float():
                return HIR.Const(float(val), expect, srcinfo)
            return HIR.Const(val, expect, srcinfo)
        elif isinstance(val, float):
            if expect is None or not expect.is_float():
                expect = T.f32
            return HIR.Const(val, expect, srcinfo)
        self.err(node, f"unsupported constant {val!r}")

    def parse_expr(self, e, expect=None):
        srcinfo = self.getsrcinfo(e)

        if isinstance(e, pyast.Constant):
            return self.const(e, e.value, expect)

        elif isinstance(e, pyast.Name) and e.id not in self.env:
            found, val = self.lookup_python(e.id)
            if not found:
                self.err(e, f"variable '{e.id}' undefined")
            if not isinstance(val, (int, float)):
                self.err(e, f"variable '{e.id}' has unsupported type {type(val)}")
            return self.const(e, val, expect)

        elif isinstance(e, (pyast.Name, pyast.Subscript)):
            sym, idx = self.parse_array_indexing(e)
            typ = self.types[sym]
            if typ.is_tensor() and not idx:
                self.err(e, f"array '{sym}' can only be passed whole to a call")
            return HIR.Read(sym, idx, typ.basetype(), srcinfo)

        elif isinstance(e, pyast.UnaryOp):
            if not isinstance(e.op, pyast.USub):
                self.err(e, "unsupported unary operator")
            if isinstance(e.operand, pyast.Constant):
                return self.const(e, -e.operand.value, expect)
            arg = self.parse_expr(e.operand, expect)
            return HIR.USub(arg, arg.type, srcinfo)

        elif isinstance(e, pyast.BinOp):
            if type(e.op) not in _binops:
                self.err(e, f"unsupported binary operator {type(e.op).__name__}")
            lhs, rhs = self.parse_operands(e.left, e.right, expect)
            if isinstance(e.op, pyast.FloorDiv) and not lhs.type.is_indexable():
                self.err(e, "'//' is only supported on index expressions")
            typ = rhs.type if lhs.type.is_indexable() else lhs.type
            return HIR.BinOp(_binops[type(e.op)], lhs, rhs, typ, srcinfo)

        elif isinstance(e, pyast.Compare):
            if len(e.ops) != 1 or type(e.ops[0]) not in _cmpops:
                self.err(e, "expected a single comparison with < > <= >= ==")
            lhs, rhs = self.parse_operands(e.left, e.comparators[0], None)
            return HIR.BinOp(_cmpops[type(e.ops[0])], lhs, rhs, T.bool, srcinfo)

        elif isinstance(e, pyast.BoolOp):
            op = "and" if isinstance(e.op, pyast.And) else "or"
            res = self.parse_expr(e.values[0], T.bool)
            for v in e.values[1:]:
                rhs = self.parse_expr(v, T.bool)
                res = HIR.BinOp(op, res, rhs, T.bool, srcinfo)
            return res

        elif isinstance(e, pyast.Call):
            if not (
                isinstance(e.func, pyast.Name)
                and e.func.id == "min"
                and len(e.args) == 2
                and not e.keywords
            ):
                self.err(e, "the only call allowed in expressions is min(a, b)")
            lhs, rhs = self.parse_operands(e.args[0], e.args[1], T.index)
            if not lhs.type.is_indexable() or not rhs.type.is_indexable():
                self.err(e, "min() is only supported on index expressions")
            return HIR.BinOp("min", lhs, rhs, T.index, srcinfo)

        else:
            self.err(e, f"unsupported expression: {type(e).__name__}")

    def parse_operands(self, left, right, expect):
        # constants take the type of the other operand
        if isinstance(left, pyast.Constant) and not isinstance(right, pyast.Constant):
            rhs = self.parse_expr(right, expect)
            return self.parse_expr(left, rhs.type), rhs
        lhs = self.parse_expr(left, expect)
        return lhs, self.parse_expr(right, lhs.type)
