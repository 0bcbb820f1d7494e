import re
from collections import ChainMap

from asdl_adt import ADT, validators

from .affine import Affine, identity_map
from .prelude import Sym, SrcInfo, extclass

# --------------------------------------------------------------------------- #
# Validated string subtypes
# --------------------------------------------------------------------------- #


class Identifier(str):
    _valid_re = re.compile(r"^(?:_\w|[a-zA-Z])\w*$")

    def __new__(cls, name):
        name = str(name)
        if Identifier._valid_re.match(name):
            return super().__new__(cls, name)
        raise ValueError(f"invalid identifier: {name}")


comparision_ops = {"<", ">", "<=", ">=", "=="}
arithmetic_ops = {"+", "-", "*", "/", "%", "min"}
logical_ops = {"and", "or"}

front_ops = comparision_ops | arithmetic_ops | logical_ops


class Operator(str):
    def __new__(cls, op):
        op = str(op)
        if op in front_ops:
            return super().__new__(cls, op)
        raise ValueError(f"invalid operator: {op}")


# --------------------------------------------------------------------------- #
# Hierarchical loop IR
#
#   A unit is a callable function.  Stages are the loops at the top level of
#   a unit body that carry a stage name in their loop_info.  Loops are
#   addressed by their label, which is unique within a stage.
# --------------------------------------------------------------------------- #


HIR = ADT(
    """
module HIR {
    unit    = ( name    name,
                fnarg*  args,
                stmt*   body,
                srcinfo srcinfo )

    fnarg   = ( sym     name,
                type    type,
                srcinfo srcinfo )

    stmt    = Assign( sym name, type type, expr* idx, expr rhs )
            | Reduce( sym name, type type, expr* idx, expr rhs )
            | Pass()
            | If( expr cond, stmt* body, stmt* orelse )
            | For( sym iter, expr lo, expr hi, int step, stmt* body,
                   loop_info info )
            | Alloc( sym name, type type )
            | Call( name f, expr* args )
            attributes( srcinfo srcinfo )

    loop_info = ( string    label,
                  string?   stage,
                  loop_kind kind,
                  bool      parallel,
                  int?      pipeline,
                  int?      unroll,
                  int?      thread )

    loop_kind = Plain()
              | Reduction()
              | Spatial()  -- shift loop of a reuse buffer
              | Buffer()   -- init / write-back loop of a local buffer

    expr    = Read( sym name, expr* idx )
            | Const( object val )
            | USub( expr arg )  -- i.e.  -(...)
            | BinOp( binop op, expr lhs, expr rhs )
            attributes( type type, srcinfo srcinfo )

    type    = I8()
            | I32()
            | I64()
            | F32()
            | F64()
            | Bool()
            | Int()
            | Index()
            | Tensor( int* dims, type type, layout? layout, int? stream )
}""",
    ext_types={
        "name": validators.instance_of(Identifier, convert=True),
        "sym": Sym,
        "binop": validators.instance_of(Operator, convert=True),
        "layout": Affine.map,
        "srcinfo": SrcInfo,
        "int": int,
        "bool": bool,
    },
    memoize={
        "Plain",
        "Reduction",
        "Spatial",
        "Buffer",
        "I8",
        "I32",
        "I64",
        "F32",
        "F64",
        "Bool",
        "Int",
        "Index",
    },
)


# make units be hashable objects
@extclass(HIR.unit)
def __hash__(self):
    return id(self)


del __hash__


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Types


class T:
    I8 = HIR.I8
    I32 = HIR.I32
    I64 = HIR.I64
    F32 = HIR.F32
    F64 = HIR.F64
    Bool = HIR.Bool
    Int = HIR.Int
    Index = HIR.Index
    Tensor = HIR.Tensor
    type = HIR.type
    i8 = I8()
    i32 = I32()
    int32 = I32()
    i64 = I64()
    f32 = F32()
    f64 = F64()
    bool = Bool()  # note: accessed as T.bool outside this module
    int = Int()
    index = Index()


class K:
    Plain = HIR.Plain()
    Reduction = HIR.Reduction()
    Spatial = HIR.Spatial()
    Buffer = HIR.Buffer()


_type_names = {
    HIR.I8: "i8",
    HIR.I32: "i32",
    HIR.I64: "i64",
    HIR.F32: "f32",
    HIR.F64: "f64",
    HIR.Bool: "bool",
    HIR.Int: "int",
    HIR.Index: "index",
}

scalar_types = {nm: typ() for typ, nm in _type_names.items()}


# --------------------------------------------------------------------------- #
# type helper functions


@extclass(HIR.type)
def shape(t):
    if isinstance(t, T.Tensor):
        assert not isinstance(t.type, T.Tensor), "expect no nesting"
        return list(t.dims)
    return []


del shape


@extclass(HIR.type)
def basetype(t):
    if isinstance(t, T.Tensor):
        return t.type
    return t


del basetype


@extclass(HIR.type)
def is_tensor(t):
    return isinstance(t, T.Tensor)


del is_tensor


@extclass(HIR.type)
def is_numeric(t):
    return isinstance(t.basetype(), (T.I8, T.I32, T.I64, T.F32, T.F64))


del is_numeric


@extclass(HIR.type)
def is_indexable(t):
    return isinstance(t, (T.Int, T.Index))


del is_indexable


@extclass(HIR.type)
def is_float(t):
    return isinstance(t.basetype(), (T.F32, T.F64))


del is_float


@extclass(HIR.type)
def type_name(t):
    return _type_names[type(t.basetype())]


del type_name


@extclass(HIR.Tensor)
def rank(t):
    return len(t.dims)


del rank


@extclass(HIR.Tensor)
def num_elements(t):
    n = 1
    for s in t.dims:
        n *= s
    return n


del num_elements


@extclass(HIR.Tensor)
def layout_map(t):
    return t.layout if t.layout is not None else identity_map(len(t.dims))


del layout_map


# --------------------------------------------------------------------------- #
# loop helper functions


def const_val(e):
    if isinstance(e, HIR.Const) and isinstance(e.val, int):
        return e.val
    return None


def is_const_zero(e):
    return isinstance(e, HIR.Const) and e.val == 0


@extclass(HIR.For)
def trip_count(s):
    lo, hi = const_val(s.lo), const_val(s.hi)
    if lo is None or hi is None:
        return None
    return max(0, -(-(hi - lo) // s.step))


del trip_count


@extclass(HIR.For)
def is_normalized(s):
    return is_const_zero(s.lo) and s.step == 1


del is_normalized


@extclass(HIR.For)
def name(s):
    return s.info.label


del name


@extclass(HIR.For)
def is_reduction(s):
    return s.info.kind is K.Reduction


del is_reduction


def mk_loop_info(label, stage=None, kind=None):
    return HIR.loop_info(label, stage, kind or K.Plain, False, None, None, None)


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Standard Pass Templates for the IR


class HIR_Rewrite:
    def apply_unit(self, old):
        return self.map_unit(old) or old

    def apply_fnarg(self, old):
        return self.map_fnarg(old) or old

    def apply_stmts(self, old):
        if (new := self.map_stmts(old)) is not None:
            return new
        return old

    def apply_exprs(self, old):
        if (new := self.map_exprs(old)) is not None:
            return new
        return old

    def apply_s(self, old):
        if (new := self.map_s(old)) is not None:
            return new
        return [old]

    def apply_e(self, old):
        return self.map_e(old) or old

    def apply_t(self, old):
        return self.map_t(old) or old

    def map_unit(self, u):
        new_args = self._map_list(self.map_fnarg, u.args)
        new_body = self.map_stmts(u.body)

        if any((new_args is not None, new_body is not None)):
            return u.update(args=new_args or u.args, body=new_body or u.body)

        return None

    def map_fnarg(self, a):
        if t := self.map_t(a.type):
            return a.update(type=t)

        return None

    def map_stmts(self, stmts):
        return self._map_list(self.map_s, stmts)

    def map_exprs(self, exprs):
        return self._map_list(self.map_e, exprs)

    def map_s(self, s):
        if isinstance(s, (HIR.Assign, HIR.Reduce)):
            new_type = self.map_t(s.type)
            new_idx = self.map_exprs(s.idx)
            new_rhs = self.map_e(s.rhs)
            if any((new_type, new_idx is not None, new_rhs)):
                return [
                    s.update(
                        type=new_type or s.type,
                        idx=new_idx if new_idx is not None else s.idx,
                        rhs=new_rhs or s.rhs,
                    )
                ]
        elif isinstance(s, HIR.If):
            new_cond = self.map_e(s.cond)
            new_body = self.map_stmts(s.body)
            new_orelse = self.map_stmts(s.orelse)
            if any((new_cond, new_body is not None, new_orelse is not None)):
                return [
                    s.update(
                        cond=new_cond or s.cond,
                        body=new_body if new_body is not None else s.body,
                        orelse=new_orelse if new_orelse is not None else s.orelse,
                    )
                ]
        elif isinstance(s, HIR.For):
            new_lo = self.map_e(s.lo)
            new_hi = self.map_e(s.hi)
            new_body = self.map_stmts(s.body)
            if any((new_lo, new_hi, new_body is not None)):
                return [
                    s.update(
                        lo=new_lo or s.lo,
                        hi=new_hi or s.hi,
                        body=new_body if new_body is not None else s.body,
                    )
                ]
        elif isinstance(s, HIR.Call):
            new_args = self.map_exprs(s.args)
            if new_args is not None:
                return [s.update(args=new_args)]
        elif isinstance(s, HIR.Alloc):
            new_type = self.map_t(s.type)
            if new_type:
                return [s.update(type=new_type)]
        elif isinstance(s, HIR.Pass):
            return None
        else:
            raise NotImplementedError(f"bad case {type(s)}")
        return None

    def map_e(self, e):
        if isinstance(e, HIR.Read):
            new_type = self.map_t(e.type)
            new_idx = self.map_exprs(e.idx)
            if any((new_type, new_idx is not None)):
                return e.update(
                    idx=new_idx if new_idx is not None else e.idx,
                    type=new_type or e.type,
                )
        elif isinstance(e, HIR.BinOp):
            new_lhs = self.map_e(e.lhs)
            new_rhs = self.map_e(e.rhs)
            new_type = self.map_t(e.type)
            if any((new_lhs, new_rhs, new_type)):
                return e.update(
                    lhs=new_lhs or e.lhs,
                    rhs=new_rhs or e.rhs,
                    type=new_type or e.type,
                )
        elif isinstance(e, HIR.USub):
            new_arg = self.map_e(e.arg)
            new_type = self.map_t(e.type)
            if any((new_arg, new_type)):
                return e.update(
                    arg=new_arg or e.arg,
                    type=new_type or e.type,
                )
        elif isinstance(e, HIR.Const):
            return None
        else:
            raise NotImplementedError(f"bad case {type(e)}")
        return None

    def map_t(self, t):
        return None

    @staticmethod
    def _map_list(fn, nodes):
        new_stmts = []
        needs_update = False

        for s in nodes:
            s2 = fn(s)
            if s2 is None:
                new_stmts.append(s)
            else:
                needs_update = True
                if isinstance(s2, list):
                    new_stmts.extend(s2)
                else:
                    new_stmts.append(s2)

        if not needs_update:
            return None

        return new_stmts


class HIR_Do:
    def __init__(self, unit, *args, **kwargs):
        self.unit = unit

        for a in self.unit.args:
            self.do_t(a.type)

        self.do_stmts(self.unit.body)

    def do_stmts(self, stmts):
        for s in stmts:
            self.do_s(s)

    def do_s(self, s):
        styp = type(s)
        if styp is HIR.Assign or styp is HIR.Reduce:
            for e in s.idx:
                self.do_e(e)
            self.do_e(s.rhs)
            self.do_t(s.type)
        elif styp is HIR.If:
            self.do_e(s.cond)
            self.do_stmts(s.body)
            self.do_stmts(s.orelse)
        elif styp is HIR.For:
            self.do_e(s.lo)
            self.do_e(s.hi)
            self.do_stmts(s.body)
        elif styp is HIR.Call:
            for e in s.args:
                self.do_e(e)
        elif styp is HIR.Alloc:
            self.do_t(s.type)
        else:
            pass

    def do_e(self, e):
        etyp = type(e)
        if etyp is HIR.Read:
            for i in e.idx:
                self.do_e(i)
        elif etyp is HIR.BinOp:
            self.do_e(e.lhs)
            self.do_e(e.rhs)
        elif etyp is HIR.USub:
            self.do_e(e.arg)
        else:
            pass

        self.do_t(e.type)

    def do_t(self, t):
        pass


class GetReads(HIR_Do):
    def __init__(self):
        self.reads = []

    def do_e(self, e):
        if isinstance(e, HIR.Read):
            self.reads.append((e.name, e.type))
        super().do_e(e)


def get_reads_of_expr(e):
    gr = GetReads()
    gr.do_e(e)
    return gr.reads


def get_reads_of_stmts(stmts):
    gr = GetReads()
    for stmt in stmts:
        gr.do_s(stmt)
    return gr.reads


class GetWrites(HIR_Do):
    def __init__(self):
        self.writes = []

    def do_s(self, s):
        if isinstance(s, (HIR.Assign, HIR.Reduce)):
            self.writes.append((s.name, s.type))
        elif isinstance(s, HIR.Call):
            # whole-array arguments may be written by the callee
            for a in s.args:
                if isinstance(a, HIR.Read) and a.type.is_tensor():
                    self.writes.append((a.name, a.type))

        super().do_s(s)


def get_writes_of_stmts(stmts):
    gw = GetWrites()
    for stmt in stmts:
        gw.do_s(stmt)
    return gw.writes


class GetLoops(HIR_Do):
    """pre-order list of every loop in the visited statements"""

    def __init__(self):
        self.loops = []

    def do_s(self, s):
        if isinstance(s, HIR.For):
            self.loops.append(s)
        super().do_s(s)


def get_loops(stmts):
    gl = GetLoops()
    gl.do_stmts(stmts)
    return gl.loops


class _UsesSym(HIR_Do):
    def __init__(self, sym):
        self.sym = sym
        self.found = False

    def do_s(self, s):
        if isinstance(s, (HIR.Assign, HIR.Reduce, HIR.Alloc)) and s.name is self.sym:
            self.found = True
        super().do_s(s)

    def do_e(self, e):
        if isinstance(e, HIR.Read) and e.name is self.sym:
            self.found = True
        super().do_e(e)


def uses_sym(nodes, sym):
    """True if `sym` is read or written anywhere in the statements/exprs"""
    finder = _UsesSym(sym)
    for n in nodes:
        if isinstance(n, HIR.stmt):
            finder.do_s(n)
        else:
            finder.do_e(n)
    return finder.found


class FreeVars(HIR_Do):
    def __init__(self, node):
        assert isinstance(node, list)
        self.env = ChainMap()
        self.fv = []

        for n in node:
            if isinstance(n, HIR.stmt):
                self.do_s(n)
            elif isinstance(n, HIR.expr):
                self.do_e(n)
            else:
                assert False, "expected stmt or expr"

    def result(self):
        return self.fv

    def _add(self, nm):
        if nm not in self.env and nm not in self.fv:
            self.fv.append(nm)

    def push(self):
        self.env = self.env.new_child()

    def pop(self):
        self.env = self.env.parents

    def do_s(self, s):
        styp = type(s)
        if styp is HIR.Assign or styp is HIR.Reduce:
            for e in s.idx:
                self.do_e(e)
            self.do_e(s.rhs)
            self._add(s.name)
            return
        elif styp is HIR.If:
            self.do_e(s.cond)
            self.push()
            self.do_stmts(s.body)
            self.do_stmts(s.orelse)
            self.pop()
            return
        elif styp is HIR.For:
            self.do_e(s.lo)
            self.do_e(s.hi)
            self.push()
            self.env[s.iter] = True
            self.do_stmts(s.body)
            self.pop()
            return
        elif styp is HIR.Alloc:
            self.env[s.name] = True

        super().do_s(s)

    def do_e(self, e):
        if type(e) is HIR.Read:
            self._add(e.name)

        super().do_e(e)


class Alpha_Rename(HIR_Rewrite):
    def __init__(self, node):
        self.env = ChainMap()
        self.node = []

        if isinstance(node, HIR.unit):
            self.node = self.apply_unit(node)
        else:
            assert isinstance(node, list)
            for n in node:
                if isinstance(n, HIR.stmt):
                    self.node += self.apply_s(n)
                elif isinstance(n, HIR.expr):
                    self.node += [self.apply_e(n)]
                else:
                    assert False, "expected stmt or expr"

    def result(self):
        return self.node

    def push(self):
        self.env = self.env.new_child()

    def pop(self):
        self.env = self.env.parents

    def map_fnarg(self, fa):
        nm = fa.name.copy()
        self.env[fa.name] = nm
        return fa.update(name=nm)

    def map_s(self, s):
        if isinstance(s, (HIR.Assign, HIR.Reduce)):
            s2 = super().map_s(s)
            if new_name := self.env.get(s.name):
                return [((s2 and s2[0]) or s).update(name=new_name)]
            else:
                return s2
        elif isinstance(s, HIR.Alloc):
            assert s.name not in self.env
            new_name = s.name.copy()
            self.env[s.name] = new_name
            return [s.update(name=new_name)]
        elif isinstance(s, HIR.If):
            self.push()
            stmts = super().map_s(s)
            self.pop()
            return stmts
        elif isinstance(s, HIR.For):
            lo = self.map_e(s.lo) or s.lo
            hi = self.map_e(s.hi) or s.hi

            self.push()
            itr = s.iter.copy()
            self.env[s.iter] = itr
            body = self.map_stmts(s.body) or s.body
            self.pop()

            return [s.update(iter=itr, lo=lo, hi=hi, body=body)]

        return super().map_s(s)

    def map_e(self, e):
        if isinstance(e, HIR.Read):
            e2 = super().map_e(e)
            if new_name := self.env.get(e.name):
                return (e2 or e).update(name=new_name)
            else:
                return e2

        return super().map_e(e)


class SubstArgs(HIR_Rewrite):
    def __init__(self, nodes, binding):
        assert isinstance(nodes, list)
        assert isinstance(binding, dict)
        assert all(isinstance(v, HIR.expr) for v in binding.values())
        self.env = binding
        self.nodes = []
        for n in nodes:
            if isinstance(n, HIR.stmt):
                self.nodes += self.apply_s(n)
            elif isinstance(n, HIR.expr):
                self.nodes += [self.apply_e(n)]
            else:
                assert False, "expected stmt or expr"

    def result(self):
        return self.nodes

    def map_s(self, s):
        s2 = super().map_s(s)
        s_new = s2[0] if s2 is not None else s

        # buffers may only be renamed, never replaced by an expression
        if isinstance(s, (HIR.Assign, HIR.Reduce)):
            if s.name in self.env:
                sym = self.env[s.name]
                assert isinstance(sym, HIR.Read) and len(sym.idx) == 0
                return [s_new.update(name=sym.name)]

        return s2

    def map_e(self, e):
        if isinstance(e, HIR.Read):
            if e.name in self.env:
                sub_e = self.env[e.name]

                if not e.idx:
                    return sub_e

                assert isinstance(sub_e, HIR.Read) and len(sub_e.idx) == 0
                return e.update(name=sub_e.name, idx=self.apply_exprs(e.idx))

        return super().map_e(e)


class RetypeBuffer(HIR_Rewrite):
    """Give every whole-array reference to `name` the type `typ`"""

    def __init__(self, name, typ):
        self.name = name
        self.typ = typ

    def map_fnarg(self, a):
        if a.name is self.name:
            return a.update(type=self.typ)
        return None

    def map_s(self, s):
        if isinstance(s, HIR.Alloc) and s.name is self.name:
            return [s.update(type=self.typ)]
        return super().map_s(s)

    def map_e(self, e):
        if isinstance(e, HIR.Read) and e.name is self.name and not e.idx:
            return e.update(type=self.typ)
        return super().map_e(e)


class RemapAccesses(HIR_Rewrite):
    """Rewrite the index list of every element access to `name` with `fn`"""

    def __init__(self, name, fn, new_name=None):
        self.name = name
        self.fn = fn
        self.new_name = new_name or name

    def map_s(self, s):
        s2 = super().map_s(s)
        if isinstance(s, (HIR.Assign, HIR.Reduce)) and s.name is self.name:
            s_new = s2[0] if s2 is not None else s
            return [s_new.update(name=self.new_name, idx=self.fn(s_new.idx))]
        return s2

    def map_e(self, e):
        if isinstance(e, HIR.Read) and e.name is self.name and e.idx:
            e2 = super().map_e(e) or e
            return e2.update(name=self.new_name, idx=self.fn(e2.idx))
        return super().map_e(e)
