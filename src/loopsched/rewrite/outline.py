from __future__ import annotations

import logging

from ..core.HIR import (
    HIR,
    Alpha_Rename,
    FreeVars,
    get_reads_of_stmts,
    get_writes_of_stmts,
    uses_sym,
)
from .errors import NotFound, PreconditionViolation, Unsupported

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Outlining stages into a new unit


def _sym_type(u, sym):
    for a in u.args:
        if a.name is sym:
            return a.type
    for s in u.body:
        if isinstance(s, HIR.Alloc) and s.name is sym:
            return s.type
    return None


def _ordered(names):
    res = []
    for nm in names:
        if nm not in res:
            res.append(nm)
    return res


def DoOutline(program, stages, unit_name=None):
    """
    Move the named stages of one unit into a new unit placed before it and
    call the new unit where the last of the stages used to be.  Returns the
    name of the new unit.
    """
    stages = list(stages)
    if not stages:
        raise PreconditionViolation("expected at least one stage to outline")
    if len(set(stages)) != len(stages):
        raise PreconditionViolation(f"duplicate stages in outline list {stages}")

    owner = None
    for nm in stages:
        if (found := program.find_stage(nm)) is None:
            raise NotFound(f"Cannot find stage '{nm}'")
        if owner is not None and found[0] is not owner:
            raise PreconditionViolation(
                f"stages {stages} do not belong to the same unit"
            )
        owner = found[0]
    u = owner

    positions = [
        i
        for i, s in enumerate(u.body)
        if isinstance(s, HIR.For) and s.info.stage in stages
    ]
    body = [u.body[i] for i in positions]
    rest = [s for i, s in enumerate(u.body) if i not in positions]

    # unit-level buffers touched only by the outlined stages move along
    moved = [
        s
        for s in rest
        if isinstance(s, HIR.Alloc)
        and uses_sym(body, s.name)
        and not uses_sym([r for r in rest if r is not s], s.name)
    ]
    moved_syms = {s.name for s in moved}

    free = FreeVars(body).result()
    reads = [nm for nm, _ in get_reads_of_stmts(body)]
    writes = [nm for nm, _ in get_writes_of_stmts(body)]
    params = [nm for nm in _ordered(reads + writes) if nm in free]
    params = [nm for nm in params if nm not in moved_syms]

    srcinfo = body[0].srcinfo
    fnargs = []
    for nm in params:
        typ = _sym_type(u, nm)
        if typ is None or not typ.is_tensor():
            raise Unsupported(
                f"cannot outline stages {stages}: '{nm}' is not an array"
            )
        fnargs.append(HIR.fnarg(nm, typ, srcinfo))

    name = program.fresh_unit_name(unit_name or "Stage_" + "_".join(stages))
    new_unit = HIR.unit(name, fnargs, moved + body, srcinfo)
    new_unit = Alpha_Rename(new_unit).result()

    call = HIR.Call(
        name, [HIR.Read(a.name, [], a.type, srcinfo) for a in fnargs], srcinfo
    )
    new_body = []
    for i, s in enumerate(u.body):
        if i == positions[-1]:
            new_body.append(call)
        elif i in positions or (isinstance(s, HIR.Alloc) and s.name in moved_syms):
            continue
        else:
            new_body.append(s)

    program.replace_unit(u.update(body=new_body))
    program.add_unit(new_unit, before=u.name)
    logger.debug(
        "outlined %s into '%s' with parameters %s",
        stages,
        name,
        [str(a.name) for a in fnargs],
    )
    return name
