from __future__ import annotations

import logging
from enum import Enum, auto

from ..rewrite.array_scheduling import DoInterKernel, DoLayout, DoPartition, DoReshape
from ..rewrite.buffer_at import DoBufferAt
from ..rewrite.compute_at import DoComputeAt
from ..rewrite.errors import SchedulingError
from ..rewrite.loop_scheduling import (
    DoFuse,
    DoParallel,
    DoPipeline,
    DoReorder,
    DoSplit,
    DoThreadBind,
    DoTile,
    DoUnroll,
)
from ..rewrite.outline import DoOutline
from ..rewrite.reuse_at import DoReuseAt
from .config import ScheduleOptions
from .directives import D, handles_of, produced_handles

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Schedule driver


class DriverState(Enum):
    Scanning = auto()
    Dispatch = auto()
    Rewritten = auto()


def _dispatch(program, d, options):
    """
    Run the transformation for directive `d`.  Handles are resolved here,
    immediately before the transformation, so that they observe every
    earlier rewrite.
    """
    resolve = program.handles.resolve

    def swap(new_unit):
        program.replace_unit(new_unit)

    if isinstance(d, D.Split):
        resolve(program, d.stage)
        swap(
            DoSplit(
                resolve(program, d.loop), d.factor, d.outer.name, d.inner.name
            )
        )
    elif isinstance(d, D.Tile):
        resolve(program, d.stage)
        labels = [h.name for h in d.tiles]
        swap(
            DoTile(
                resolve(program, d.x), resolve(program, d.y), d.fx, d.fy, labels
            )
        )
    elif isinstance(d, D.Reorder):
        for h in d.loops:
            resolve(program, h)
        swap(DoReorder(resolve(program, d.stage), [h.name for h in d.loops]))
    elif isinstance(d, D.Unroll):
        swap(DoUnroll(resolve(program, d.loop), d.factor))
    elif isinstance(d, D.Parallel):
        swap(DoParallel(resolve(program, d.loop)))
    elif isinstance(d, D.Pipeline):
        swap(DoPipeline(resolve(program, d.loop), d.ii))
    elif isinstance(d, D.ThreadBind):
        swap(DoThreadBind(resolve(program, d.loop), d.dim))
    elif isinstance(d, D.Fuse):
        names = [h.name for h in d.loops]
        for h in d.loops[1:]:
            resolve(program, h)
        swap(DoFuse(resolve(program, d.loops[0]), names, d.fused.name))
    elif isinstance(d, D.ComputeAt):
        swap(
            DoComputeAt(
                resolve(program, d.axis),
                resolve(program, d.producer),
                resolve(program, d.consumer),
                allow_structural_fallback=options.allow_structural_fallback,
                forward_intermediate_buffers=options.forward_intermediate_buffers,
                solver_name=options.smt_solver,
            )
        )
    elif isinstance(d, D.ReuseAt):
        stage_c = resolve(program, d.stage)
        swap(DoReuseAt(stage_c, resolve(program, d.axis), d.array, d.buffer))
    elif isinstance(d, D.BufferAt):
        stage_c = resolve(program, d.stage)
        swap(DoBufferAt(stage_c, resolve(program, d.axis), d.array, d.buffer))
    elif isinstance(d, D.Outline):
        for h in d.stages:
            resolve(program, h)
        DoOutline(program, [h.name for h in d.stages], d.unit)
    elif isinstance(d, D.Partition):
        DoPartition(program, d.array, d.partition_kind, d.dim, d.factor)
    elif isinstance(d, D.Reshape):
        DoReshape(program, d.array, d.shape)
    elif isinstance(d, D.Layout):
        DoLayout(program, d.array, d.perm)
    elif isinstance(d, D.InterKernel):
        DoInterKernel(program, d.array, d.depth)
    else:
        raise NotImplementedError(f"bad case {type(d)}")


def apply_schedule(program, options=None):
    """
    Apply the directives recorded on `program` in order.  The first failing
    directive aborts the application: its error is annotated with the
    directive and re-raised, the program keeps the effects of the directives
    before it and the failing directive stays in the list.
    """
    options = options or ScheduleOptions()
    if not isinstance(options, ScheduleOptions):
        raise TypeError(f"expected ScheduleOptions, got {type(options)}")

    state = DriverState.Scanning
    while program.directives:
        d = program.directives[0]
        kind = type(d).__name__
        logger.debug("%s -> %s: %s", state.name, DriverState.Dispatch.name, kind)
        state = DriverState.Dispatch

        try:
            _dispatch(program, d, options)
        except SchedulingError as err:
            err.attach(d)
            logger.debug("%s failed: %s", kind, err.reason)
            raise

        logger.debug("%s -> %s: %s", state.name, DriverState.Rewritten.name, kind)
        state = DriverState.Rewritten

        program.directives.pop(0)
        for h in produced_handles(d):
            program.handles.bind(h)
        live = [h for rest in program.directives for h in handles_of(rest)]
        program.handles.collect(live)

        logger.debug("%s -> %s", state.name, DriverState.Scanning.name)
        state = DriverState.Scanning

    return program
