from __future__ import annotations

from ..core.program import Program, find_loop
from ..rewrite.array_scheduling import PARTITION_KINDS
from ..rewrite.errors import NotFound
from .directives import D
from .driver import apply_schedule
from .handles import Handle, HandleKind

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Schedule recording


class Schedule:
    """
    Records schedule directives against a program.  Nothing is transformed
    until `apply` runs the directives in the order they were recorded, so
    a directive may name loops created by an earlier one, e.g. reordering
    `i.outer` after splitting `i`.

        s = Schedule(Program([gemm]))
        io, ii = s.split("S", "i", 4)
        s.reorder("S", io, "j", ii)
        s.parallel("S", io)
        gemm = s.apply().unit("gemm")
    """

    def __init__(self, program):
        if isinstance(program, Program):
            self._program = program
        else:
            self._program = Program([program])

    def __str__(self):
        return str(self._program)

    @property
    def program(self):
        return self._program

    @property
    def directives(self):
        return list(self._program.directives)

    def _record(self, directive):
        self._program.directives.append(directive)

    # -------------------------------------------------------------------- #
    # handles
    # -------------------------------------------------------------------- #

    def get_stage(self, name) -> Handle:
        if isinstance(name, Handle):
            if name.kind is not HandleKind.Stage:
                raise TypeError(f"expected a stage handle, got loop '{name}'")
            return name

        registry = self._program.handles
        h = Handle(HandleKind.Stage, name)
        if h in registry:
            return h
        if self._program.find_stage(name) is None:
            raise NotFound(f"Cannot find stage '{name}'")
        return registry.create_handle(name, HandleKind.Stage)

    def get_loop(self, stage, name) -> Handle:
        stage = self.get_stage(stage)
        if isinstance(name, Handle):
            if name.kind is not HandleKind.Loop or name.stage != stage.name:
                raise TypeError(f"expected a loop of stage '{stage}', got '{name}'")
            return name

        registry = self._program.handles
        h = Handle(HandleKind.Loop, name, stage.name)
        if h in registry:
            return h
        _, stage_c = self._program.find_stage(stage.name)
        if find_loop(stage_c, name) is None:
            raise NotFound(f"Cannot find loop '{name}' in stage '{stage.name}'")
        return registry.create_handle(name, HandleKind.Loop, stage.name)

    def _declare_loop(self, stage, name):
        return self._program.handles.declare(name, HandleKind.Loop, stage.name)

    # -------------------------------------------------------------------- #
    # loop transformations
    # -------------------------------------------------------------------- #

    def split(self, stage, loop, factor, outer=None, inner=None):
        stage = self.get_stage(stage)
        loop = self.get_loop(stage, loop)
        outer = self._declare_loop(stage, outer or f"{loop.name}.outer")
        inner = self._declare_loop(stage, inner or f"{loop.name}.inner")
        self._record(D.Split(stage, loop, factor, outer, inner))
        return outer, inner

    def tile(self, stage, x, y, fx, fy):
        stage = self.get_stage(stage)
        x, y = self.get_loop(stage, x), self.get_loop(stage, y)
        tiles = [
            self._declare_loop(stage, f"{x.name}.outer"),
            self._declare_loop(stage, f"{x.name}.inner"),
            self._declare_loop(stage, f"{y.name}.outer"),
            self._declare_loop(stage, f"{y.name}.inner"),
        ]
        self._record(D.Tile(stage, x, y, fx, fy, tiles))
        return tuple(tiles)

    def reorder(self, stage, *loops):
        stage = self.get_stage(stage)
        loops = [self.get_loop(stage, nm) for nm in loops]
        self._record(D.Reorder(stage, loops))

    def unroll(self, stage, loop, factor=0):
        stage = self.get_stage(stage)
        self._record(D.Unroll(stage, self.get_loop(stage, loop), factor))

    def parallel(self, stage, loop):
        stage = self.get_stage(stage)
        self._record(D.Parallel(stage, self.get_loop(stage, loop)))

    def pipeline(self, stage, loop, ii=1):
        stage = self.get_stage(stage)
        self._record(D.Pipeline(stage, self.get_loop(stage, loop), ii))

    def bind(self, stage, loop, dim):
        stage = self.get_stage(stage)
        self._record(D.ThreadBind(stage, self.get_loop(stage, loop), dim))

    def fuse(self, stage, *loops, name=None):
        stage = self.get_stage(stage)
        loops = [self.get_loop(stage, nm) for nm in loops]
        fused = self._declare_loop(
            stage, name or "_".join(h.name for h in loops) + "_fused"
        )
        self._record(D.Fuse(stage, loops, fused))
        return fused

    def compute_at(self, producer, consumer, axis):
        producer = self.get_stage(producer)
        consumer = self.get_stage(consumer)
        axis = self.get_loop(consumer, axis)
        self._record(D.ComputeAt(axis, producer, consumer))

    # -------------------------------------------------------------------- #
    # memory transformations
    # -------------------------------------------------------------------- #

    def partition(self, array, kind="complete", dim=0, factor=None):
        kind = kind.lower()
        if kind not in PARTITION_KINDS:
            raise ValueError(f"expected a partition kind in {PARTITION_KINDS}")
        self._record(D.Partition(array, kind, dim, factor))

    def reuse_at(self, array, stage, axis, name=None):
        stage = self.get_stage(stage)
        self._record(D.ReuseAt(array, stage, self.get_loop(stage, axis), name))

    def buffer_at(self, array, stage, axis, name=None):
        stage = self.get_stage(stage)
        self._record(D.BufferAt(array, stage, self.get_loop(stage, axis), name))

    def outline(self, *stages, name=None):
        stages = [self.get_stage(s) for s in stages]
        self._record(D.Outline(stages, name))

    def reshape(self, array, shape):
        self._record(D.Reshape(array, list(shape)))

    def layout(self, array, perm):
        self._record(D.Layout(array, list(perm)))

    def to(self, array, depth=None):
        self._record(D.InterKernel(array, depth))

    # -------------------------------------------------------------------- #
    # application
    # -------------------------------------------------------------------- #

    def apply(self, options=None) -> Program:
        return apply_schedule(self._program, options)
