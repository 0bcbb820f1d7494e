from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.program import find_loop
from ..core.prelude import is_valid_name
from ..rewrite.errors import NotFound

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Handles


class HandleKind(Enum):
    Stage = "stage"
    Loop = "loop"


@dataclass(frozen=True)
class Handle:
    """
    A name addressing a stage, or a loop scoped by its stage.  Handles carry
    no reference into the program; they are looked up by name right before
    each transformation runs.
    """

    kind: HandleKind
    name: str
    stage: Optional[str] = None

    def __str__(self):
        if self.kind is HandleKind.Loop:
            return f"{self.stage}.{self.name}"
        return self.name


class HandleRegistry:
    """
    The live handles of a program.  A handle is bound once the stage or loop
    it names exists: handles created for front-end structures are bound
    immediately, handles naming the result of a directive are declared when
    the directive is recorded and bound when it succeeds.
    """

    def __init__(self):
        self._live = {}

    def __contains__(self, handle):
        return handle in self._live

    def __len__(self):
        return len(self._live)

    def __iter__(self):
        return iter(list(self._live))

    def create_handle(self, name, kind, stage=None, bound=True) -> Handle:
        if not isinstance(kind, HandleKind):
            raise TypeError(f"expected a HandleKind, got {type(kind)}")
        if kind is HandleKind.Stage:
            if stage is not None:
                raise ValueError("stage handles are not scoped by a stage")
            if not is_valid_name(name):
                raise ValueError(f"invalid stage name '{name}'")
        elif stage is None:
            raise ValueError(f"loop handle '{name}' needs a stage")

        h = Handle(kind, name, stage)
        if h in self._live:
            raise ValueError(f"handle '{h}' already exists")
        self._live[h] = bound
        return h

    def declare(self, name, kind, stage=None) -> Handle:
        return self.create_handle(name, kind, stage=stage, bound=False)

    def bind(self, handle):
        if handle not in self._live:
            raise NotFound(f"handle '{handle}' is not live")
        self._live[handle] = True

    def is_bound(self, handle):
        return self._live.get(handle, False)

    def resolve(self, program, handle):
        """cursor to the stage root or loop named by `handle`"""
        if handle not in self._live:
            raise NotFound(f"handle '{handle}' is not live")
        if not self._live[handle]:
            raise NotFound(f"handle '{handle}' is not bound to a stage or loop yet")

        stage = handle.name if handle.kind is HandleKind.Stage else handle.stage
        if (found := program.find_stage(stage)) is None:
            raise NotFound(f"Cannot find stage '{stage}'")
        _, stage_c = found
        if handle.kind is HandleKind.Stage:
            return stage_c

        if (loop_c := find_loop(stage_c, handle.name)) is None:
            raise NotFound(f"Cannot find loop '{handle.name}' in stage '{stage}'")
        return loop_c

    def release(self, handle):
        self._live.pop(handle, None)

    def collect(self, referenced):
        """release every live handle outside of `referenced`"""
        referenced = set(referenced)
        for h in list(self._live):
            if h not in referenced:
                del self._live[h]
