from __future__ import annotations

from typing import Optional

from .HIR import HIR
from .internal_cursors import Cursor, Node
from .prelude import is_valid_name

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Stage and loop lookup on a unit


def stage_cursor(u, stage) -> Optional[Node]:
    """cursor to the root loop of `stage` in unit `u`, or None"""
    root = Cursor.create(u)
    for c in root.body():
        s = c._node
        if isinstance(s, HIR.For) and s.info.stage == stage:
            return c
    return None


def stage_names(u) -> list:
    return [
        s.info.stage for s in u.body if isinstance(s, HIR.For) and s.info.stage
    ]


def loops_of(c: Node) -> list:
    """pre-order list of cursors to every loop nested in (and including) `c`"""
    res = []

    def walk(c):
        s = c._node
        if isinstance(s, HIR.For):
            res.append(c)
            for b in c.body():
                walk(b)
        elif isinstance(s, HIR.If):
            for b in c.body():
                walk(b)
            for b in c.orelse():
                walk(b)

    walk(c)
    return res


def find_loop(stage: Node, name) -> Optional[Node]:
    """depth-first search for the loop labelled `name` under a stage root"""
    for c in loops_of(stage):
        if c._node.info.label == name:
            return c
    return None


def loop_labels(stage: Node) -> list:
    return [c._node.info.label for c in loops_of(stage)]


def perfect_band(c: Node) -> list:
    """the maximal perfectly nested band of loops starting at `c`"""
    band = [c]
    while True:
        s = band[-1]._node
        if len(s.body) == 1 and isinstance(s.body[0], HIR.For):
            band.append(band[-1].body()[0])
        else:
            return band


def enclosing_loops(c: Node) -> list:
    """cursors to the loops enclosing `c`, outermost first"""
    return [a for a in reversed(list(c.ancestors())) if isinstance(a._node, HIR.For)]


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Arrays of a unit


def unit_array(u, name):
    """(sym, type) of the argument or allocation `name` in unit `u`, or None"""
    for a in u.args:
        if str(a.name) == name:
            return a.name, a.type
    for s in _allocs(u.body):
        if str(s.name) == name:
            return s.name, s.type
    return None


def fresh_array_name(u, base):
    taken = {str(a.name) for a in u.args} | {str(s.name) for s in _allocs(u.body)}
    nm, k = base, 1
    while nm in taken:
        nm = f"{base}_{k}"
        k += 1
    return nm


# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Program


class Program:
    """
    An ordered collection of units with one of them marked as the top entry.
    A program also carries the schedule directives recorded against it and
    the handle registry naming its stages and loops.  Units are immutable;
    transformations swap new units in by name.
    """

    def __init__(self, units, top=None):
        from ..api.handles import HandleRegistry

        units = list(units)
        if not units:
            raise ValueError("a program needs at least one unit")
        names = [u.name for u in units]
        if len(set(names)) != len(names):
            raise ValueError(f"unit names must be unique, got {names}")
        for u in units:
            stages = stage_names(u)
            if len(set(stages)) != len(stages):
                raise ValueError(f"stage names in unit '{u.name}' must be unique")

        self._units = units
        self.top = top or units[-1].name
        if self.top not in names:
            raise ValueError(f"top unit '{self.top}' is not part of the program")

        self.directives = []
        self.handles = HandleRegistry()

    def __str__(self):
        return "\n\n".join(str(u) for u in self._units)

    def _repr_markdown_(self):
        return "```python\n" + self.__str__() + "\n```"

    def copy(self):
        """a copy that shares units but not directives or handles"""
        return Program(self._units, top=self.top)

    # -------------------------------- #
    #     units
    # -------------------------------- #

    @property
    def units(self):
        return list(self._units)

    def unit_names(self):
        return [u.name for u in self._units]

    def unit(self, name) -> Optional[HIR.unit]:
        for u in self._units:
            if u.name == name:
                return u
        return None

    def top_unit(self):
        return self.unit(self.top)

    def replace_unit(self, new_unit):
        for i, u in enumerate(self._units):
            if u.name == new_unit.name:
                self._units[i] = new_unit
                return
        raise KeyError(new_unit.name)

    def add_unit(self, new_unit, before=None):
        if self.unit(new_unit.name) is not None:
            raise ValueError(f"unit '{new_unit.name}' already exists")
        if before is None:
            self._units.append(new_unit)
        else:
            idx = self.unit_names().index(before)
            self._units.insert(idx, new_unit)

    def fresh_unit_name(self, base):
        assert is_valid_name(base)
        nm, k = base, 1
        while self.unit(nm) is not None:
            nm = f"{base}_{k}"
            k += 1
        return nm

    # -------------------------------- #
    #     stages and arrays
    # -------------------------------- #

    def find_stage(self, stage):
        """(unit, cursor) for the unit owning `stage`, or None"""
        for u in self._units:
            if (c := stage_cursor(u, stage)) is not None:
                return u, c
        return None

    def find_array(self, name, unit=None):
        """
        Locate the array `name` declared as an argument or allocation.
        Returns (unit, sym, type) from the first unit in program order that
        declares it, or None.
        """
        units = [self.unit(unit)] if unit else self._units
        for u in units:
            if u is None:
                continue
            if (found := unit_array(u, name)) is not None:
                return (u, *found)
        return None

    def callers_of(self, name):
        """(unit, call) pairs for every call of unit `name`"""
        res = []
        for u in self._units:
            for c in calls_in(u.body):
                if c.f == name:
                    res.append((u, c))
        return res


def _allocs(stmts):
    for s in stmts:
        if isinstance(s, HIR.Alloc):
            yield s
        elif isinstance(s, HIR.For):
            yield from _allocs(s.body)
        elif isinstance(s, HIR.If):
            yield from _allocs(s.body)
            yield from _allocs(s.orelse)


def calls_in(stmts):
    for s in stmts:
        if isinstance(s, HIR.Call):
            yield s
        elif isinstance(s, HIR.For):
            yield from calls_in(s.body)
        elif isinstance(s, HIR.If):
            yield from calls_in(s.body)
            yield from calls_in(s.orelse)
