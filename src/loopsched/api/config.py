from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ScheduleOptions:
    """
    Knobs of a schedule application.

    allow_structural_fallback
        let compute_at splice stages without a proven dependence, with a
        warning, instead of failing
    forward_intermediate_buffers
        after compute_at, forward single-store intermediate buffers to their
        loads and drop their allocation
    smt_solver
        name of the pysmt solver used for legality checks; the first
        available integer-arithmetic solver when None
    """

    allow_structural_fallback: bool = False
    forward_intermediate_buffers: bool = True
    smt_solver: Optional[str] = None
