from .api import Handle, HandleKind, Schedule, ScheduleOptions, apply_schedule
from .backend.interpreter import run_interpreter
from .core.affine import Affine
from .core.HIR import HIR, K, T
from .core.program import Program
from .frontend.pyparser import ParseError, unit
from .rewrite.errors import (
    Infeasible,
    NotFound,
    PreconditionViolation,
    SchedulingError,
    Unsupported,
)

__version__ = "0.1.0"

__all__ = [
    "Affine",
    "HIR",
    "K",
    "T",
    "Program",
    "unit",
    "ParseError",
    "Schedule",
    "ScheduleOptions",
    "apply_schedule",
    "Handle",
    "HandleKind",
    "run_interpreter",
    #
    "SchedulingError",
    "NotFound",
    "PreconditionViolation",
    "Unsupported",
    "Infeasible",
]
