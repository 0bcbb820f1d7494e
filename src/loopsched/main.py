from __future__ import annotations

import argparse
import importlib.util
import logging
import sys
from contextlib import contextmanager
from pathlib import Path

import loopsched
from loopsched.api.config import ScheduleOptions
from loopsched.api.schedule import Schedule
from loopsched.rewrite.errors import SchedulingError


@contextmanager
def pythonpath(path: Path):
    try:
        sys.path.insert(0, str(path))
        yield
    finally:
        sys.path = sys.path[1:]


def loopsched_cli(*args, name="loopsched"):
    parser = argparse.ArgumentParser(
        prog=name, description="Apply the schedules defined in a Python file."
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="log every transformation step",
    )
    parser.add_argument(
        "--fallback",
        action="store_true",
        help="allow unchecked structural merges in compute_at",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s version {loopsched.__version__}",
        help="print the version and exit",
    )
    parser.add_argument("source", type=Path, help="source file defining schedules")

    args = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )

    with pythonpath(args.source.parent):
        schedules = get_schedules_from_module(load_user_code(args.source))
    if not schedules:
        parser.error(f"no Schedule objects found in {args.source}")

    options = ScheduleOptions(allow_structural_fallback=args.fallback)
    for nm, sched in schedules:
        try:
            program = sched.apply(options)
        except SchedulingError as err:
            print(f"{nm}: {err}", file=sys.stderr)
            return 1
        print(f"# {nm}")
        print(program)
    return 0


def get_schedules_from_module(user_module):
    return [
        (nm, val)
        for nm, val in vars(user_module).items()
        if not nm.startswith("_") and isinstance(val, Schedule)
    ]


def load_user_code(path: Path):
    module_path = path.resolve(strict=True)
    module_name = module_path.stem
    module_path = str(module_path)
    spec = importlib.util.spec_from_file_location(module_name, module_path)
    user_module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(user_module)
    return user_module


def main():
    sys.exit(loopsched_cli(*sys.argv[1:], name=Path(sys.argv[0]).name))


if __name__ == "__main__":
    main()
