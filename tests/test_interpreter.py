from __future__ import annotations

import textwrap

import numpy as np
import pytest

from loopsched import Program, run_interpreter, unit
from loopsched.backend.interpreter import Interpreter
from loopsched.main import loopsched_cli


def gen_saxpy():
    @unit
    def saxpy(n: index, a: f32, x: f32[8], y: f32[8]):
        for i in seq(0, n, stage="S"):
            y[i] = a * x[i] + y[i]

    return saxpy


def test_results(rng):
    x = rng.uniform(-1.0, 1.0, size=8).astype(np.float32)
    y = rng.uniform(-1.0, 1.0, size=8).astype(np.float32)
    expected = y.copy()
    expected[:5] += 2.0 * x[:5]

    run_interpreter(gen_saxpy(), {"n": 5, "a": 2.0, "x": x, "y": y})
    np.testing.assert_allclose(y, expected, rtol=1e-6)


def test_index_arithmetic():
    @unit
    def foo(A: i32[8]):
        for i in seq(0, 8, stage="S"):
            if i % 2 == 0:
                A[i] = i // 2
            else:
                A[min(i, 6)] = 7

    A = np.zeros(8, dtype=np.int32)
    run_interpreter(foo, {"A": A})
    assert A.tolist() == [0, 7, 1, 7, 2, 7, 7, 0]


def test_reductions_and_allocations():
    @unit
    def rowsum(A: f32[4, 3], B: f32[4]):
        acc: f32[4]
        for i in seq(0, 4, stage="S"):
            for k in seq(0, 3, kind="reduction"):
                acc[i] += A[i, k]
        for i in seq(0, 4, stage="T"):
            B[i] = acc[i]

    A = np.arange(12, dtype=np.float32).reshape(4, 3)
    B = np.zeros(4, dtype=np.float32)
    run_interpreter(rowsum, {"A": A, "B": B})
    np.testing.assert_allclose(B, A.sum(axis=1))


def test_load_counts():
    @unit
    def blur(A: f32[10], B: f32[8]):
        for i in seq(0, 8, stage="S"):
            B[i] = A[i] + A[i + 1] + A[i + 2]

    A = np.zeros(10, dtype=np.float32)
    B = np.zeros(8, dtype=np.float32)
    interp = run_interpreter(blur, {"A": A, "B": B})
    assert interp.loads["A"] == 24
    assert interp.loads["B"] == 0


def test_calls_count_loads_under_the_caller_name():
    @unit
    def bump(X: f32[4]):
        for i in seq(0, 4, stage="K"):
            X[i] = X[i] + 1.0

    @unit
    def top(A: f32[4]):
        bump(A)
        bump(A)

    A = np.zeros(4, dtype=np.float32)
    interp = run_interpreter(Program([bump, top]), {"A": A})
    np.testing.assert_allclose(A, np.full(4, 2.0))
    assert interp.loads["A"] == 8
    assert "X" not in interp.loads

    # units outside of a program are passed along
    A = np.zeros(4, dtype=np.float32)
    run_interpreter(top, {"A": A}, units=[bump])
    np.testing.assert_allclose(A, np.full(4, 2.0))


def test_missing_argument():
    with pytest.raises(TypeError, match="expected argument 'y' to be supplied"):
        run_interpreter(gen_saxpy(), {"n": 1, "a": 1.0, "x": np.zeros(8, np.float32)})


@pytest.mark.parametrize(
    "y, match",
    [
        ([0.0] * 8, "expected numpy.ndarray"),
        (np.zeros(8, dtype=np.float64), "received float64 values"),
        (np.zeros(4, dtype=np.float32), "expected buffer of shape"),
    ],
)
def test_bad_array_arguments(y, match):
    args = {"n": 1, "a": 1.0, "x": np.zeros(8, np.float32), "y": y}
    with pytest.raises(TypeError, match=match):
        run_interpreter(gen_saxpy(), args)


def test_bad_index_argument():
    args = {
        "n": 1.5,
        "a": 1.0,
        "x": np.zeros(8, np.float32),
        "y": np.zeros(8, np.float32),
    }
    with pytest.raises(TypeError, match="expected index variable 'n'"):
        run_interpreter(gen_saxpy(), args)


def test_not_a_unit():
    with pytest.raises(TypeError, match="expected a unit or a program"):
        run_interpreter("saxpy", {})
    with pytest.raises(TypeError, match="to be of type unit"):
        Interpreter(None, {})


# --------------------------------------------------------------------------- #
# command line


_SOURCE = """
from __future__ import annotations

from loopsched import Schedule, unit


@unit
def scale(A: f32[8], B: f32[8]):
    for i in seq(0, 8, stage="S"):
        B[i] = A[i] * 2.0


sched = Schedule(scale)
sched.split("S", "i", {factor})
"""


def _write_source(tmp_path, factor):
    path = tmp_path / f"sched_{factor}.py"
    path.write_text(textwrap.dedent(_SOURCE.format(factor=factor)))
    return path


def test_cli(tmp_path, capsys):
    path = _write_source(tmp_path, 4)
    assert loopsched_cli(str(path)) == 0
    out = capsys.readouterr().out
    assert out.startswith("# sched\n")
    assert 'name="i.outer"' in out


def test_cli_scheduling_error(tmp_path, capsys):
    path = _write_source(tmp_path, 16)
    assert loopsched_cli(str(path)) == 1
    err = capsys.readouterr().err
    assert "sched: Split: The requested tiling factor (16)" in err


def test_cli_without_schedules(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("x = 1\n")
    with pytest.raises(SystemExit):
        loopsched_cli(str(path))
