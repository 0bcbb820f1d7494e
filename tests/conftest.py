from __future__ import annotations

import numpy as np
import pytest

from loopsched import T, run_interpreter

# ---------------------------------------------------------------------------- #
# Pytest fixtures                                                              #
# ---------------------------------------------------------------------------- #


@pytest.fixture
def rng():
    return np.random.default_rng(seed=1234)


def _random_arg(rng, typ):
    if typ.is_tensor():
        shape = tuple(typ.shape())
        if typ.is_float():
            dtype = np.float64 if typ.basetype() is T.f64 else np.float32
            return rng.uniform(-1.0, 1.0, size=shape).astype(dtype)
        return rng.integers(-8, 8, size=shape).astype(np.int32)
    elif typ.is_indexable():
        return int(rng.integers(1, 8))
    elif typ is T.bool:
        return bool(rng.integers(0, 2))
    return float(rng.uniform(-1.0, 1.0))


def random_args(rng, u):
    """random inputs for every argument of unit `u`"""
    return {str(a.name): _random_arg(rng, a.type) for a in u.args}


def _copy_args(args):
    return {k: np.copy(v) if isinstance(v, np.ndarray) else v for k, v in args.items()}


@pytest.fixture
def check_equivalent(rng):
    """
    Run the top units of two programs (or two units) on the same random
    inputs and check that every array argument ends up with the same values.
    """

    def check(before, after, trials=3):
        entry = before.top_unit() if hasattr(before, "top_unit") else before
        for _ in range(trials):
            args = random_args(rng, entry)
            expected = _copy_args(args)
            actual = _copy_args(args)
            run_interpreter(before, expected)
            run_interpreter(after, actual)
            for nm, val in expected.items():
                if isinstance(val, np.ndarray):
                    np.testing.assert_allclose(actual[nm], val, rtol=1e-5, atol=1e-5)

    return check
