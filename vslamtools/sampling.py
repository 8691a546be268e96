"""Random sampling helpers used to perturb problems."""

from __future__ import annotations

import math
import random

_DEFAULT_RNG = random.Random()


def _rng(rng: random.Random | None) -> random.Random:
    return rng if rng is not None else _DEFAULT_RNG


def rand_double(rng: random.Random | None = None) -> float:
    """Return a uniform sample in the unit interval."""
    return _rng(rng).random()


def rand_normal(rng: random.Random | None = None) -> float:
    """Return a standard normal sample (Marsaglia polar method)."""
    generator = _rng(rng)
    while True:
        x1 = 2.0 * rand_double(generator) - 1.0
        x2 = 2.0 * rand_double(generator) - 1.0
        w = x1 * x1 + x2 * x2
        if 0.0 < w < 1.0:
            break
    return x1 * math.sqrt((-2.0 * math.log(w)) / w)