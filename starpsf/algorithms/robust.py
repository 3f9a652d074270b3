"""
Robust location and scale of a sample (Hampel M-estimator).

Used for the sky background of aperture photometry, where the annulus
often contains faint stars or hot pixels.
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional

import numpy as np

log = logging.getLogger(__name__)

HAMPEL_A = 1.7
HAMPEL_B = 3.4
HAMPEL_C = 8.5
MAX_ITER = 50
EPSILON = 1e-8


class RobustMean(NamedTuple):
    mean: float
    stdev: float


def hampel(r: np.ndarray) -> np.ndarray:
    """Hampel influence function psi(r) on standardized residuals."""
    r = np.asarray(r, dtype=np.float64)
    ar = np.abs(r)
    sign = np.sign(r)
    return np.select(
        [ar < HAMPEL_A, ar < HAMPEL_B, ar < HAMPEL_C],
        [r, sign * HAMPEL_A, sign * HAMPEL_A * (ar - HAMPEL_C) / (HAMPEL_B - HAMPEL_C)],
        default=0.0,
    )


def dhampel(r: np.ndarray) -> np.ndarray:
    """Derivative of the Hampel function (even in r)."""
    ar = np.abs(np.asarray(r, dtype=np.float64))
    return np.select(
        [ar < HAMPEL_A, ar < HAMPEL_B, ar < HAMPEL_C],
        [1.0, 0.0, HAMPEL_A / (HAMPEL_B - HAMPEL_C)],
        default=0.0,
    )


def robust_mean(samples) -> Optional[RobustMean]:
    """
    Newton iterations on the Hampel estimating equation.

    Starts from the median and MAD / 0.6745. The returned stdev is the
    robust scale of the sample, not a convergence flag: when the iteration
    breaks down the last estimate is returned as is.

    Args:
        samples: 1-D sequence of values.

    Returns:
        RobustMean(mean, stdev), or None for an empty sample.
    """
    x = np.asarray(samples, dtype=np.float64).ravel()
    n = x.size
    if n < 1:
        return None
    if n == 1:
        return RobustMean(float(x[0]), 0.0)

    a = float(np.median(x))
    s = float(np.median(np.abs(x - a))) / 0.6745

    # almost identical points
    if abs(s) < EPSILON:
        return RobustMean(a, float(np.sqrt(np.mean((x - a) ** 2))))

    dt = 0.0
    c = s * s * n * n / (n - 1)
    for it in range(1, MAX_ITER + 1):
        r = (x - a) / s
        psir = hampel(r)
        sum1 = float(psir.sum())
        sum2 = float(dhampel(r).sum())
        sum3 = float((psir * psir).sum())
        if abs(sum2) < EPSILON:
            log.debug("robust_mean: derivative sum vanished at iteration %d", it)
            break
        d = s * sum1 / sum2
        a += d
        dt = c * sum3 / (sum2 * sum2)
        if it > 2 and (d * d < 1e-4 * dt or abs(d) < 10.0 * EPSILON):
            break

    return RobustMean(a, float(np.sqrt(dt)) if dt > 0 else 0.0)
