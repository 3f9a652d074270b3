"""
Elliptical Gaussian PSF models and their analytic Jacobians.

Parameters are (B, A, x0, y0, SX, SY) without rotation and
(B, A, x0, y0, SX, SY, alpha) with rotation, alpha in radians:

    I(x, y) = B + A * exp(-(xr^2 / SX + yr^2 / SY))

with (xr, yr) = (x - x0, y - y0) rotated by alpha. Pixel centers are
1-indexed: column j, row i of a window sit at (j + 1, i + 1).
"""

from __future__ import annotations

import math
from typing import Tuple

import numpy as np

FWHM_FACTOR = 2.0 * math.sqrt(2.0 * math.log(2.0))


def pixel_grid(shape: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
    """Flattened 1-indexed (X, Y) pixel-center coordinates of a window."""
    h, w = shape
    yy, xx = np.mgrid[1:h + 1, 1:w + 1]
    return xx.astype(np.float64).ravel(), yy.astype(np.float64).ravel()


def fwhm_from_spread(s: float) -> float:
    # nan for a negative or non-finite spread
    if not 0.0 <= s < math.inf:
        return float("nan")
    return math.sqrt(s / 2.0) * FWHM_FACTOR


def spread_from_fwhm(fwhm: float) -> float:
    return 2.0 * (fwhm / FWHM_FACTOR) ** 2


def gaussian(params, X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    B, A, x0, y0, SX, SY = params
    return B + A * np.exp(-((X - x0) ** 2 / SX + (Y - y0) ** 2 / SY))


def gaussian_jacobian(params, X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """d model / d params, shape (n, 6)."""
    _, A, x0, y0, SX, SY = params
    dx = X - x0
    dy = Y - y0
    e = np.exp(-(dx ** 2 / SX + dy ** 2 / SY))
    Ae = A * e
    return np.column_stack((
        np.ones_like(e),
        e,
        Ae * 2.0 * dx / SX,
        Ae * 2.0 * dy / SY,
        Ae * dx ** 2 / SX ** 2,
        Ae * dy ** 2 / SY ** 2,
    ))


def _rotated(x0, y0, alpha, X, Y):
    c, s = math.cos(alpha), math.sin(alpha)
    u = X - x0
    v = Y - y0
    xr = c * u - s * v
    yr = s * u + c * v
    return u, v, xr, yr, c, s


def gaussian_rot(params, X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    B, A, x0, y0, SX, SY, alpha = params
    _, _, xr, yr, _, _ = _rotated(x0, y0, alpha, X, Y)
    return B + A * np.exp(-(xr ** 2 / SX + yr ** 2 / SY))


def gaussian_rot_jacobian(params, X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """d model / d params, shape (n, 7)."""
    _, A, x0, y0, SX, SY, alpha = params
    u, v, xr, yr, c, s = _rotated(x0, y0, alpha, X, Y)
    e = np.exp(-(xr ** 2 / SX + yr ** 2 / SY))
    Ae = A * e
    gx = 2.0 * xr / SX
    gy = 2.0 * yr / SY
    # d(xr)/d(alpha) = -s*u - c*v, d(yr)/d(alpha) = c*u - s*v
    dxr_da = -s * u - c * v
    dyr_da = c * u - s * v
    return np.column_stack((
        np.ones_like(e),
        e,
        Ae * (gx * c + gy * s),
        Ae * (-gx * s + gy * c),
        Ae * xr ** 2 / SX ** 2,
        Ae * yr ** 2 / SY ** 2,
        -Ae * (gx * dxr_da + gy * dyr_da),
    ))


def render(params, shape: Tuple[int, int]) -> np.ndarray:
    """Evaluate a 6- or 7-parameter model over a window of the given shape."""
    X, Y = pixel_grid(shape)
    f = gaussian_rot if len(params) == 7 else gaussian
    return f(params, X, Y).reshape(shape)
