from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from starpsf.algorithms.psf_model import gaussian, gaussian_rot


def render_star(shape: Tuple[int, int], A: float, x: float, y: float, sx: float, sy: float,
                angle: float = 0.0) -> np.ndarray:
    """
    Gaussian star without background, centered on 0-based image coordinates (x, y).

    ``angle`` is in degrees, counted like the fitted angle of a FittedStar.
    """
    h, w = shape
    yy, xx = np.mgrid[0:h, 0:w]
    X = xx.astype(np.float64)
    Y = yy.astype(np.float64)
    if angle:
        return gaussian_rot((0.0, A, x, y, sx, sy, -np.deg2rad(angle)), X, Y)
    return gaussian((0.0, A, x, y, sx, sy), X, Y)


def make_starfield(shape: Tuple[int, int], stars: Sequence[Tuple[float, float, float, float]],
                   background: float = 100.0, noise: float = 0.0, seed: int = 7) -> np.ndarray:
    """Round stars given as (x, y, A, sx) over a flat, optionally noisy, background."""
    rng = np.random.default_rng(seed)
    img = np.full(shape, background, dtype=np.float64)
    if noise > 0:
        img += rng.normal(0.0, noise, size=shape)
    for x, y, A, sx in stars:
        img += render_star(shape, A, x, y, sx, sx)
    return img


def make_synthetic_starfield(H: int = 512, W: int = 512, seed: int = 7) -> np.ndarray:
    """Random field of 40 stars on a noisy background, uint16."""
    rng = np.random.default_rng(seed)
    stars = []
    for _ in range(40):
        cx = rng.uniform(20, W - 20)
        cy = rng.uniform(20, H - 20)
        sigma = rng.uniform(1.2, 2.5)
        peak = rng.uniform(800, 20000)
        stars.append((cx, cy, peak, 2 * sigma ** 2))
    img = make_starfield((H, W), stars, background=1000.0, noise=20.0, seed=seed)
    return np.clip(img, 0, 65535).astype(np.uint16)
