"""
Candidate search: local maxima of a noise-filtered channel.

A pixel is a candidate when it is above the detection threshold, below
saturation, the strict maximum of its (2r+1) x (2r+1) box (on a plateau
only the first pixel in raster order wins), and compact: its 3x3 core is
entirely above the threshold and brighter on average than the rest of the
box by more than the contrast level.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from starpsf.config import MAX_STARS, OpticsConfig
from starpsf.image import Rectangle

log = logging.getLogger(__name__)

MIN_RADIUS = 3
# arc-seconds per pixel range where the sampling is trusted
MIN_SAMPLING = 0.1
MAX_SAMPLING = 20.0


@dataclass
class StarCandidate:
    x: int
    y: int
    # mean of the 3x3 core, ranking only
    brightness: float


def adjust_radius(radius: int, optics: Optional[OpticsConfig]) -> int:
    """
    Scale the search radius down with the image sampling.

    The configured radius is understood at 1 arc-second per pixel; coarser
    sampling shrinks it, never below MIN_RADIUS. Unknown or implausible
    optics keep the configured radius.
    """
    scale = optics.sampling() if optics is not None else None
    if scale is None or not MIN_SAMPLING <= scale <= MAX_SAMPLING:
        return radius
    adjusted = int(math.ceil(radius / scale))
    return max(min(radius, MIN_RADIUS), min(radius, adjusted))


def is_local_max(img: np.ndarray, x: int, y: int, r: int) -> bool:
    box = img[y - r:y + r + 1, x - r:x + r + 1]
    v = img[y, x]
    if (box > v).any():
        return False
    # ties before the center in raster order win
    flat = box.ravel()
    center = r * (2 * r + 1) + r
    return not (flat[:center] == v).any()


def _contrast(img: np.ndarray, x: int, y: int, r: int, threshold: float,
              contrast: float) -> Optional[float]:
    """Mean of the 3x3 core if the peak is compact enough, None otherwise."""
    core = img[y - 1:y + 2, x - 1:x + 2]
    if not (core > threshold).all():
        return None
    mean_high = float(core.mean())
    box = img[y - r:y + r + 1, x - r:x + r + 1]
    n_low = box.size - core.size
    if n_low > 0:
        mean_low = (float(box.sum()) - float(core.sum())) / n_low
        if not mean_high - mean_low > contrast:
            return None
    return mean_high


def find_candidates(filtered: np.ndarray, threshold: float, contrast: float, radius: int,
                    saturation: float = float("inf"), area: Optional[Rectangle] = None,
                    max_candidates: int = MAX_STARS) -> List[StarCandidate]:
    """
    Local maxima of the filtered channel, brightest first.

    Args:
        filtered (np.ndarray): Noise-filtered channel.
        threshold (float): Detection level (median + k * sigma).
        contrast (float): Minimal excess of the 3x3 core mean over the rest of the box.
        radius (int): Half-size of the search box; also the margin to the border.
        saturation (float): Pixels at or above this value are ignored.
        area (Rectangle | None): Restrict the search to this area.
        max_candidates (int): Cap on the number of candidates.

    Returns:
        List of StarCandidate sorted by decreasing brightness.
    """
    img = np.asarray(filtered, dtype=np.float64)
    if img.ndim != 2:
        raise ValueError(f"Expected 2D array, got shape {img.shape}.")
    r = int(radius)
    if r < 1:
        raise ValueError(f"radius must be >= 1, got {radius}")

    h, w = img.shape
    if area is None:
        area = Rectangle(0, 0, w, h)
    area = area.clipped(w, h)
    x_lo, x_hi = area.x + r, area.x + area.w - r
    y_lo, y_hi = area.y + r, area.y + area.h - r

    out: List[StarCandidate] = []
    if x_hi <= x_lo or y_hi <= y_lo:
        return out

    above = (img > threshold) & (img < saturation)
    for y in range(y_lo, y_hi):
        xs = np.flatnonzero(above[y, x_lo:x_hi]) + x_lo
        skip_until = -1
        for x in xs:
            x = int(x)
            if x <= skip_until or not is_local_max(img, x, y, r):
                continue
            # no other maximum within the next r columns
            skip_until = x + r
            brightness = _contrast(img, x, y, r, threshold, contrast)
            if brightness is None:
                continue
            out.append(StarCandidate(x, y, brightness))
            if len(out) >= max_candidates:
                log.info("candidate cap of %d reached", max_candidates)
                break
        if len(out) >= max_candidates:
            break

    out.sort(key=lambda c: c.brightness, reverse=True)
    return out
