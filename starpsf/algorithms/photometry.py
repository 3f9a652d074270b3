"""
Aperture photometry around a fitted star.

The aperture radius follows the fitted spread (half the FWHM plus half a
pixel); pixels on the aperture edge are weighted linearly. The sky level
is the robust mean of the pixels in the annulus between the inner and
outer radii of the configuration.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np

from starpsf.algorithms.psf_model import fwhm_from_spread
from starpsf.algorithms.robust import robust_mean
from starpsf.config import PhotometryConfig
from starpsf.errors import DegenerateAperture, InsufficientSkySample, PhotometryError
from starpsf.image import ImageChannel
from starpsf.psf_types import Photometry

log = logging.getLogger(__name__)

MAG_ERR_MAX = 9.999


def aperture_radius(sx: float) -> float:
    return fwhm_from_spread(sx) / 2.0 + 0.5


def get_magnitude(intensity: float) -> float:
    return -2.5 * math.log10(intensity)


def get_mag_error(intensity: float, area: float, nsky: int, skysig: float,
                  gain: float) -> Tuple[float, float]:
    """
    Magnitude uncertainty and total noise of an aperture measurement.

    Returns:
        (s_mag clamped to MAG_ERR_MAX, noise)
    """
    skyvar = skysig * skysig
    # squared standard error of the mean sky
    sigsq = skyvar / nsky
    err1 = area * skyvar
    err2 = intensity / gain
    err3 = sigsq * area * area
    noise = math.sqrt(err1 + err2 + err3)
    return min(MAG_ERR_MAX, 1.0857 * noise / intensity), noise


def measure(channel: ImageChannel, xc: float, yc: float, sx: float,
            config: PhotometryConfig) -> Photometry:
    """
    Aperture photometry at (xc, yc), 0-based image coordinates.

    Raises:
        DegenerateAperture: aperture reaching the sky annulus, empty, or no net signal.
        InsufficientSkySample: fewer than ``config.min_sky`` valid sky pixels.
    """
    r_ap = aperture_radius(sx)
    if not r_ap < config.inner:
        raise DegenerateAperture(
            f"aperture radius {r_ap:.2f} px not smaller than inner sky radius {config.inner:.2f} px"
        )

    x1 = max(0, int(math.floor(xc - config.outer)))
    x2 = min(channel.width - 1, int(math.ceil(xc + config.outer)))
    y1 = max(0, int(math.floor(yc - config.outer)))
    y2 = min(channel.height - 1, int(math.ceil(yc + config.outer)))
    if x2 < x1 or y2 < y1:
        raise DegenerateAperture(f"center ({xc:.1f}, {yc:.1f}) outside the image")

    sub = channel.data[y1:y2 + 1, x1:x2 + 1].astype(np.float64)
    yy, xx = np.mgrid[y1:y2 + 1, x1:x2 + 1]
    r2 = (xx - xc) ** 2 + (yy - yc) ** 2
    ok = channel.in_range(sub)

    rmin_sq = (r_ap - 0.5) ** 2
    aperture = r2 < r_ap * r_ap
    weight = np.where(r2 < rmin_sq, 1.0, r_ap - np.sqrt(r2) + 0.5)
    annulus = (r2 > config.inner ** 2) & (r2 < config.outer ** 2)

    use = aperture & ok
    area = float(weight[use].sum())
    apmag = float((sub * weight)[use].sum())
    sky = sub[annulus & ok]
    valid = bool(ok[aperture | annulus].all())

    if area < 1.0:
        raise DegenerateAperture(f"aperture area {area:.2f} < 1")
    if sky.size < config.min_sky:
        raise InsufficientSkySample(
            f"{sky.size} pixels in the sky annulus, {config.min_sky} needed"
        )

    bg = robust_mean(sky)
    signal = apmag - area * bg.mean
    if not signal > 0.0:
        raise DegenerateAperture(f"no signal above the sky ({signal:.3g})")

    s_mag, noise = get_mag_error(signal, area, int(sky.size), bg.stdev, config.gain)
    snr = 10.0 * math.log10(signal / noise) if noise > 0 else float("inf")
    return Photometry(mag=get_magnitude(signal), s_mag=s_mag, valid=valid, snr=snr)


def get_photometry(channel: ImageChannel, xc: float, yc: float, sx: float,
                   config: PhotometryConfig) -> Optional[Photometry]:
    """Same as :func:`measure`, returning None on failure."""
    try:
        return measure(channel, xc, yc, sx, config)
    except PhotometryError as e:
        log.debug("photometry failed at (%.1f, %.1f): %s", xc, yc, e)
        return None
