# psf_types.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class Photometry:
    mag: float
    s_mag: float
    # True only if every sampled pixel was inside the sensor range
    valid: bool
    snr: float


@dataclass(frozen=True)
class Rotation:
    """Fitted rotation of the x axis of the PSF, degrees in (-90, 90]."""
    angle: float
    err: float = 0.0


@dataclass
class FittedStar:
    """
    Fitted Gaussian PSF.

    - B, A: background and amplitude
    - x0, y0: center in window coordinates (1-indexed pixel centers)
    - sx, sy: spread parameters of exp(-(dx^2/sx + dy^2/sy)), sx >= sy
    - *_err: relative uncertainties (absolute error / fitted value)
    - xpos, ypos: center in 0-based image coordinates
    """
    B: float
    A: float
    x0: float
    y0: float
    sx: float
    sy: float
    fwhmx: float
    fwhmy: float
    mag: float
    rmse: float

    B_err: float = 0.0
    A_err: float = 0.0
    x_err: float = 0.0
    y_err: float = 0.0
    sx_err: float = 0.0
    sy_err: float = 0.0

    rotation: Optional[Rotation] = None
    phot: Optional[Photometry] = None

    xpos: float = 0.0
    ypos: float = 0.0
    layer: int = 0

    fwhmx_arcsec: Optional[float] = None
    fwhmy_arcsec: Optional[float] = None

    @property
    def angle(self) -> float:
        return self.rotation.angle if self.rotation is not None else 0.0

    @property
    def ang_err(self) -> float:
        return self.rotation.err if self.rotation is not None else 0.0

    @property
    def s_mag(self) -> float:
        return self.phot.s_mag if self.phot is not None else float("nan")

    @property
    def units(self) -> str:
        return '"' if self.fwhmx_arcsec is not None else "px"

    @property
    def roundness(self) -> float:
        if self.fwhmx <= 0.0:
            return 0.0
        return self.fwhmy / self.fwhmx

    def fwhm(self):
        """FWHM pair in the star's units."""
        if self.fwhmx_arcsec is not None:
            return self.fwhmx_arcsec, self.fwhmy_arcsec
        return self.fwhmx, self.fwhmy

    def is_finite(self) -> bool:
        return bool(np.isfinite([self.fwhmx, self.fwhmy, self.xpos, self.ypos]).all())
