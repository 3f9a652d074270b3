"""
Gaussian PSF fitting of a pixel window.

The fit without rotation always runs first; it seeds the rotated fit,
which is only attempted when the two spreads differ enough for the angle
to be defined. Results are canonicalized so that SX >= SY.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import NamedTuple, Optional, Tuple, Union

import cv2
import numpy as np
from scipy.optimize import least_squares

from starpsf.algorithms.photometry import get_photometry
from starpsf.algorithms.psf_model import (
    fwhm_from_spread,
    gaussian,
    gaussian_jacobian,
    gaussian_rot,
    gaussian_rot_jacobian,
    pixel_grid,
)
from starpsf.config import OpticsConfig, PhotometryConfig
from starpsf.errors import InfeasibleProblem, SolverDivergence, StarPSFError
from starpsf.image import ImageChannel, PixelWindow, Rectangle
from starpsf.psf_types import FittedStar, Rotation

log = logging.getLogger(__name__)

MAX_ITER_NO_ANGLE = 10
MAX_ITER_ANGLE = 10
# Minimal |SX - SY| for the angle to be fitted. Empirical, not a physical
# constant: below it the angle of a nearly round star diverges.
ANGLE_EPSILON = 0.001
XTOL = 1e-4
MEDIAN_KSIZE = 3


class InitialGuess(NamedTuple):
    x0: float
    y0: float
    A: float
    sx: float
    sy: float


@dataclass
class FitWithoutAngle:
    params: np.ndarray  # B, A, x0, y0, SX, SY
    errors: np.ndarray  # relative
    rmse: float


@dataclass
class FitWithAngle:
    params: np.ndarray  # B, A, x0, y0, SX, SY, alpha (rad)
    errors: np.ndarray
    rmse: float

    @property
    def angle(self) -> float:
        # y grows downwards in the window, the angle is counted the other way
        return normalize_angle(-math.degrees(self.params[6]))


PSFFit = Union[FitWithoutAngle, FitWithAngle]


def normalize_angle(angle: float) -> float:
    """Bring an angle in degrees into (-90, 90] by steps of 90."""
    while abs(angle) > 90.0:
        if angle > 0.0:
            angle -= 90.0
        else:
            angle += 90.0
    if angle == -90.0:
        angle = 90.0
    return angle


def _as_window(window) -> PixelWindow:
    if isinstance(window, PixelWindow):
        return window
    return PixelWindow.from_array(np.asarray(window))


def psf_init_data(data: np.ndarray, background: float) -> InitialGuess:
    """
    Starting point of the fit, from the data alone.

    A 3x3 median filter removes isolated hot pixels; from the filtered
    maximum, the profile is walked along each axis while it stays above
    half of the peak (relative to the background).
    """
    z = cv2.medianBlur(np.ascontiguousarray(data, dtype=np.float32), MEDIAN_KSIZE)
    rows, cols = z.shape
    i, j = np.unravel_index(int(np.argmax(z)), z.shape)
    peak = float(z[i, j])
    half = peak - background

    def above(v: float) -> bool:
        return 2.0 * (v - background) > half

    ii1 = ii2 = i
    jj1 = jj2 = j
    while ii1 < rows - 1 and above(z[ii1, j]):
        ii1 += 1
    while ii2 > 0 and above(z[ii2, j]):
        ii2 -= 1
    while jj1 < cols - 1 and above(z[i, jj1]):
        jj1 += 1
    while jj2 > 0 and above(z[i, jj2]):
        jj2 -= 1

    width_x = max(jj1 - jj2, 1)
    width_y = max(ii1 - ii2, 1)
    return InitialGuess(
        x0=(jj1 + jj2 + 2) / 2.0,
        y0=(ii1 + ii2 + 2) / 2.0,
        A=half if half > 0 else peak,
        sx=width_x ** 2 / 4.0 / math.log(2.0),
        sy=width_y ** 2 / 4.0 / math.log(2.0),
    )


def _solve(model, jacobian, x_init, y: np.ndarray, sigma: np.ndarray,
           X: np.ndarray, Y: np.ndarray, max_iter: int):
    def residuals(params):
        return (model(params, X, Y) - y) / sigma

    def jac(params):
        return jacobian(params, X, Y) / sigma[:, None]

    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        try:
            res = least_squares(
                residuals, np.asarray(x_init, dtype=np.float64), jac=jac,
                method="lm", xtol=XTOL, x_scale="jac",
                # with an analytic Jacobian MINPACK evaluates the Jacobian once per
                # iteration and the model at least once, so this caps the iterations
                max_nfev=max_iter,
            )
            if res.status < 0 or not np.isfinite(res.x).all():
                raise SolverDivergence(f"solver stopped with status {res.status}")
            J = np.asarray(res.jac, dtype=np.float64)
            covar = np.linalg.pinv(J.T @ J)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise SolverDivergence(str(e)) from e

        err = np.sqrt(np.abs(np.diag(covar)))
        rel = err / np.abs(res.x)
        rmse = float(np.sqrt(np.mean((model(res.x, X, Y) - y) ** 2)))
    return res.x, rel, rmse


def _prepare(window, weights) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    data = np.asarray(window.data, dtype=np.float64)
    X, Y = pixel_grid(data.shape)
    if weights is None:
        sigma = np.ones(data.size)
    else:
        sigma = np.asarray(weights, dtype=np.float64).ravel()
        if sigma.size != data.size:
            raise ValueError(f"weights of size {sigma.size} for a window of {data.size} pixels")
    return data, X, Y, sigma


def minimize_no_angle(window, background: Optional[float] = None,
                      weights=None) -> FitWithoutAngle:
    """
    Fit B, A, x0, y0, SX, SY.

    Raises:
        InfeasibleProblem: the window has no more pixels than parameters.
        SolverDivergence: the solver failed.
    """
    window = _as_window(window)
    p = 6
    if window.size <= p:
        raise InfeasibleProblem(f"{window.size} pixels for {p} parameters")
    data, X, Y, sigma = _prepare(window, weights)
    if background is None:
        background = float(np.median(data))

    guess = psf_init_data(data, background)
    x_init = [background, guess.A, guess.x0, guess.y0, guess.sx, guess.sy]
    params, rel, rmse = _solve(gaussian, gaussian_jacobian, x_init, data.ravel(),
                               sigma, X, Y, MAX_ITER_NO_ANGLE)
    return FitWithoutAngle(params, rel, rmse)


def minimize_angle(window, seed: FitWithoutAngle, weights=None) -> FitWithAngle:
    """Fit the seven parameters starting from a fit without rotation."""
    window = _as_window(window)
    p = 7
    if window.size <= p:
        raise InfeasibleProblem(f"{window.size} pixels for {p} parameters")
    data, X, Y, sigma = _prepare(window, weights)
    x_init = list(seed.params) + [0.0]
    params, rel, rmse = _solve(gaussian_rot, gaussian_rot_jacobian, x_init, data.ravel(),
                               sigma, X, Y, MAX_ITER_ANGLE)
    return FitWithAngle(params, rel, rmse)


def fit_without_angle(window, background: Optional[float] = None,
                      weights=None) -> Optional[FitWithoutAngle]:
    try:
        return minimize_no_angle(window, background, weights)
    except StarPSFError as e:
        log.debug("fit without angle failed: %s", e)
        return None


def fit_with_angle(window, seed: FitWithoutAngle, weights=None) -> Optional[FitWithAngle]:
    try:
        return minimize_angle(window, seed, weights)
    except StarPSFError as e:
        log.debug("fit with angle failed: %s", e)
        return None


def window_magnitude(data: np.ndarray, B: float) -> float:
    """Coarse magnitude from the whole window, used when no photometry is available."""
    intensity = float(np.sum(np.asarray(data, dtype=np.float64) - B)) + 1.0
    if not intensity > 0.0:
        return float("nan")
    return -2.5 * math.log10(intensity)


def canonicalize(star: FittedStar) -> FittedStar:
    """Swap the axes so that SX >= SY, turning a fitted angle by 90 degrees."""
    if not star.sy > star.sx:
        return star
    rotation = star.rotation
    if rotation is not None and rotation.angle != 0.0:
        angle = rotation.angle - 90.0 if rotation.angle > 0.0 else rotation.angle + 90.0
        rotation = Rotation(angle, rotation.err)
    return replace(
        star,
        sx=star.sy, sy=star.sx,
        fwhmx=star.fwhmy, fwhmy=star.fwhmx,
        sx_err=star.sy_err, sy_err=star.sx_err,
        fwhmx_arcsec=star.fwhmy_arcsec, fwhmy_arcsec=star.fwhmx_arcsec,
        rotation=rotation,
    )


def _build_star(window: PixelWindow, fit: PSFFit, layer: int) -> FittedStar:
    B, A, x0, y0, sx, sy = (float(v) for v in fit.params[:6])
    e = [float(v) for v in fit.errors]
    rotation = None
    if isinstance(fit, FitWithAngle):
        rotation = Rotation(fit.angle, e[6])
    xpos, ypos = window.to_image(x0, y0)
    return FittedStar(
        B=B, A=A, x0=x0, y0=y0, sx=sx, sy=sy,
        fwhmx=fwhm_from_spread(sx), fwhmy=fwhm_from_spread(sy),
        mag=window_magnitude(window.data, B),
        rmse=fit.rmse,
        B_err=e[0], A_err=e[1], x_err=e[2], y_err=e[3], sx_err=e[4], sy_err=e[5],
        rotation=rotation,
        xpos=xpos, ypos=ypos,
        layer=layer,
    )


def psf_global_minimisation(window, background: Optional[float] = None, layer: int = 0,
                            fit_angle: bool = True,
                            photometry: Optional[PhotometryConfig] = None,
                            weights=None) -> Optional[FittedStar]:
    """
    Entry point of every PSF fit.

    Args:
        window: PixelWindow (or 2-D array) around one star.
        background: Background seed, median of the window if None.
        layer: Channel index recorded in the result.
        fit_angle: Refit with rotation when |SX - SY| >= ANGLE_EPSILON.
        photometry: Aperture photometry settings, None to skip it.
        weights: Optional per-pixel sigma.

    Returns:
        Canonical FittedStar (SX >= SY) or None if the fit failed or the FWHM is not usable.
    """
    window = _as_window(window)
    fit: Optional[PSFFit] = fit_without_angle(window, background, weights)
    if fit is None:
        return None

    if fit_angle and abs(fit.params[4] - fit.params[5]) >= ANGLE_EPSILON:
        fit = fit_with_angle(window, fit, weights)
        if fit is None:
            return None

    star = canonicalize(_build_star(window, fit, layer))

    if not (math.isfinite(star.fwhmx) and math.isfinite(star.fwhmy)) \
            or star.fwhmx <= 0.0 or star.fwhmy <= 0.0:
        log.debug("rejected fit with FWHM %s x %s", star.fwhmx, star.fwhmy)
        return None

    if photometry is not None:
        phot = get_photometry(window.channel, star.xpos, star.ypos, star.sx, photometry)
        if phot is not None:
            star.phot = phot
            star.mag = phot.mag
    return star


def update_units(star: FittedStar, optics: Optional[OpticsConfig]) -> FittedStar:
    """Add the FWHM in arc-seconds when the image sampling is known."""
    scale = optics.sampling() if optics is not None else None
    if scale is None:
        return star
    star.fwhmx_arcsec = star.fwhmx * scale
    star.fwhmy_arcsec = star.fwhmy * scale
    return star


def fit_selection(channel: ImageChannel, area: Rectangle, fit_angle: bool = True,
                  photometry: Optional[PhotometryConfig] = None,
                  optics: Optional[OpticsConfig] = None) -> Optional[FittedStar]:
    """Fit one star in a user selection of a channel."""
    area = area.clipped(channel.width, channel.height)
    if area.w <= 0 or area.h <= 0:
        return None
    window = channel.window(area)
    bg = float(np.median(window.data))
    star = psf_global_minimisation(window, bg, channel.layer, fit_angle=fit_angle,
                                   photometry=photometry)
    if star is not None:
        update_units(star, optics)
    return star


def get_fwhm(channel: ImageChannel, area: Rectangle,
             optics: Optional[OpticsConfig] = None) -> Tuple[float, float]:
    """
    Largest FWHM of the star in a selection, and its roundness.

    Returns:
        (FWHMx in the star's units, FWHMy / FWHMx), (0.0, 0.0) if no star was fitted.
    """
    star = fit_selection(channel, area, optics=optics)
    if star is None:
        return 0.0, 0.0
    fwhmx, _ = star.fwhm()
    return fwhmx, star.roundness
