from .robust import (
    robust_mean,
    RobustMean,
)
from .psf_fitting import (
    psf_global_minimisation,
    fit_without_angle,
    fit_with_angle,
    canonicalize,
    fit_selection,
    get_fwhm,
    FitWithoutAngle,
    FitWithAngle,
)
from .photometry import (
    get_photometry,
)
from .star_finder import (
    find_candidates,
    adjust_radius,
    StarCandidate,
)

__all__ = [
    "robust_mean",
    "RobustMean",
    "psf_global_minimisation",
    "fit_without_angle",
    "fit_with_angle",
    "canonicalize",
    "fit_selection",
    "get_fwhm",
    "FitWithoutAngle",
    "FitWithAngle",
    "get_photometry",
    "find_candidates",
    "adjust_radius",
    "StarCandidate",
]
