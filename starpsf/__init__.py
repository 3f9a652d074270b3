"""
starpsf: star detection, Gaussian PSF fitting and aperture photometry.
"""

from .config import StarFinderConfig, PhotometryConfig, OpticsConfig, FinderSettings
from .image import ImageChannel, PixelWindow, Rectangle
from .psf_types import FittedStar, Photometry, Rotation
from .catalog import StarCatalog
from .pipeline import find_stars

__version__ = "0.1.0"
__all__ = [
    "StarFinderConfig",
    "PhotometryConfig",
    "OpticsConfig",
    "FinderSettings",
    "ImageChannel",
    "PixelWindow",
    "Rectangle",
    "FittedStar",
    "Photometry",
    "Rotation",
    "StarCatalog",
    "find_stars",
]
