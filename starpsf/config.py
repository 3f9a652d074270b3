# config.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

# arc-seconds per radian / 1000: pixel size in micrometres, focal length in mm
RADIAN_CONVERSION = (3600.0 * 180.0 / 3.141592653589793) / 1.0e3

# detector cap on candidates per channel
MAX_STARS = 20000


@dataclass
class StarFinderConfig:
    # search box half-size in pixels
    radius: int = 10
    # detection threshold in sigma above the median
    sigma: float = 1.0
    # minimal FWHMy / FWHMx
    roundness: float = 0.5
    # scale radius with optical sampling
    adjust: bool = False

    # fitted-star cap (None = all)
    max_stars: Optional[int] = None
    max_candidates: int = MAX_STARS

    with_photometry: bool = False
    workers: Optional[int] = None  # None -> os.cpu_count()

    def __post_init__(self) -> None:
        if int(self.radius) < 1:
            raise ValueError(f"radius must be >= 1, got {self.radius}")
        if self.sigma < 0.0:
            raise ValueError(f"sigma must be >= 0, got {self.sigma}")
        if not 0.0 <= self.roundness <= 1.0:
            raise ValueError(f"roundness must be in [0, 1], got {self.roundness}")
        if self.max_stars is not None and self.max_stars < 1:
            raise ValueError(f"max_stars must be >= 1, got {self.max_stars}")
        if self.max_candidates < 1:
            raise ValueError(f"max_candidates must be >= 1, got {self.max_candidates}")
        self.radius = int(self.radius)


@dataclass
class PhotometryConfig:
    # sky annulus radii in pixels
    inner: float = 20.0
    outer: float = 30.0
    # e-/ADU
    gain: float = 2.3
    min_sky: int = 5

    def __post_init__(self) -> None:
        if self.inner <= 0.0 or self.outer <= self.inner:
            raise ValueError(
                f"sky annulus needs 0 < inner < outer, got inner={self.inner}, outer={self.outer}"
            )
        if self.gain <= 0.0:
            raise ValueError(f"gain must be > 0, got {self.gain}")


@dataclass
class OpticsConfig:
    focal_length: float = 0.0  # mm
    pixel_size: float = 0.0    # um
    binning: int = 1

    def is_known(self) -> bool:
        return self.focal_length > 0.0 and self.pixel_size > 0.0 and self.binning > 0

    def sampling(self) -> Optional[float]:
        """Image scale in arc-seconds per pixel, None if the optics are unknown."""
        if not self.is_known():
            return None
        return RADIAN_CONVERSION * self.pixel_size / self.focal_length * float(self.binning)


@dataclass
class FinderSettings:
    finder: StarFinderConfig = field(default_factory=StarFinderConfig)
    photometry: PhotometryConfig = field(default_factory=PhotometryConfig)
    optics: OpticsConfig = field(default_factory=OpticsConfig)

    log_level: int = logging.INFO
    log_to_file: bool = False
    log_path: str = "./starpsf.log"
