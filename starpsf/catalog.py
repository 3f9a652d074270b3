"""
Star list of an image.

Provides:
- Ordered container of fitted stars (add, remove by index, iterate)
- Magnitude sort and mean FWHM
- Manual pick of a star in a selection, skipping stars already listed
- Export to a pandas DataFrame / CSV
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd

from starpsf.algorithms.psf_fitting import fit_selection
from starpsf.config import MAX_STARS, OpticsConfig, PhotometryConfig
from starpsf.image import ImageChannel, Rectangle
from starpsf.psf_types import FittedStar

log = logging.getLogger(__name__)

# two stars closer than this on both axes are the same star
DUPLICATE_TOLERANCE = 0.9

COLUMNS = [
    "xpos", "ypos", "x0", "y0", "B", "A", "sx", "sy", "fwhmx", "fwhmy",
    "fwhmx_arcsec", "fwhmy_arcsec", "angle", "mag", "s_mag", "snr", "rmse", "layer",
]


class StarCatalog:
    def __init__(self, stars: Optional[Iterable[FittedStar]] = None, max_stars: int = MAX_STARS):
        self.max_stars = int(max_stars)
        self._stars: List[FittedStar] = list(stars) if stars is not None else []
        if len(self._stars) > self.max_stars:
            raise ValueError(f"{len(self._stars)} stars for a catalog of {self.max_stars}")

    def __len__(self) -> int:
        return len(self._stars)

    def __iter__(self) -> Iterator[FittedStar]:
        return iter(self._stars)

    def __getitem__(self, index: int) -> FittedStar:
        return self._stars[index]

    def __bool__(self) -> bool:
        return bool(self._stars)

    def add(self, star: FittedStar) -> Optional[int]:
        """Append a star, returns its index or None if the catalog is full."""
        if len(self._stars) >= self.max_stars:
            return None
        self._stars.append(star)
        return len(self._stars) - 1

    def remove(self, index: int) -> FittedStar:
        """Remove the star at index, keeping the order of the others."""
        if index < 0 or index >= len(self._stars):
            raise IndexError(f"no star at index {index}")
        return self._stars.pop(index)

    def clear(self) -> None:
        self._stars.clear()

    def sort(self) -> None:
        """Brightest first."""
        self._stars.sort(key=lambda s: s.mag)

    def find(self, xpos: float, ypos: float) -> Optional[int]:
        for i, s in enumerate(self._stars):
            if abs(s.xpos - xpos) < DUPLICATE_TOLERANCE and abs(s.ypos - ypos) < DUPLICATE_TOLERANCE:
                return i
        return None

    def fwhm_average(self, max_count: Optional[int] = None) -> Tuple[float, float]:
        """Mean FWHM (in the stars' units) of the first max_count stars."""
        stars = self._stars if max_count is None else self._stars[:max_count]
        if not stars:
            return 0.0, 0.0
        fw = np.array([s.fwhm() for s in stars], dtype=np.float64)
        return float(fw[:, 0].mean()), float(fw[:, 1].mean())

    def add_star(self, channel: ImageChannel, area: Rectangle,
                 photometry: Optional[PhotometryConfig] = None,
                 optics: Optional[OpticsConfig] = None) -> Optional[Tuple[FittedStar, int]]:
        """
        Fit a star in a selection and append it.

        The plausibility checks of the automatic finder are not applied, so
        stars it missed can be added by hand.

        Returns:
            (star, index), or None if no star was fitted, it is already listed,
            or the catalog is full.
        """
        star = fit_selection(channel, area, photometry=photometry, optics=optics)
        if star is None:
            return None
        if self.find(star.xpos, star.ypos) is not None:
            log.info("This star has already been picked")
            return None
        index = self.add(star)
        if index is None:
            return None
        return star, index

    def to_dataframe(self) -> pd.DataFrame:
        rows = []
        for s in self._stars:
            rows.append({
                "xpos": s.xpos, "ypos": s.ypos, "x0": s.x0, "y0": s.y0,
                "B": s.B, "A": s.A, "sx": s.sx, "sy": s.sy,
                "fwhmx": s.fwhmx, "fwhmy": s.fwhmy,
                "fwhmx_arcsec": s.fwhmx_arcsec, "fwhmy_arcsec": s.fwhmy_arcsec,
                "angle": s.angle, "mag": s.mag, "s_mag": s.s_mag,
                "snr": s.phot.snr if s.phot is not None else np.nan,
                "rmse": s.rmse, "layer": s.layer,
            })
        return pd.DataFrame(rows, columns=COLUMNS)

    def save_csv(self, path) -> Path:
        path = Path(path)
        self.to_dataframe().to_csv(path, index=False)
        return path
