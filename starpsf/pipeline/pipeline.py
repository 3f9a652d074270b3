import argparse
import concurrent.futures as cf
import logging
import math
import os
import threading
import time
from collections import Counter
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image

from starpsf.algorithms.psf_fitting import psf_global_minimisation, update_units
from starpsf.algorithms.star_finder import StarCandidate, adjust_radius, find_candidates
from starpsf.catalog import StarCatalog
from starpsf.config import FinderSettings, OpticsConfig, PhotometryConfig, StarFinderConfig
from starpsf.errors import ImplausibleResult
from starpsf.image import (
    ImageChannel,
    NoiseFilter,
    Rectangle,
    StatisticsProvider,
    gaussian_smooth,
    robust_stats,
)
from starpsf.logger_config import setup_logging
from starpsf.psf_types import FittedStar
from starpsf.synthetic import make_synthetic_starfield

log = logging.getLogger(__name__)

# diverged fit: spread larger than this many search radii
MAX_SPREAD_RADII = 10.0
# amplitude relative to the saturation level of the data
MIN_AMPLITUDE = 0.01


def check_star(star: FittedStar, radius: int, roundness: float,
               saturation: float = math.inf) -> None:
    """
    Plausibility of a fit made by the star finder.

    The amplitude is normalized by ``saturation`` when it is finite, so the
    same gate applies to 8-bit, 16-bit and normalized float data.

    Raises:
        ImplausibleResult: with the reason of the rejection.
    """
    if not star.is_finite() or not (np.isfinite(star.x0) and np.isfinite(star.y0)):
        raise ImplausibleResult("non-finite")
    if star.x0 <= 0.0 or star.y0 <= 0.0:
        raise ImplausibleResult("position")
    if not np.isfinite(star.mag):
        raise ImplausibleResult("magnitude")
    norm = saturation if math.isfinite(saturation) and saturation > 0.0 else 1.0
    if star.A / norm < MIN_AMPLITUDE:
        raise ImplausibleResult("amplitude")
    if star.sx > MAX_SPREAD_RADII * radius or star.sy > MAX_SPREAD_RADII * radius:
        raise ImplausibleResult("diverged")
    if star.fwhmx <= 0.0 or star.fwhmy <= 0.0:
        raise ImplausibleResult("fwhm")
    if star.fwhmy / star.fwhmx < roundness:
        raise ImplausibleResult("roundness")


def is_star(star: FittedStar, radius: int, roundness: float,
            saturation: float = math.inf) -> bool:
    try:
        check_star(star, radius, roundness, saturation)
    except ImplausibleResult:
        return False
    return True


def extract_window_rect(c: StarCandidate, radius: int) -> Rectangle:
    """2r x 2r window with the candidate at local index (r, r)."""
    return Rectangle(c.x - radius, c.y - radius, 2 * radius, 2 * radius)


def _fit_candidate(channel: ImageChannel, c: StarCandidate, radius: int, background: float,
                   config: StarFinderConfig, photometry: Optional[PhotometryConfig],
                   optics: Optional[OpticsConfig],
                   cancel: Optional[threading.Event]) -> Tuple[Optional[FittedStar], Optional[str]]:
    if cancel is not None and cancel.is_set():
        return None, "cancelled"

    window = channel.window(extract_window_rect(c, radius))
    # the angle is not fitted here, it slows the search down too much
    star = psf_global_minimisation(window, background, channel.layer, fit_angle=False,
                                   photometry=photometry)
    if star is None:
        return None, "fit failed"
    update_units(star, optics)
    try:
        check_star(star, radius, config.roundness, channel.saturation)
    except ImplausibleResult as e:
        log.debug("candidate (%d, %d) rejected: %s", c.x, c.y, e.reason)
        return None, e.reason
    return star, None


def find_stars(
    channel: ImageChannel,
    config: Optional[StarFinderConfig] = None,
    photometry: Optional[PhotometryConfig] = None,
    optics: Optional[OpticsConfig] = None,
    area: Optional[Rectangle] = None,
    noise_filter: NoiseFilter = gaussian_smooth,
    statistics: StatisticsProvider = robust_stats,
    cancel: Optional[threading.Event] = None,
) -> List[FittedStar]:
    """
    Detect and fit the stars of a channel.

    Args:
        channel (ImageChannel): Source channel, never modified.
        config (StarFinderConfig): Radius, sigma, roundness, caps, workers.
        photometry (PhotometryConfig): Used when config.with_photometry is set.
        optics (OpticsConfig): Sampling for radius adjustment and FWHM in arc-seconds.
        area (Rectangle): Restrict the search to this area.
        noise_filter: Smoothing applied before the candidate search.
        statistics: Background median / noise sigma provider.
        cancel (threading.Event): When set, no further candidate is fitted.

    Returns:
        List of FittedStar sorted by increasing magnitude.
    """
    config = config or StarFinderConfig()
    if config.with_photometry and photometry is None:
        photometry = PhotometryConfig()
    if not config.with_photometry:
        photometry = None

    t_start = time.perf_counter()
    radius = adjust_radius(config.radius, optics) if config.adjust else config.radius
    if radius != config.radius:
        log.info("Search radius adjusted from %d to %d px", config.radius, radius)

    stats = channel.statistics(area, provider=statistics)
    filtered = noise_filter(channel.data)
    fstats = statistics(filtered)
    threshold = stats.median + config.sigma * stats.sigma
    contrast = config.sigma * fstats.sigma

    candidates = find_candidates(filtered, threshold, contrast, radius,
                                 saturation=channel.saturation, area=area,
                                 max_candidates=config.max_candidates)
    log.info("Findstar: %d candidates above %.6g in channel #%d",
             len(candidates), threshold, channel.layer)

    workers = max(1, int(config.workers or os.cpu_count() or 1))
    if config.max_stars is None:
        batch = max(1, len(candidates))
    else:
        batch = max(workers * 4, config.max_stars)

    results: List[Optional[FittedStar]] = [None] * len(candidates)
    rejected: Counter = Counter()
    with cf.ThreadPoolExecutor(max_workers=workers) as ex:
        for start in range(0, len(candidates), batch):
            if cancel is not None and cancel.is_set():
                log.info("Findstar cancelled after %d candidates", start)
                break
            futs = {
                ex.submit(_fit_candidate, channel, candidates[i], radius, stats.median,
                          config, photometry, optics, cancel): i
                for i in range(start, min(start + batch, len(candidates)))
            }
            for fut in cf.as_completed(futs):
                star, reason = fut.result()
                results[futs[fut]] = star
                if reason is not None:
                    rejected[reason] += 1
            if config.max_stars is not None and \
                    sum(s is not None for s in results) >= config.max_stars:
                break

    stars = [s for s in results if s is not None]
    if config.max_stars is not None:
        stars = stars[:config.max_stars]
    stars.sort(key=lambda s: s.mag)

    log.info("Found %d stars in image, channel #%d", len(stars), channel.layer)
    if rejected:
        log.info("Rejected candidates: %s",
                 ", ".join(f"{k}={v}" for k, v in sorted(rejected.items())))
    log.info("Findstar took %.3f s", time.perf_counter() - t_start)
    return stars


def format_psf_result(star: FittedStar, magnitude_offset: float = 0.0) -> str:
    """Human-readable summary of one fit."""
    kind = "true reduced" if magnitude_offset > 0.0 else "relative"
    fx, fy = star.fwhm()
    lines = [
        "PSF fit Result:",
        f"x0={star.xpos:0.2f} px, y0={star.ypos:0.2f} px",
        f"FWHM X={fx:0.2f}{star.units}, FWHM Y={fy:0.2f}{star.units}",
        f"Angle={star.angle:0.2f} deg",
        f"Background value={star.B:0.6f}",
        f"Maximal intensity={star.A:0.6f}",
        f"Magnitude ({kind})={star.mag + magnitude_offset:0.2f}",
    ]
    if star.phot is not None:
        lines.append(f"Magnitude error={star.phot.s_mag:0.3f}, SNR={star.phot.snr:0.1f} dB")
    lines.append(f"RMSE={star.rmse:.3e}")
    return "\n".join(lines)


def load_channel(image_path: str, layer: int = 0) -> ImageChannel:
    with Image.open(image_path) as im:
        bands = im.getbands()
        if len(bands) > 1:
            if layer >= len(bands):
                raise SystemExit(f"Image {image_path} has {len(bands)} channels, no channel #{layer}")
            im = im.getchannel(layer)
        data = np.array(im)
    if data.dtype == np.int32 and data.size and data.min() >= 0 and data.max() <= 65535:
        # 16-bit files come back as 32-bit integers from some Pillow versions
        data = data.astype(np.uint16)
    return ImageChannel(data, layer=layer)


def run_pipeline(image_path: Optional[str], settings: FinderSettings, layer: int = 0,
                 out_dir: str = "out", show: int = 3) -> StarCatalog:
    """
    Find stars in an image (a synthetic field if no path is given) and save the catalog.
    """
    out_path = Path(out_dir)
    out_path.mkdir(parents=True, exist_ok=True)

    if image_path:
        channel = load_channel(image_path, layer)
        image_name = Path(image_path).stem
    else:
        img = make_synthetic_starfield()
        image_name = "synthetic_starfield"
        Image.fromarray(img).save(out_path / f"{image_name}.png")
        channel = ImageChannel(img)

    print(f"[INFO] Input image: {image_path or (out_path / (image_name + '.png'))}")

    stars = find_stars(channel, settings.finder, settings.photometry, settings.optics)
    catalog = StarCatalog(stars)
    csv_path = catalog.save_csv(out_path / f"{image_name}_stars.csv")

    print(f"[INFO] Stars found: {len(catalog)}")
    if catalog:
        fx, fy = catalog.fwhm_average()
        print(f"[INFO] Mean FWHM: {fx:.2f} x {fy:.2f} {catalog[0].units}")
        for star in list(catalog)[:show]:
            print(format_psf_result(star))
    print(f"[INFO] Saved catalog to: {csv_path}")
    return catalog


def main(argv=None) -> None:
    ap = argparse.ArgumentParser(description="Star detection and Gaussian PSF fitting")
    ap.add_argument("--image", type=str, default=None, help="Input image. None -> synthetic field.")
    ap.add_argument("--layer", type=int, default=0, help="Channel of a color image.")
    ap.add_argument("--radius", type=int, default=10)
    ap.add_argument("--sigma", type=float, default=1.0)
    ap.add_argument("--roundness", type=float, default=0.5)
    ap.add_argument("--adjust", action="store_true", help="Scale the radius with the sampling.")
    ap.add_argument("--max-stars", type=int, default=None)
    ap.add_argument("--workers", type=int, default=None)
    ap.add_argument("--photometry", action="store_true")
    ap.add_argument("--inner", type=float, default=20.0)
    ap.add_argument("--outer", type=float, default=30.0)
    ap.add_argument("--gain", type=float, default=2.3)
    ap.add_argument("--focal", type=float, default=0.0, help="Focal length [mm].")
    ap.add_argument("--pixel-size", type=float, default=0.0, help="Pixel size [um].")
    ap.add_argument("--binning", type=int, default=1)
    ap.add_argument("--out", type=str, default="out")
    ap.add_argument("--show", type=int, default=3, help="Number of fits to print.")
    ap.add_argument("--log-file", type=str, default=None)
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    try:
        settings = FinderSettings(
            finder=StarFinderConfig(
                radius=args.radius, sigma=args.sigma, roundness=args.roundness,
                adjust=args.adjust, max_stars=args.max_stars,
                with_photometry=args.photometry, workers=args.workers,
            ),
            photometry=PhotometryConfig(inner=args.inner, outer=args.outer, gain=args.gain),
            optics=OpticsConfig(focal_length=args.focal, pixel_size=args.pixel_size,
                                binning=args.binning),
            log_level=logging.DEBUG if args.verbose else logging.INFO,
            log_to_file=args.log_file is not None,
            log_path=args.log_file or "./starpsf.log",
        )
    except ValueError as e:
        ap.error(str(e))

    setup_logging(Path(settings.log_path) if settings.log_to_file else None, settings.log_level)
    run_pipeline(args.image, settings, layer=args.layer, out_dir=args.out, show=args.show)


if __name__ == "__main__":
    main()
