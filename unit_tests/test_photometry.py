import math

import numpy as np
import pytest

from starpsf.algorithms.photometry import (
    MAG_ERR_MAX,
    aperture_radius,
    get_mag_error,
    get_photometry,
    measure,
)
from starpsf.algorithms.psf_model import spread_from_fwhm
from starpsf.config import PhotometryConfig
from starpsf.errors import DegenerateAperture, InsufficientSkySample
from starpsf.image import ImageChannel


def flat_field_with_core(size=101, bg=100.0, signal=50.0, xc=50.0, yc=50.0, fwhm=4.0):
    """
    Flat background with ``signal`` added to the fully weighted aperture pixels only.

    Returns:
        (image, sx, number of pixels carrying signal)
    """
    sx = spread_from_fwhm(fwhm)
    r_ap = aperture_radius(sx)
    img = np.full((size, size), bg)
    yy, xx = np.mgrid[0:size, 0:size]
    core = (xx - xc) ** 2 + (yy - yc) ** 2 < (r_ap - 0.5) ** 2
    img[core] += signal
    return img, sx, int(core.sum())


def test_aperture_radius_follows_fwhm():
    assert aperture_radius(spread_from_fwhm(4.0)) == pytest.approx(2.5)


def test_flat_background_signal():
    img, sx, count = flat_field_with_core()

    phot = measure(ImageChannel(img), 50.0, 50.0, sx, PhotometryConfig())

    assert count == 9
    assert phot.mag == pytest.approx(-2.5 * math.log10(50.0 * count))
    assert phot.valid
    assert phot.snr > 0.0
    assert 0.0 < phot.s_mag < MAG_ERR_MAX


def test_sky_level_rejects_a_hot_pixel():
    img, sx, count = flat_field_with_core()
    img[50, 75] = 60000.0

    phot = measure(ImageChannel(img), 50.0, 50.0, sx, PhotometryConfig())

    assert phot.mag == pytest.approx(-2.5 * math.log10(50.0 * count), abs=1e-3)


def test_saturated_sky_pixel_marks_result_invalid():
    img, sx, _ = flat_field_with_core()
    img[50, 75] = 2000.0

    phot = measure(ImageChannel(img, saturation=1000.0), 50.0, 50.0, sx, PhotometryConfig())

    assert not phot.valid


def test_too_few_sky_pixels():
    img, sx, _ = flat_field_with_core(size=11, xc=5.0, yc=5.0)
    config = PhotometryConfig(inner=6.5, outer=7.0)

    with pytest.raises(InsufficientSkySample):
        measure(ImageChannel(img), 5.0, 5.0, sx, config)
    assert get_photometry(ImageChannel(img), 5.0, 5.0, sx, config) is None


def test_aperture_larger_than_inner_radius():
    img, _, _ = flat_field_with_core()
    config = PhotometryConfig(inner=3.0, outer=10.0)

    with pytest.raises(DegenerateAperture):
        measure(ImageChannel(img), 50.0, 50.0, spread_from_fwhm(8.0), config)


def test_no_signal_above_sky():
    img = np.full((61, 61), 100.0)

    assert get_photometry(ImageChannel(img), 30.0, 30.0, spread_from_fwhm(4.0),
                          PhotometryConfig()) is None


def test_mag_error_is_clamped():
    s_mag, noise = get_mag_error(1e-3, 20.0, 100, 5.0, 2.3)

    assert s_mag == MAG_ERR_MAX
    assert noise > 0.0


def test_mag_error_formula():
    intensity, area, nsky, skysig, gain = 10000.0, 20.0, 200, 3.0, 2.3
    noise = math.sqrt(area * skysig ** 2 + intensity / gain + skysig ** 2 / nsky * area ** 2)

    s_mag, got = get_mag_error(intensity, area, nsky, skysig, gain)

    assert got == pytest.approx(noise)
    assert s_mag == pytest.approx(1.0857 * noise / intensity)
