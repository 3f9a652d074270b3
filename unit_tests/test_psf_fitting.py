import math

import numpy as np
import pytest

from starpsf.algorithms import psf_fitting
from starpsf.algorithms.psf_fitting import (
    ANGLE_EPSILON,
    canonicalize,
    fit_selection,
    fit_without_angle,
    get_fwhm,
    normalize_angle,
    psf_global_minimisation,
    psf_init_data,
    update_units,
    window_magnitude,
)
from starpsf.algorithms.psf_model import (
    fwhm_from_spread,
    gaussian,
    gaussian_jacobian,
    gaussian_rot,
    gaussian_rot_jacobian,
    pixel_grid,
    render,
    spread_from_fwhm,
)
from starpsf.config import OpticsConfig
from starpsf.image import ImageChannel, PixelWindow, Rectangle
from starpsf.psf_types import FittedStar, Rotation
from starpsf.synthetic import render_star


def synthetic_gaussian_2d(
    h=15, w=15,
    B=100.0, A=1000.0, x0=8.3, y0=7.6,
    sx=6.0, sy=4.0, angle=None,
    noise=0.0, seed=42,
) -> tuple[np.ndarray, dict]:
    """
    Returns synthetic 2D Gaussian window (1-indexed centers) and its true parameters.
    """
    rng = np.random.default_rng(seed)
    if angle is None:
        img = render((B, A, x0, y0, sx, sy), (h, w))
    else:
        img = render((B, A, x0, y0, sx, sy, -math.radians(angle)), (h, w))
    if noise > 0:
        img = img + rng.normal(0, noise, size=img.shape)
    return img, dict(B=B, A=A, x0=x0, y0=y0, sx=sx, sy=sy, angle=angle)


def _star(**kw) -> FittedStar:
    base = dict(B=10.0, A=100.0, x0=5.0, y0=5.0, sx=2.0, sy=5.0,
                fwhmx=fwhm_from_spread(2.0), fwhmy=fwhm_from_spread(5.0),
                mag=-5.0, rmse=0.1, sx_err=0.01, sy_err=0.02)
    base.update(kw)
    return FittedStar(**base)


def test_gaussian_symmetry():
    """
    Test symmetry of the 2D Gaussian model around its center.
    """
    I = render((10.0, 100.0, 5.0, 5.0, 4.0, 4.0), (9, 9))

    iy, ix = np.unravel_index(np.argmax(I), I.shape)

    assert (ix, iy) == (4, 4)

    diff = np.abs(I - np.flipud(np.fliplr(I)))

    assert np.mean(diff) < 1e-9


def test_gaussian_rotation_effect():
    """
    Test that the rotation parameter changes an elliptical profile.
    """
    I0 = render((0.0, 100.0, 8.0, 8.0, 2.0, 18.0, 0.0), (15, 15))
    I1 = render((0.0, 100.0, 8.0, 8.0, 2.0, 18.0, np.pi / 4), (15, 15))

    assert np.mean(np.abs(I1 - I0)) > 1.0


def test_rotation_zero_matches_axis_aligned_model():
    X, Y = pixel_grid((11, 13))
    p = (5.0, 80.0, 6.2, 5.7, 3.0, 7.0)

    np.testing.assert_allclose(gaussian_rot(p + (0.0,), X, Y), gaussian(p, X, Y))


@pytest.mark.parametrize("model, jacobian, params", [
    (gaussian, gaussian_jacobian, (5.0, 80.0, 6.2, 5.7, 3.0, 7.0)),
    (gaussian_rot, gaussian_rot_jacobian, (5.0, 80.0, 6.2, 5.7, 3.0, 7.0, 0.4)),
])
def test_analytic_jacobian_matches_finite_differences(model, jacobian, params):
    X, Y = pixel_grid((11, 13))
    J = jacobian(params, X, Y)
    h = 1e-6
    for k in range(len(params)):
        up = list(params)
        dn = list(params)
        up[k] += h
        dn[k] -= h
        numeric = (model(up, X, Y) - model(dn, X, Y)) / (2 * h)
        np.testing.assert_allclose(J[:, k], numeric, rtol=1e-5, atol=1e-6)


def test_fwhm_spread_conversion():
    assert fwhm_from_spread(spread_from_fwhm(3.0)) == pytest.approx(3.0)
    assert fwhm_from_spread(0.0) == 0.0
    assert math.isnan(fwhm_from_spread(-1.0))
    assert math.isnan(fwhm_from_spread(float("nan")))


def test_init_data_ignores_hot_pixel():
    img, true = synthetic_gaussian_2d(h=21, w=21, x0=8.0, y0=9.0, sx=5.0, sy=5.0)
    img[17, 3] = 50000.0

    guess = psf_init_data(img, background=100.0)

    assert guess.x0 == pytest.approx(true["x0"], abs=1.0)
    assert guess.y0 == pytest.approx(true["y0"], abs=1.0)
    assert guess.sx > 0 and guess.sy > 0


def test_fit_without_angle_recovers_parameters():
    img, true = synthetic_gaussian_2d()

    fit = fit_without_angle(img, background=float(np.median(img)))

    assert fit is not None
    B, A, x0, y0, sx, sy = fit.params
    for got, key in zip((B, A, x0, y0, sx, sy), ("B", "A", "x0", "y0", "sx", "sy")):
        assert got == pytest.approx(true[key], rel=1e-3)
    assert fit.rmse < 1e-2


def test_fit_without_angle_with_noise_is_close():
    img, true = synthetic_gaussian_2d(h=21, w=21, x0=11.4, y0=10.2, noise=2.0)

    fit = fit_without_angle(img)

    assert fit is not None
    assert fit.params[2] == pytest.approx(true["x0"], abs=0.05)
    assert fit.params[3] == pytest.approx(true["y0"], abs=0.05)
    assert fit.rmse == pytest.approx(2.0, rel=0.2)
    assert np.all(np.isfinite(fit.errors))


def test_uniform_weights_do_not_change_the_fit():
    img, _ = synthetic_gaussian_2d(noise=1.0)

    a = fit_without_angle(img)
    b = fit_without_angle(img, weights=np.full(img.size, 3.0))

    np.testing.assert_allclose(a.params, b.params, rtol=1e-3)


def test_infeasible_window_fails_without_iterating(monkeypatch):
    def no_solver(*args, **kwargs):
        raise AssertionError("solver must not run")

    monkeypatch.setattr(psf_fitting, "least_squares", no_solver)
    img = np.array([[1.0, 2.0, 1.0], [2.0, 5.0, 2.0]])

    assert fit_without_angle(img) is None
    assert psf_global_minimisation(img) is None


def test_solver_iterations_are_capped(monkeypatch):
    """
    Test that noisy, poorly seeded windows never run more than the iteration cap.
    """
    jacobian_evals = []
    solve = psf_fitting.least_squares

    def counting_solver(*args, **kwargs):
        res = solve(*args, **kwargs)
        jacobian_evals.append(res.njev)
        return res

    monkeypatch.setattr(psf_fitting, "least_squares", counting_solver)
    rng = np.random.default_rng(17)
    for _ in range(40):
        img, _ = synthetic_gaussian_2d(
            h=21, w=21, A=rng.uniform(20.0, 2000.0),
            x0=rng.uniform(6.0, 16.0), y0=rng.uniform(6.0, 16.0),
            sx=rng.uniform(1.0, 30.0), sy=rng.uniform(1.0, 30.0),
            noise=10.0, seed=int(rng.integers(1 << 30)),
        )
        psf_global_minimisation(img, fit_angle=True)

    assert jacobian_evals
    assert max(jacobian_evals) <= max(psf_fitting.MAX_ITER_NO_ANGLE, psf_fitting.MAX_ITER_ANGLE)


def test_rotation_fit_recovers_angle():
    img, true = synthetic_gaussian_2d(h=25, w=25, x0=13.2, y0=12.7, sx=10.0, sy=3.0, angle=25.0)

    star = psf_global_minimisation(img, background=100.0, fit_angle=True)

    assert star is not None
    assert star.rotation is not None
    assert star.angle == pytest.approx(25.0, abs=1.0)
    assert star.sx == pytest.approx(10.0, rel=2e-2)
    assert star.sy == pytest.approx(3.0, rel=2e-2)
    assert star.sx >= star.sy


def test_rotation_fit_canonicalizes_major_axis_along_y():
    img, _ = synthetic_gaussian_2d(h=25, w=25, x0=13.2, y0=12.7, sx=3.0, sy=10.0, angle=20.0)

    star = psf_global_minimisation(img, background=100.0, fit_angle=True)

    assert star is not None
    assert star.sx >= star.sy
    assert star.sx == pytest.approx(10.0, rel=2e-2)
    assert star.angle == pytest.approx(-70.0, abs=1.0)
    assert star.fwhmx == pytest.approx(fwhm_from_spread(10.0), rel=2e-2)


def test_round_star_skips_rotation_fit(monkeypatch):
    def no_rotation(*args, **kwargs):
        raise AssertionError("rotation fit must not run")

    monkeypatch.setattr(psf_fitting, "fit_with_angle", no_rotation)
    img, _ = synthetic_gaussian_2d(sx=5.0, sy=5.0)

    star = psf_global_minimisation(img, fit_angle=True)

    assert star is not None
    assert abs(star.sx - star.sy) < ANGLE_EPSILON
    assert star.rotation is None
    assert star.angle == 0.0


def test_failed_rotation_fit_discards_candidate(monkeypatch):
    monkeypatch.setattr(psf_fitting, "fit_with_angle", lambda *a, **k: None)
    img, _ = synthetic_gaussian_2d(sx=8.0, sy=3.0)

    assert psf_global_minimisation(img, fit_angle=True) is None
    assert psf_global_minimisation(img, fit_angle=False) is not None


def test_no_angle_fit_is_canonical():
    img, _ = synthetic_gaussian_2d(sx=3.0, sy=8.0)

    star = psf_global_minimisation(img, fit_angle=False)

    assert star.sx == pytest.approx(8.0, rel=1e-3)
    assert star.sy == pytest.approx(3.0, rel=1e-3)
    assert star.fwhmx >= star.fwhmy
    assert star.rotation is None


def test_canonicalize_swaps_axes_and_turns_angle():
    star = _star(rotation=Rotation(30.0, 0.1))

    c = canonicalize(star)

    assert (c.sx, c.sy) == (5.0, 2.0)
    assert (c.fwhmx, c.fwhmy) == (star.fwhmy, star.fwhmx)
    assert (c.sx_err, c.sy_err) == (0.02, 0.01)
    assert c.angle == pytest.approx(-60.0)
    assert canonicalize(c) == c


def test_canonicalize_without_rotation_keeps_zero_angle():
    c = canonicalize(_star())

    assert c.sx == 5.0
    assert c.angle == 0.0
    assert canonicalize(c) == c


@pytest.mark.parametrize("angle, expected", [
    (45.0, 45.0), (135.0, 45.0), (-135.0, -45.0), (-90.0, 90.0), (270.0, 90.0), (90.0, 90.0),
])
def test_normalize_angle(angle, expected):
    assert normalize_angle(angle) == pytest.approx(expected)


def test_window_magnitude():
    data = np.full((4, 4), 10.0)
    data[1, 1] = 109.0

    assert window_magnitude(data, 10.0) == pytest.approx(-5.0)
    assert math.isnan(window_magnitude(data, 1000.0))


def test_fit_selection_sets_image_position_and_units():
    img = 100.0 + render_star((64, 64), 1000.0, 30.4, 20.7, 5.0, 5.0)
    channel = ImageChannel(img)
    optics = OpticsConfig(focal_length=1000.0, pixel_size=4.848, binning=1)

    star = fit_selection(channel, Rectangle(20, 10, 21, 21), optics=optics)

    assert star is not None
    assert star.xpos == pytest.approx(30.4, abs=1e-2)
    assert star.ypos == pytest.approx(20.7, abs=1e-2)
    assert star.units == '"'
    assert star.fwhmx_arcsec == pytest.approx(star.fwhmx * optics.sampling())


def test_update_units_without_optics_keeps_pixels():
    star = update_units(_star(), OpticsConfig())

    assert star.units == "px"
    assert star.fwhm() == (star.fwhmx, star.fwhmy)


def test_get_fwhm_returns_major_axis_and_roundness():
    img = 100.0 + render_star((48, 48), 800.0, 24.2, 23.9, 8.0, 4.0)
    channel = ImageChannel(img)

    fwhm, roundness = get_fwhm(channel, Rectangle(12, 12, 24, 24))

    assert fwhm == pytest.approx(fwhm_from_spread(8.0), rel=1e-2)
    assert roundness == pytest.approx(math.sqrt(0.5), rel=1e-2)


def test_get_fwhm_on_flat_area_fails_cleanly():
    channel = ImageChannel(np.full((10, 10), 100.0))

    assert get_fwhm(channel, Rectangle(0, 0, 2, 2)) == (0.0, 0.0)


def test_window_is_read_only():
    img, _ = synthetic_gaussian_2d()
    window = PixelWindow.from_array(img)

    with pytest.raises(ValueError):
        window.data[0, 0] = 1.0
