"""
Unit tests for the simplex transform fitter.
"""

import math

import numpy as np
import pytest

from wcsfit.catalog import CatalogSource
from wcsfit.config_manager import FitConfig
from wcsfit.detection import DetectedSource
from wcsfit.fitting import FitMode, FitResult, ModelFitter, amoeba
from wcsfit.matching import Correspondence
from wcsfit.transform import TransformModel
from wcsfit.utils import AmbiguousOrInsufficientMatch, OptimizerDidNotConverge


def make_pairs(transform, projection, pixels, noise=0.0, seed=0):
    """Correspondences whose sky positions project exactly onto ``pixels`` under ``transform``."""
    rng = np.random.default_rng(seed)
    pairs = []
    for i, (x, y) in enumerate(pixels):
        ra, dec = projection.project_to_sky(transform, x, y)
        if noise:
            sx, sy = x + rng.normal(0.0, noise), y + rng.normal(0.0, noise)
        else:
            sx, sy = x, y
        source = DetectedSource(x=sx, y=sy, peak=1000.0, flux=1000.0, radius=2,
                                background=0.0, noise=1.0, threshold=5.0)
        pairs.append(Correspondence(source=source,
                                    star=CatalogSource(id=str(i), ra=ra, dec=dec, mag=12.0)))
    return pairs


PIXELS = [(20.0, 30.0), (180.0, 25.0), (90.0, 110.0), (30.0, 170.0),
          (160.0, 160.0), (110.0, 60.0)]


class TestAmoeba:
    """Test the downhill simplex minimiser on its own."""

    def test_quadratic_bowl(self):
        def bowl(p):
            return (p[0] - 1.0) ** 2 + 10.0 * (p[1] + 2.0) ** 2 + 1.0

        simplex = np.array([[0.0, 0.0], [0.5, 0.0], [0.0, 0.5]])
        vertices, values, evaluations = amoeba(bowl, simplex, ftol=1e-10)

        best = vertices[np.argmin(values)]
        assert best == pytest.approx([1.0, -2.0], abs=1e-3)
        assert min(values) == pytest.approx(1.0, abs=1e-6)
        assert evaluations > 0

    def test_evaluation_cap(self):
        def rosenbrock(p):
            return (1.0 - p[0]) ** 2 + 100.0 * (p[1] - p[0] ** 2) ** 2

        simplex = np.array([[-1.2, 1.0], [-1.1, 1.0], [-1.2, 1.1]])
        with pytest.raises(OptimizerDidNotConverge):
            amoeba(rosenbrock, simplex, ftol=1e-12, max_evaluations=10)

    def test_rejects_wrong_vertex_count(self):
        with pytest.raises(ValueError):
            amoeba(lambda p: 0.0, np.zeros((2, 2)))


class TestFitMode:
    """Test dimensionality selection."""

    @pytest.mark.parametrize("n_pairs, expected", [
        (2, FitMode.SHIFT), (3, FitMode.SHIFT), (4, FitMode.SCALE),
        (5, FitMode.SCALE), (6, FitMode.ROTATION), (40, FitMode.ROTATION),
    ])
    def test_from_match_count(self, n_pairs, expected):
        assert FitMode.from_match_count(n_pairs) == expected

    def test_min_pairs(self):
        assert FitMode.SHIFT.min_pairs == 2
        assert FitMode.ROTATION.min_pairs == 3
        assert FitMode.REFERENCE_PIXEL.min_pairs == 4

    def test_explicit_dimensionality(self):
        fitter = ModelFitter()
        assert fitter.resolve_mode(5, 2) == FitMode.AXIS_SCALES
        assert fitter.resolve_mode(0, 10) == FitMode.ROTATION
        with pytest.raises(ValueError):
            fitter.resolve_mode(8, 10)


class TestApplyParameters:
    """Test how parameter vectors map onto the transform."""

    def test_reference_pixel_mode(self, true_transform):
        params = [1e-4, -2e-4, 1e-6, 0.5, 2e-6, 3.0, -4.0]
        t = ModelFitter.apply_parameters(true_transform, params, FitMode.REFERENCE_PIXEL)

        assert t.crval1 == pytest.approx(true_transform.crval1 + 1e-4)
        assert t.crval2 == pytest.approx(true_transform.crval2 - 2e-4)
        assert t.cdelt1 == pytest.approx(true_transform.cdelt1 - 1e-6)
        assert t.cdelt2 == pytest.approx(true_transform.cdelt2 + 2e-6)
        assert t.rotation == pytest.approx(0.5)
        assert (t.crpix1, t.crpix2) == (true_transform.crpix1 + 3.0, true_transform.crpix2 - 4.0)
        assert t.chip_rotation == 0.0
        # the seed is left alone
        assert true_transform.crpix1 == 100.5

    def test_single_scale_keeps_axis_ratio(self, true_transform):
        seed = true_transform.copy()
        seed.cdelt2 = 2.0 * abs(seed.cdelt1)
        t = ModelFitter.apply_parameters(seed, [0.0, 0.0, abs(seed.cdelt1)], FitMode.SCALE)
        assert t.cdelt1 == pytest.approx(2.0 * seed.cdelt1)
        assert t.cdelt2 == pytest.approx(2.0 * seed.cdelt2)

    def test_chip_rotation_mode(self, true_transform):
        t = ModelFitter.apply_parameters(true_transform, [0, 0, 0, 0, 0, 1.5], FitMode.CHIP_ROTATION)
        assert t.chip_rotation == 1.5
        assert t.rotation == 0.0


class TestModelFitter:
    """Test fitting against correspondences with a known answer."""

    @pytest.fixture
    def fitter(self, projection):
        return ModelFitter(FitConfig(max_evaluations=20000), projection)

    def test_noise_free_four_parameter_fit(self, fitter, projection, true_transform):
        truth = true_transform.copy()
        truth.rotation = 0.8
        truth.cdelt1 *= 1.02
        truth.cdelt2 *= 1.02
        pairs = make_pairs(truth, projection, PIXELS)

        seed = true_transform.copy()
        seed.crval1 += 2.0 / 3600.0
        seed.crval2 -= 3.0 / 3600.0
        result = fitter.fit(pairs, seed, dimensionality=4)

        assert isinstance(result, FitResult)
        assert result.mode == FitMode.ROTATION
        assert result.final_chisqr == pytest.approx(0.0, abs=1e-8)
        assert seed.rotation == pytest.approx(0.8, abs=1e-5)
        assert seed.secpix1 == pytest.approx(truth.secpix1, rel=1e-6)
        assert seed.secpix2 == pytest.approx(truth.secpix2, rel=1e-6)
        assert seed.crval1 == pytest.approx(truth.crval1, abs=1e-7)
        assert seed.crval2 == pytest.approx(truth.crval2, abs=1e-7)

    def test_objective_never_worse_than_start(self, fitter, projection, true_transform):
        pairs = make_pairs(true_transform, projection, PIXELS, noise=0.3, seed=5)
        seed = true_transform.copy()
        seed.rotation = -0.4
        seed.crval2 += 4.0 / 3600.0

        result = fitter.fit(pairs, seed)
        assert result.final_chisqr <= result.initial_chisqr
        assert result.mode == FitMode.ROTATION

    def test_two_star_shift(self, fitter, projection):
        """Two stars fitted with a pure shift reproduce both positions."""
        truth = TransformModel(crval1=10.0, crval2=20.0, crpix1=512.0, crpix2=512.0,
                               cdelt1=-1.0 / 3600.0, cdelt2=1.0 / 3600.0,
                               naxis1=1024, naxis2=1024)
        stars = [CatalogSource('a', 10.0, 20.0, 11.0), CatalogSource('b', 10.01, 20.005, 12.0)]
        pairs = []
        for star in stars:
            x, y, offscale = projection.project_to_pixel(truth, star.ra, star.dec)
            assert not offscale
            source = DetectedSource(x=x, y=y, peak=500.0, flux=500.0, radius=2,
                                    background=0.0, noise=1.0, threshold=5.0)
            pairs.append(Correspondence(source=source, star=star))
        assert (pairs[0].x, pairs[0].y) == pytest.approx((512.0, 512.0))

        seed = truth.copy()
        seed.crval1 += 3.0 / 3600.0
        seed.crval2 -= 2.0 / 3600.0
        result = fitter.fit(pairs, seed, dimensionality=2)

        assert result.mode == FitMode.SHIFT
        assert np.all(fitter.pixel_residuals(seed, pairs) < 0.1)
        assert seed.cdelt1 == truth.cdelt1

    def test_single_scale_fit(self, fitter, projection, true_transform):
        truth = true_transform.copy()
        truth.cdelt1 *= 1.01
        truth.cdelt2 *= 1.01
        truth.crval1 += 1.5 / 3600.0
        pairs = make_pairs(truth, projection, PIXELS)

        seed = true_transform.copy()
        result = fitter.fit(pairs, seed, dimensionality=3)

        assert result.mode == FitMode.SCALE
        assert result.final_chisqr == pytest.approx(0.0, abs=1e-6)
        assert seed.secpix1 == pytest.approx(truth.secpix1, rel=1e-4)
        assert seed.secpix2 / seed.secpix1 == pytest.approx(1.0)
        assert seed.rotation == 0.0

    def test_axis_scales_fit(self, fitter, projection, true_transform):
        truth = true_transform.copy()
        truth.cdelt1 *= 1.01
        truth.cdelt2 *= 0.99
        truth.rotation = 0.4
        pairs = make_pairs(truth, projection, PIXELS)

        seed = true_transform.copy()
        result = fitter.fit(pairs, seed, dimensionality=5)

        assert result.mode == FitMode.AXIS_SCALES
        assert result.final_chisqr == pytest.approx(0.0, abs=1e-6)
        assert seed.secpix1 == pytest.approx(truth.secpix1, rel=1e-4)
        assert seed.secpix2 == pytest.approx(truth.secpix2, rel=1e-4)
        assert seed.rotation == pytest.approx(0.4, abs=1e-3)

    def test_chip_rotation_fit(self, fitter, projection, true_transform):
        truth = true_transform.copy()
        truth.chip_rotation = 0.5
        truth.cdelt1 *= 1.005
        truth.cdelt2 *= 1.005
        pairs = make_pairs(truth, projection, PIXELS + [(60.0, 60.0)])

        seed = true_transform.copy()
        result = fitter.fit(pairs, seed, dimensionality=6)

        assert result.mode == FitMode.CHIP_ROTATION
        assert result.final_chisqr == pytest.approx(0.0, abs=1e-6)
        # chip rotation about the centre trades off against sky rotation
        assert np.all(fitter.pixel_residuals(seed, pairs) < 1e-3)

    def test_seven_parameter_fit(self, fitter, projection, true_transform):
        truth = true_transform.copy()
        truth.crpix1 += 2.0
        truth.crpix2 -= 1.0
        truth.rotation = 0.3
        pairs = make_pairs(truth, projection, PIXELS + [(60.0, 60.0), (140.0, 120.0)],
                           noise=0.05, seed=11)

        seed = true_transform.copy()
        result = fitter.fit(pairs, seed, dimensionality=7)
        assert result.mode == FitMode.REFERENCE_PIXEL
        assert result.rms < 0.2
        assert result.final_chisqr < result.initial_chisqr

    def test_refine_keeps_best_pairs(self, projection, true_transform):
        pairs = make_pairs(true_transform, projection, PIXELS, noise=0.1, seed=3)
        # one badly mismatched pair
        bad = pairs[2]
        pairs[2] = Correspondence(
            source=DetectedSource(x=bad.x + 6.0, y=bad.y - 5.0, peak=1.0, flux=1.0, radius=2,
                                  background=0.0, noise=1.0, threshold=1.0),
            star=bad.star)

        fitter = ModelFitter(FitConfig(max_evaluations=20000, refine=True), projection)
        seed = true_transform.copy()
        result = fitter.fit(pairs, seed, dimensionality=2)

        assert result.refined
        assert result.n_pairs == 3
        good = [p for i, p in enumerate(pairs) if i != 2]
        assert np.median(fitter.pixel_residuals(seed, good)) < 0.5

    def test_too_few_pairs(self, fitter, projection, true_transform):
        pairs = make_pairs(true_transform, projection, PIXELS[:2])
        with pytest.raises(AmbiguousOrInsufficientMatch):
            fitter.fit(pairs, true_transform.copy(), dimensionality=4)

    def test_three_pairs_constrain_four_parameters(self, fitter, projection, true_transform):
        truth = true_transform.copy()
        truth.rotation = 0.2
        pairs = make_pairs(truth, projection, PIXELS[:3])
        result = fitter.fit(pairs, true_transform.copy(), dimensionality=4)
        assert result.n_pairs == 3
        assert result.final_chisqr < result.initial_chisqr

    def test_evaluation_cap_is_reported(self, projection, true_transform):
        pairs = make_pairs(true_transform, projection, PIXELS, noise=0.2)
        fitter = ModelFitter(FitConfig(max_evaluations=5), projection)
        seed = true_transform.copy()
        seed.crval1 += 5.0 / 3600.0
        with pytest.raises(OptimizerDidNotConverge):
            fitter.fit(pairs, seed, dimensionality=4)
        # the seed is untouched when the fit fails
        assert seed.crval1 == pytest.approx(true_transform.crval1 + 5.0 / 3600.0)

    def test_rms(self):
        result = FitResult(mode=FitMode.SHIFT, parameters=np.zeros(2), evaluations=1,
                           initial_chisqr=8.0, final_chisqr=4.0, n_pairs=4)
        assert result.rms == pytest.approx(math.sqrt(1.0))
