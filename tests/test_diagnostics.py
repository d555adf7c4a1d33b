"""
Tests for residual tables, residual products and the logging observer.
"""

import logging

import numpy as np
import pytest
from astropy.table import Table

from wcsfit.catalog import CatalogSource
from wcsfit.detection import DetectedSource
from wcsfit.diagnostics import (LoggingObserver, plot_residuals, residual_table,
                                save_residual_table, summarize_residuals)
from wcsfit.fitting import FitMode, FitResult
from wcsfit.matching import BinPeak, MatchResult
from wcsfit.pipeline import PipelineStage


def detection(x, y):
    return DetectedSource(x=x, y=y, peak=500.0, flux=2000.0, radius=3,
                          background=100.0, noise=5.0, threshold=125.0)


@pytest.fixture
def matched_field(true_transform, projection):
    """Three on-image stars detected 0.5 px left and 0.2 px above, plus strays."""
    pixels = [(40.0, 50.0), (120.0, 80.0), (160.0, 170.0)]
    x = np.array([p[0] for p in pixels])
    y = np.array([p[1] for p in pixels])
    ra, dec = projection.project_to_sky(true_transform, x, y)
    stars = [CatalogSource(id=f"R{i}", ra=float(r), dec=float(d), mag=12.0 + i)
             for i, (r, d) in enumerate(zip(ra, dec))]
    # off the image entirely
    stars.append(CatalogSource(id='far', ra=151.0, dec=20.0, mag=10.0))

    detections = [detection(px + 0.5, py - 0.2) for px, py in pixels]
    # nothing within tolerance
    detections.append(detection(100.0, 150.0))
    return stars, detections


class TestResidualTable:

    def test_pixel_and_sky_residuals(self, matched_field, true_transform, projection):
        stars, detections = matched_field
        table = residual_table(true_transform, detections, stars, projection, tolerance=3.0)

        assert len(table) == 3
        assert list(table['id']) == ['R0', 'R1', 'R2']
        np.testing.assert_allclose(table['dx'], -0.5, atol=1e-6)
        np.testing.assert_allclose(table['dy'], 0.2, atol=1e-6)
        # 1 arcsec/pixel, RA increasing to the left
        np.testing.assert_allclose(table['dra'], 0.5, atol=1e-3)
        np.testing.assert_allclose(table['ddec'], 0.2, atol=1e-3)
        np.testing.assert_allclose(table['sep'], np.hypot(0.5, 0.2), atol=1e-3)

        assert table.meta['NMATCH'] == 3
        assert table.meta['MEANDXY'] == pytest.approx(np.hypot(0.5, 0.2), abs=1e-6)
        assert table.meta['RMSDX'] == pytest.approx(0.5, abs=1e-6)

    def test_undetected_catalog_star_is_listed(self, matched_field, true_transform, projection):
        stars, detections = matched_field
        table = residual_table(true_transform, detections[1:], stars, projection, tolerance=3.0)

        assert list(table['id']) == ['R1', 'R2', 'R0']
        assert list(table['matched']) == [True, True, False]
        missed = table[2]
        assert missed['x_cat'] == pytest.approx(40.0, abs=1e-6)
        assert np.isnan(missed['x']) and np.isnan(missed['sep'])
        # summaries cover matched rows only
        assert table.meta['NMATCH'] == 2
        assert np.isfinite(table.meta['MEANSEP'])

    def test_no_detections_lists_catalog(self, matched_field, true_transform):
        stars, _ = matched_field
        table = residual_table(true_transform, [], stars)
        assert len(table) == 3
        assert not any(table['matched'])
        assert table.meta == {'NMATCH': 0}

    def test_no_inputs(self, true_transform):
        table = residual_table(true_transform, [], [])
        assert len(table) == 0
        assert table.meta == {'NMATCH': 0}
        assert 'sep' in table.colnames

    def test_summarize_empty(self):
        assert summarize_residuals(Table({'dx': [], 'dy': []})) == {'NMATCH': 0}


class TestResidualProducts:

    @pytest.fixture
    def table(self, matched_field, true_transform):
        stars, detections = matched_field
        return residual_table(true_transform, detections, stars)

    @pytest.mark.parametrize("format_type, suffix", [('ecsv', 'ecsv'), ('csv', 'csv'), ('fits', 'fits')])
    def test_save_formats(self, table, tmp_path, format_type, suffix):
        path = save_residual_table(table, tmp_path / 'out', 'field', format_type)
        assert path == tmp_path / 'out' / f'field_residuals.{suffix}'
        assert len(Table.read(path)) == 3

    def test_ecsv_keeps_summary(self, table, tmp_path):
        path = save_residual_table(table, tmp_path, 'field')
        assert Table.read(path).meta['NMATCH'] == 3

    def test_plot(self, table, tmp_path):
        path = plot_residuals(table, tmp_path / 'field.png', title='field')
        assert path.exists()
        assert path.stat().st_size > 0

    def test_plot_empty_table(self, true_transform, tmp_path):
        path = plot_residuals(residual_table(true_transform, [], []), tmp_path / 'empty.png')
        assert path.exists()


class TestLoggingObserver:

    @pytest.fixture
    def observer(self):
        return LoggingObserver(logging.getLogger('wcsfit.test.observer'), verbose=True)

    def test_reports_checkpoints(self, observer, matched_field, true_transform, caplog):
        stars, detections = matched_field
        match = MatchResult(dx=1.0, dy=-2.0, count=3, pairs=[(0, 0), (1, 1), (2, 2)],
                            history=[BinPeak(count=3, dx=1.0, dy=-2.0)])
        fit = FitResult(mode=FitMode.ROTATION, parameters=np.zeros(4), evaluations=120,
                        initial_chisqr=4.0, final_chisqr=0.03, n_pairs=3)

        with caplog.at_level(logging.DEBUG, logger='wcsfit.test.observer'):
            observer.on_stage(PipelineStage.MATCH, sources=4)
            observer.on_catalog(stars)
            observer.on_detections(detections)
            observer.on_match(match)
            observer.on_fit(fit, true_transform)
            observer.on_residuals(residual_table(true_transform, detections, stars))
            observer.on_failure(PipelineStage.FIT, RuntimeError("no convergence"))

        text = caplog.text
        assert "Using 4 reference stars" in text
        assert "Using 4 image sources" in text
        assert "3 bin hits" in text
        assert "Fit (4 parameters, 3 pairs)" in text
        assert "3 matches" in text
        assert "no convergence" in text

    def test_warns_without_matches(self, observer, true_transform, caplog):
        with caplog.at_level(logging.WARNING, logger='wcsfit.test.observer'):
            observer.on_residuals(residual_table(true_transform, [], []))
        assert "No catalog stars matched" in caplog.text
