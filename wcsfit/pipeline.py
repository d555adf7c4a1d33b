"""
Astrometric calibration pipeline.

Sequences catalog lookup, source detection, translation matching and
simplex fitting for one image at a time, and writes the fitted WCS
back to the header only when every stage succeeded.

Stages: init -> catalog_fetch -> detect -> match -> fit -> persist -> done,
with any failure going straight to failed.  Failures are terminal for
the current image; the batch loop moves on to the next one.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from astropy.io import fits
from astropy.table import Table

from .catalog import CatalogQuery, CatalogSource, TableCatalog
from .config_manager import CalibrationConfig
from .detection import SourceDetector
from .diagnostics import (CalibrationObserver, LoggingObserver, plot_residuals,
                          residual_table, save_residual_table)
from .fitting import FitResult, ModelFitter
from .image_handler import FitsImageStore, PixelImage
from .matching import CorrespondenceMatcher, MatchResult
from .transform import SkyProjection, TransformModel, transform_from_header, write_transform
from .utils import (AllocationFailure, CalibrationError, DataValidationError,
                    InsufficientCatalogStars, InsufficientImageSources,
                    memory_monitor, timing_context, validate_output_directory)


class PipelineStage(Enum):
    INIT = 'init'
    CATALOG_FETCH = 'catalog_fetch'
    DETECT = 'detect'
    MATCH = 'match'
    FIT = 'fit'
    PERSIST = 'persist'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class StepMetrics:
    name: str
    started_at: float
    ended_at: float
    duration_s: float


@dataclass
class CalibrationResult:
    """Outcome of calibrating one image."""
    success: bool
    stage: PipelineStage
    reason: Optional[str] = None
    failed_stage: Optional[PipelineStage] = None
    error: Optional[Exception] = None
    nominal: Optional[TransformModel] = None
    transform: Optional[TransformModel] = None
    catalog_stars: int = 0
    image_sources: int = 0
    match: Optional[MatchResult] = None
    fit: Optional[FitResult] = None
    residuals: Optional[Table] = None
    mean_separation: Optional[float] = None
    history: Optional[str] = None
    passes: int = 0
    metrics: List[StepMetrics] = field(default_factory=list)

    def to_dict(self) -> Dict:
        payload = {
            'success': self.success,
            'stage': self.stage.value,
            'reason': self.reason,
            'failed_stage': self.failed_stage.value if self.failed_stage else None,
            'catalog_stars': self.catalog_stars,
            'image_sources': self.image_sources,
            'matches': self.match.count if self.match else 0,
            'fit_parameters': int(self.fit.mode) if self.fit else None,
            'fit_rms_pixels': self.fit.rms if self.fit else None,
            'mean_separation_arcsec': self.mean_separation,
            'passes': self.passes,
            'metrics': [asdict(m) for m in self.metrics],
        }
        if self.transform is not None:
            payload['transform'] = asdict(self.transform)
        return payload


@dataclass
class _RunState:
    stage: PipelineStage = PipelineStage.INIT
    metrics: List[StepMetrics] = field(default_factory=list)


def balance_star_counts(n_image: int, n_catalog: int, frac: float,
                        image_fraction: float = 0.0) -> Tuple[int, int]:
    """
    Number of brightest image and catalog stars to use for matching.

    The larger list is cut to ``frac`` times the smaller one.  When the
    catalog search box was enlarged by ``image_fraction``, catalog counts
    are compared per unit image area.
    """
    if image_fraction > 0.0:
        area = image_fraction * image_fraction
        if n_image > n_catalog / area:
            return min(n_image, int(n_catalog * frac / area)), n_catalog
        return n_image, min(n_catalog, int(n_image * area))
    if n_image > n_catalog:
        return min(n_image, int(n_catalog * frac)), n_catalog
    return n_image, min(n_catalog, int(n_image * frac))


class CalibrationPipeline:
    """
    Calibrates image WCS against a reference catalog.

    Parameters:
    -----------
    config : CalibrationConfig, optional
        Default configuration for every run
    catalog : CatalogQuery, optional
        Reference catalog; built from ``config.catalog`` when None
    detector, matcher, fitter : optional
        Component overrides; built from the configuration when None
    projection : SkyProjection, optional
        Projection service shared by all stages
    observer : CalibrationObserver, optional
        Receives stage checkpoints; a LoggingObserver by default
    """

    def __init__(self, config: Optional[CalibrationConfig] = None,
                 catalog: Optional[CatalogQuery] = None,
                 detector: Optional[SourceDetector] = None,
                 matcher: Optional[CorrespondenceMatcher] = None,
                 fitter: Optional[ModelFitter] = None,
                 projection: Optional[SkyProjection] = None,
                 observer: Optional[CalibrationObserver] = None):
        self.config = config or CalibrationConfig()
        self.catalog = catalog
        self.detector = detector
        self.matcher = matcher
        self.fitter = fitter
        self.projection = projection or SkyProjection()
        self.observer = observer or LoggingObserver()
        self.logger = logging.getLogger(__name__)

    def _catalog(self, config: CalibrationConfig) -> CatalogQuery:
        if self.catalog is None:
            self.catalog = TableCatalog.from_config(config.catalog)
        return self.catalog

    @contextmanager
    def _step(self, run: _RunState, stage: PipelineStage):
        run.stage = stage
        self.observer.on_stage(stage)
        started = time.time()
        try:
            with timing_context(stage.value, self.logger):
                yield
        finally:
            ended = time.time()
            run.metrics.append(StepMetrics(stage.value, started, ended, ended - started))

    def calibrate(self, image: PixelImage, header: fits.Header,
                  catalog: Optional[CatalogQuery] = None,
                  config: Optional[CalibrationConfig] = None,
                  name: str = 'image') -> CalibrationResult:
        """
        Calibrate one image.

        Parameters:
        -----------
        image : PixelImage
            Pixel data
        header : astropy.io.fits.Header
            Header giving the nominal WCS; receives the fitted WCS on success
        catalog : CatalogQuery, optional
            Reference catalog for this run
        config : CalibrationConfig, optional
            Configuration for this run
        name : str, default='image'
            Label for logs and residual products

        Returns:
        --------
        CalibrationResult
            Success with the fitted transform, or failure with a reason

        Raises:
        -------
        AllocationFailure
            If working memory could not be allocated
        """
        config = config or self.config
        run = _RunState()
        result = CalibrationResult(success=False, stage=PipelineStage.INIT)

        try:
            if catalog is None:
                catalog = self._catalog(config)
            seed = None
            image_fraction = config.image_fraction
            passes_left = 1 + int(config.iterate) + int(config.recenter)

            while passes_left:
                passes_left -= 1
                result = CalibrationResult(success=False, stage=PipelineStage.INIT,
                                           passes=result.passes)
                self._run_pass(result, image, header, catalog, config, seed,
                               image_fraction, run)
                result.passes += 1
                if result.fit is None or not passes_left:
                    break

                seed = result.transform.copy()
                if config.iterate and result.passes == 1:
                    self.logger.info(f"Iterating {name} from fitted WCS")
                else:
                    cx, cy = seed.chip_center
                    seed.crval1, seed.crval2 = self.projection.project_to_sky(seed, cx, cy)
                    seed.crpix1, seed.crpix2 = cx, cy
                    self.logger.info(f"Recentering {name} on image centre")
                image_fraction = 0.0

            if result.transform is not None:
                with self._step(run, PipelineStage.PERSIST):
                    write_transform(header, result.transform, use_cd=config.use_cd,
                                    mean_separation=result.mean_separation,
                                    history=result.history)
                    self._save_diagnostics(result, config, name)

            run.stage = PipelineStage.DONE
            result.success = True
            result.stage = PipelineStage.DONE

        except AllocationFailure as e:
            self.observer.on_failure(run.stage, e)
            raise
        except MemoryError as e:
            self.observer.on_failure(run.stage, e)
            raise AllocationFailure(f"Out of memory during {run.stage.value}") from e
        except CalibrationError as e:
            self.observer.on_failure(run.stage, e)
            result.success = False
            result.failed_stage = run.stage
            result.stage = PipelineStage.FAILED
            result.reason = str(e)
            result.error = e
            result.transform = None

        result.metrics = run.metrics
        return result

    def _run_pass(self, result: CalibrationResult, image: PixelImage, header: fits.Header,
                  catalog: CatalogQuery, config: CalibrationConfig,
                  seed: Optional[TransformModel], image_fraction: float,
                  run: _RunState) -> CalibrationResult:
        with self._step(run, PipelineStage.INIT):
            if seed is None:
                nominal = transform_from_header(header, config.wcs, self.projection)
            else:
                nominal = seed.copy()
            result.nominal = nominal.copy()

        if config.no_fit or config.fit.fit_parameters < 0:
            self.logger.info("Writing nominal WCS without fitting")
            result.transform = nominal
            result.history = "wcsfit: nominal WCS set from header and overrides"
            return result

        minstars = config.required_stars

        with self._step(run, PipelineStage.CATALOG_FETCH):
            stars = self._fetch_catalog(catalog, nominal, config, image_fraction)
            result.catalog_stars = len(stars)
            self.observer.on_catalog(stars)
            if len(stars) < minstars and (config.fit_wcs or not stars):
                raise InsufficientCatalogStars(
                    f"Found only {len(stars)} of {minstars} reference stars needed")

        with self._step(run, PipelineStage.DETECT):
            detector = self.detector or SourceDetector(config.detection)
            with memory_monitor("source detection", self.logger):
                detections = detector.detect(image)
            detections = sorted(detections, key=lambda s: s.flux, reverse=True)
            result.image_sources = len(detections)
            if len(detections) < minstars and (config.fit_wcs or not detections):
                raise InsufficientImageSources(
                    f"Need at least {minstars} image stars but only found {len(detections)}")

        if not config.fit_wcs:
            result.residuals = residual_table(nominal, detections, stars, self.projection,
                                              config.match.tolerance)
            self.observer.on_residuals(result.residuals)
            result.stage = PipelineStage.DONE
            return result

        n_src, n_cat = balance_star_counts(len(detections), len(stars), config.frac, image_fraction)
        self.logger.info(f"Using brightest {n_src}/{len(detections)} image stars "
                         f"and {n_cat}/{len(stars)} reference stars")
        top_sources = detections[:n_src]
        self.observer.on_detections(top_sources)

        transform = nominal.copy()
        with self._step(run, PipelineStage.MATCH):
            matcher = self.matcher or CorrespondenceMatcher(config.match)
            ref_stars, ref_xy = self._project_catalog(nominal, stars[:n_cat])
            src_xy = np.array([[s.x, s.y] for s in top_sources])
            match = matcher.match(src_xy, ref_xy)
            result.match = match
            self.observer.on_match(match)
            pairs = matcher.correspondences(match, top_sources, ref_stars)
            matcher.apply_translation(transform, match, self.projection)

        with self._step(run, PipelineStage.FIT):
            fitter = self.fitter or ModelFitter(config.fit, self.projection)
            fit = fitter.fit(pairs, transform, dimensionality=config.fit.fit_parameters or None)
            result.fit = fit
            self.observer.on_fit(fit, transform)

        result.transform = transform
        result.residuals = residual_table(transform, detections, stars, self.projection,
                                          config.match.tolerance)
        self.observer.on_residuals(result.residuals)
        result.mean_separation = result.residuals.meta.get('MEANSEP')
        result.history = (f"wcsfit: {int(fit.mode)}-parameter fit to {fit.n_pairs} of "
                          f"{match.count} matches, rms {fit.rms:.3f} px")
        return result

    def _fetch_catalog(self, catalog: CatalogQuery, nominal: TransformModel,
                       config: CalibrationConfig, image_fraction: float) -> List[CatalogSource]:
        box = self.projection.search_box(nominal, image_fraction)
        max_count = config.catalog.max_stars
        if image_fraction > 1.0:
            max_count = int(max_count * image_fraction * image_fraction)

        cat_frame = getattr(catalog, 'frame', nominal.radecsys)
        cat_equinox = getattr(catalog, 'equinox', nominal.equinox)
        center_ra, center_dec = self.projection.convert_equinox(
            box.center_ra, box.center_dec, nominal.radecsys, nominal.equinox,
            cat_frame, cat_equinox)

        stars = catalog.search(center_ra, center_dec, box.half_width_ra, box.half_width_dec,
                               config.catalog.mag_min, config.catalog.mag_max, max_count)

        if stars and (cat_frame, cat_equinox) != (nominal.radecsys, nominal.equinox):
            ra, dec = self.projection.convert_equinox(
                np.array([s.ra for s in stars]), np.array([s.dec for s in stars]),
                cat_frame, cat_equinox, nominal.radecsys, nominal.equinox)
            stars = [replace(s, ra=float(r), dec=float(d)) for s, r, d in zip(stars, ra, dec)]

        self.logger.debug(f"Catalog box ({box.center_ra:.5f}, {box.center_dec:.5f}) "
                          f"+/- ({box.half_width_ra:.5f}, {box.half_width_dec:.5f}) deg: {len(stars)} stars")
        return stars

    def _project_catalog(self, transform: TransformModel, stars: Sequence[CatalogSource]):
        if not stars:
            return [], np.empty((0, 2))
        x, y, _ = self.projection.project_to_pixel(
            transform, np.array([s.ra for s in stars]), np.array([s.dec for s in stars]))
        finite = np.isfinite(x) & np.isfinite(y)
        kept = [s for s, ok in zip(stars, finite) if ok]
        return kept, np.column_stack([x[finite], y[finite]])

    def _save_diagnostics(self, result: CalibrationResult, config: CalibrationConfig, name: str) -> None:
        if not config.residual_dir or result.residuals is None:
            return
        save_residual_table(result.residuals, config.residual_dir, name, config.residual_format)
        if config.plot_residuals:
            plot_residuals(result.residuals, Path(config.residual_dir) / f"{name}_residuals.png",
                           title=name)

    def calibrate_file(self, path: Union[str, Path],
                       output_path: Optional[Union[str, Path]] = None,
                       config: Optional[CalibrationConfig] = None) -> CalibrationResult:
        """
        Calibrate a FITS file, writing the WCS only on success.

        The header is updated in place unless ``output_path`` is given.
        Nothing is written when ``config.write_header`` is False.
        """
        config = config or self.config
        path = Path(path)
        with FitsImageStore(path, output_path=output_path, write=config.write_header,
                            overwrite=True) as store:
            result = self.calibrate(store.image, store.header, config=config, name=path.stem)
            if result.success and result.transform is not None and config.write_header:
                store.commit(result.transform, use_cd=config.use_cd,
                             mean_separation=result.mean_separation,
                             history=result.history)
        return result

    def calibrate_files(self, paths: Sequence[Union[str, Path]],
                        output_dir: Optional[Union[str, Path]] = None,
                        config: Optional[CalibrationConfig] = None) -> Dict[str, CalibrationResult]:
        """
        Calibrate images one after another.

        A failure, including an allocation failure, ends only the
        current image; the loop continues with the next one.
        """
        if output_dir is not None:
            output_dir = validate_output_directory(output_dir)
        results: Dict[str, CalibrationResult] = {}
        for path in paths:
            path = Path(path)
            output_path = output_dir / path.name if output_dir else None
            self.logger.info(f"Calibrating {path.name}")
            try:
                result = self.calibrate_file(path, output_path=output_path, config=config)
            except (AllocationFailure, DataValidationError, OSError) as e:
                self.logger.error(f"{path.name}: {e}")
                result = CalibrationResult(success=False, stage=PipelineStage.FAILED,
                                           reason=str(e), error=e)
            if result.success:
                self.logger.info(f"{path.name}: calibrated in {result.passes} pass(es)")
            else:
                self.logger.warning(f"{path.name}: {result.reason}")
            results[str(path)] = result
        return results


def save_summary(results: Dict[str, CalibrationResult], output_path: Union[str, Path]) -> Path:
    """Write a JSON summary of batch results."""
    output_path = Path(output_path)
    payload = {name: result.to_dict() for name, result in results.items()}
    with open(output_path, 'w') as f:
        json.dump(payload, f, indent=2, default=str)
    return output_path
