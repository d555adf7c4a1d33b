"""
Configuration Management for the wcsfit calibration engine

This module defines the immutable configuration values threaded through
detection, matching, fitting and the calibration pipeline, and a
manager that loads, validates and saves them as YAML.
"""

import logging
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .utils import ConfigurationError, validate_file_exists


@dataclass(frozen=True)
class DetectionConfig:
    """Configuration for star-like source detection."""
    star_sigma: float = 5.0         # detection threshold in local sigmas
    border: int = 10                # ignore this many pixels at each edge
    min_peak: float = 10.0          # absolute peak floor
    min_radius: int = 1
    max_radius: int = 20
    min_separation: float = 10.0    # pixels between accepted sources
    max_walk: int = 20              # farthest peak walk from the seed pixel
    stat_pixels: int = 25           # width of left/right statistics windows
    stat_interval: int = 10         # recompute local statistics every N columns
    saturation: Optional[float] = 65535.0
    noise_iterations: int = 5
    noise_rows: int = 10            # height of the central noise swath
    max_sources: int = 10000


@dataclass(frozen=True)
class MatchConfig:
    """Configuration for translation-voting correspondence matching."""
    tolerance: float = 10.0         # +/- pixels counted as a hit
    min_bin: int = 2
    peak_history: int = 20


@dataclass(frozen=True)
class FitConfig:
    """Configuration for the simplex transform fit."""
    fit_parameters: int = 0         # 0 derives the dimensionality from the match count
    ftol: float = 1.0e-7
    max_evaluations: int = 3000
    refine: bool = False
    position_step: float = 5.0      # pixels
    scale_step: float = 0.03        # fraction of the plate scale
    rotation_step: float = 0.5      # degrees
    refpix_step: float = 10.0       # pixels


@dataclass(frozen=True)
class CatalogConfig:
    """Configuration for the reference catalog search."""
    path: Optional[str] = None
    mag_min: float = 0.0
    mag_max: float = 0.0
    max_stars: int = 50
    class_code: Optional[int] = None
    id_column: str = 'id'
    ra_column: str = 'ra'
    dec_column: str = 'dec'
    mag_column: str = 'mag'
    class_column: str = 'class'
    frame: str = 'FK5'
    equinox: float = 2000.0

    def __post_init__(self):
        if self.max_stars < 1:
            object.__setattr__(self, 'max_stars', 25)
        elif self.max_stars > 200:
            object.__setattr__(self, 'max_stars', 200)


@dataclass(frozen=True)
class WCSOverrides:
    """Nominal WCS values that replace or supplement the image header."""
    center_ra: Optional[float] = None     # degrees
    center_dec: Optional[float] = None    # degrees
    secpix: Optional[float] = None        # arcsec/pixel
    secpix2: Optional[float] = None
    rotation: Optional[float] = None      # degrees
    refpix_x: Optional[float] = None
    refpix_y: Optional[float] = None
    equinox: Optional[float] = None
    projection: str = 'TAN'
    ra_increases_left: bool = True


@dataclass(frozen=True)
class CalibrationConfig:
    """Top-level configuration for one or more calibration runs."""
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    match: MatchConfig = field(default_factory=MatchConfig)
    fit: FitConfig = field(default_factory=FitConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    wcs: WCSOverrides = field(default_factory=WCSOverrides)
    min_stars: int = 3
    frac: float = 1.0
    image_fraction: float = 0.0
    fit_wcs: bool = True
    no_fit: bool = False
    iterate: bool = False
    recenter: bool = False
    write_header: bool = True
    use_cd: bool = False
    residual_dir: Optional[str] = None
    residual_format: str = 'ecsv'
    plot_residuals: bool = False

    def __post_init__(self):
        if self.frac < 1.0:
            object.__setattr__(self, 'frac', 1.0 + self.frac)
        if self.image_fraction < 0.0:
            object.__setattr__(self, 'image_fraction', 1.0)

    @property
    def required_stars(self) -> int:
        """Minimum number of catalog and image stars for a fit."""
        if self.fit.fit_parameters == 2:
            return min(self.min_stars, 2)
        return self.min_stars

    def with_overrides(self, **sections: Any) -> 'CalibrationConfig':
        """Return a copy with whole sections or top-level fields replaced."""
        return replace(self, **sections)


class ConfigManager:
    """
    Manages configuration loading, validation, and access for wcsfit.

    The YAML layout has one mapping per section: ``detection``,
    ``matching``, ``fitting``, ``catalog``, ``wcs`` and ``pipeline``.
    Missing keys fall back to the dataclass defaults.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the configuration manager.

        Parameters:
        -----------
        config_path : str, optional
            Path to the configuration file. If None, loads default configuration.
        """
        self.logger = logging.getLogger(__name__)
        self.config_path = config_path
        self.config = CalibrationConfig()

        if config_path:
            self.load_config(config_path)
        else:
            self.load_default_config()

    def load_config(self, config_path: Union[str, Path]) -> None:
        """
        Load configuration from a YAML file with validation.

        Raises:
        -------
        FileNotFoundError
            If the configuration file doesn't exist
        ConfigurationError
            If the YAML is malformed or fails validation
        """
        config_path = validate_file_exists(config_path, "Configuration file")

        try:
            with open(config_path, 'r') as file:
                raw_config = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing YAML file {config_path}: {e}")

        if raw_config is None:
            raw_config = {}
        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Configuration file {config_path} must hold a mapping")

        self.config = self._validate_and_parse_config(raw_config)
        self.validate_configuration()
        self.logger.info(f"Successfully loaded configuration from {config_path}")

    def load_default_config(self) -> None:
        """Load default configuration values."""
        self.config = CalibrationConfig()
        self.logger.info("Loaded default configuration")

    def _validate_and_parse_config(self, raw_config: Dict[str, Any]) -> CalibrationConfig:
        pipeline = raw_config.get('pipeline', {}) or {}
        known = {f for f in CalibrationConfig.__dataclass_fields__}
        unknown = set(pipeline) - known
        if unknown:
            self.logger.warning(f"Ignoring unknown pipeline options: {sorted(unknown)}")

        return CalibrationConfig(
            detection=self._parse_detection_config(raw_config.get('detection', {}) or {}),
            match=self._parse_match_config(raw_config.get('matching', {}) or {}),
            fit=self._parse_fit_config(raw_config.get('fitting', {}) or {}),
            catalog=self._parse_catalog_config(raw_config.get('catalog', {}) or {}),
            wcs=self._parse_wcs_overrides(raw_config.get('wcs', {}) or {}),
            min_stars=int(pipeline.get('min_stars', 3)),
            frac=float(pipeline.get('frac', 1.0)),
            image_fraction=float(pipeline.get('image_fraction', 0.0)),
            fit_wcs=bool(pipeline.get('fit_wcs', True)),
            no_fit=bool(pipeline.get('no_fit', False)),
            iterate=bool(pipeline.get('iterate', False)),
            recenter=bool(pipeline.get('recenter', False)),
            write_header=bool(pipeline.get('write_header', True)),
            use_cd=bool(pipeline.get('use_cd', False)),
            residual_dir=pipeline.get('residual_dir'),
            residual_format=pipeline.get('residual_format', 'ecsv'),
            plot_residuals=bool(pipeline.get('plot_residuals', False)),
        )

    def _parse_detection_config(self, detection_config: Dict[str, Any]) -> DetectionConfig:
        """Parse source detection configuration."""
        defaults = DetectionConfig()
        saturation = detection_config.get('saturation', defaults.saturation)
        return DetectionConfig(
            star_sigma=float(detection_config.get('star_sigma', defaults.star_sigma)),
            border=int(detection_config.get('border', defaults.border)),
            min_peak=float(detection_config.get('min_peak', defaults.min_peak)),
            min_radius=int(detection_config.get('min_radius', defaults.min_radius)),
            max_radius=int(detection_config.get('max_radius', defaults.max_radius)),
            min_separation=float(detection_config.get('min_separation', defaults.min_separation)),
            max_walk=int(detection_config.get('max_walk', defaults.max_walk)),
            stat_pixels=int(detection_config.get('stat_pixels', defaults.stat_pixels)),
            stat_interval=int(detection_config.get('stat_interval', defaults.stat_interval)),
            saturation=None if saturation is None else float(saturation),
            noise_iterations=int(detection_config.get('noise_iterations', defaults.noise_iterations)),
            noise_rows=int(detection_config.get('noise_rows', defaults.noise_rows)),
            max_sources=int(detection_config.get('max_sources', defaults.max_sources)),
        )

    def _parse_match_config(self, match_config: Dict[str, Any]) -> MatchConfig:
        """Parse matching configuration."""
        return MatchConfig(
            tolerance=float(match_config.get('tolerance', 10.0)),
            min_bin=int(match_config.get('min_bin', 2)),
            peak_history=int(match_config.get('peak_history', 20)),
        )

    def _parse_fit_config(self, fit_config: Dict[str, Any]) -> FitConfig:
        """Parse fitting configuration."""
        defaults = FitConfig()
        return FitConfig(
            fit_parameters=int(fit_config.get('fit_parameters', defaults.fit_parameters)),
            ftol=float(fit_config.get('ftol', defaults.ftol)),
            max_evaluations=int(fit_config.get('max_evaluations', defaults.max_evaluations)),
            refine=bool(fit_config.get('refine', defaults.refine)),
            position_step=float(fit_config.get('position_step', defaults.position_step)),
            scale_step=float(fit_config.get('scale_step', defaults.scale_step)),
            rotation_step=float(fit_config.get('rotation_step', defaults.rotation_step)),
            refpix_step=float(fit_config.get('refpix_step', defaults.refpix_step)),
        )

    def _parse_catalog_config(self, catalog_config: Dict[str, Any]) -> CatalogConfig:
        """Parse reference catalog configuration."""
        defaults = CatalogConfig()
        limits = catalog_config.get('mag_limits', [defaults.mag_min, defaults.mag_max])
        if len(limits) != 2:
            raise ConfigurationError(f"catalog.mag_limits needs two values, got {limits}")
        class_code = catalog_config.get('class_code')
        return CatalogConfig(
            path=catalog_config.get('path'),
            mag_min=float(limits[0]),
            mag_max=float(limits[1]),
            max_stars=int(catalog_config.get('max_stars', defaults.max_stars)),
            class_code=None if class_code is None else int(class_code),
            id_column=catalog_config.get('id_column', defaults.id_column),
            ra_column=catalog_config.get('ra_column', defaults.ra_column),
            dec_column=catalog_config.get('dec_column', defaults.dec_column),
            mag_column=catalog_config.get('mag_column', defaults.mag_column),
            class_column=catalog_config.get('class_column', defaults.class_column),
            frame=str(catalog_config.get('frame', defaults.frame)).upper(),
            equinox=float(catalog_config.get('equinox', defaults.equinox)),
        )

    def _parse_wcs_overrides(self, wcs_config: Dict[str, Any]) -> WCSOverrides:
        """Parse nominal WCS overrides."""
        def _opt(key):
            value = wcs_config.get(key)
            return None if value is None else float(value)

        center = wcs_config.get('center')
        refpix = wcs_config.get('refpix')
        return WCSOverrides(
            center_ra=float(center[0]) if center else _opt('center_ra'),
            center_dec=float(center[1]) if center else _opt('center_dec'),
            secpix=_opt('secpix'),
            secpix2=_opt('secpix2'),
            rotation=_opt('rotation'),
            refpix_x=float(refpix[0]) if refpix else _opt('refpix_x'),
            refpix_y=float(refpix[1]) if refpix else _opt('refpix_y'),
            equinox=_opt('equinox'),
            projection=str(wcs_config.get('projection', 'TAN')).upper(),
            ra_increases_left=bool(wcs_config.get('ra_increases_left', True)),
        )

    def get_config(self) -> CalibrationConfig:
        """Get the full calibration configuration."""
        return self.config

    def get_detection_config(self) -> DetectionConfig:
        """Get source detection configuration."""
        return self.config.detection

    def get_match_config(self) -> MatchConfig:
        """Get matching configuration."""
        return self.config.match

    def get_fit_config(self) -> FitConfig:
        """Get fitting configuration."""
        return self.config.fit

    def get_catalog_config(self) -> CatalogConfig:
        """Get catalog configuration."""
        return self.config.catalog

    def validate_configuration(self) -> bool:
        """
        Perform validation of the loaded configuration.

        Returns:
        --------
        bool
            True if configuration is valid

        Raises:
        -------
        ConfigurationError
            If configuration validation fails
        """
        errors: List[str] = []
        det = self.config.detection
        fit = self.config.fit

        if det.star_sigma <= 0:
            errors.append("detection.star_sigma must be positive")
        if det.border < 1:
            errors.append("detection.border must be at least 1")
        if not 1 <= det.min_radius <= det.max_radius:
            errors.append("detection radii must satisfy 1 <= min_radius <= max_radius")
        if det.stat_pixels < 2:
            errors.append("detection.stat_pixels must be at least 2")
        if det.stat_interval < 1:
            errors.append("detection.stat_interval must be at least 1")
        if det.noise_iterations < 1:
            errors.append("detection.noise_iterations must be at least 1")
        if det.max_sources < 1:
            errors.append("detection.max_sources must be at least 1")

        if self.config.match.tolerance <= 0:
            errors.append("matching.tolerance must be positive")
        if self.config.match.min_bin < 1:
            errors.append("matching.min_bin must be at least 1")

        if fit.fit_parameters > 7 or fit.fit_parameters == 1:
            errors.append("fitting.fit_parameters must be 2..7, 0 (automatic) or negative (no fit)")
        if fit.ftol <= 0:
            errors.append("fitting.ftol must be positive")
        if fit.max_evaluations < 1:
            errors.append("fitting.max_evaluations must be at least 1")

        if self.config.min_stars < 2:
            errors.append("pipeline.min_stars must be at least 2")
        if self.config.residual_format not in ('ecsv', 'fits', 'csv'):
            errors.append("pipeline.residual_format must be one of ecsv, fits, csv")
        if self.config.wcs.projection not in ('TAN', 'SIN', 'ARC', 'STG', 'CAR'):
            errors.append(f"Unsupported projection {self.config.wcs.projection}")

        if errors:
            for error in errors:
                self.logger.error(error)
            raise ConfigurationError("; ".join(errors))

        self.logger.debug("Configuration validation passed")
        return True

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the current configuration as YAML."""
        cfg = self.config
        payload = {
            'detection': asdict(cfg.detection),
            'matching': asdict(cfg.match),
            'fitting': asdict(cfg.fit),
            'catalog': asdict(cfg.catalog),
            'wcs': asdict(cfg.wcs),
            'pipeline': {
                key: getattr(cfg, key) for key in (
                    'min_stars', 'frac', 'image_fraction', 'fit_wcs', 'no_fit',
                    'iterate', 'recenter', 'write_header', 'use_cd',
                    'residual_dir', 'residual_format', 'plot_residuals')
            },
        }
        catalog = payload['catalog']
        catalog['mag_limits'] = [catalog.pop('mag_min'), catalog.pop('mag_max')]

        with open(output_path, 'w') as file:
            yaml.safe_dump(payload, file, default_flow_style=False, sort_keys=False)
        self.logger.info(f"Configuration saved to {output_path}")


def load_config(config_path: Optional[Union[str, Path]] = None) -> CalibrationConfig:
    """
    Load a calibration configuration.

    Parameters:
    -----------
    config_path : str or Path, optional
        YAML file to read. Defaults are returned when None.

    Returns:
    --------
    CalibrationConfig
        Validated configuration
    """
    manager = ConfigManager(str(config_path) if config_path else None)
    return manager.get_config()
