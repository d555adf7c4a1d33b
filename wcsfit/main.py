"""
Command-line entry point for wcsfit.

Calibrates the world coordinate system of one or more FITS images
against a reference star catalog and, when asked to, writes the fitted
WCS back to each image header.
"""

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .config_manager import CalibrationConfig, load_config
from .diagnostics import LoggingObserver
from .pipeline import CalibrationPipeline, save_summary
from .utils import AllocationFailure, ConfigurationError, DataValidationError, setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wcsfit',
        description='Fit image WCS to a reference star catalog')
    parser.add_argument('images', nargs='+', help='FITS images to calibrate')
    parser.add_argument('--config', '-c', type=str, default=None,
                        help='Path to YAML configuration file')
    parser.add_argument('--log-level', '-l', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Also write a full debug log to this file')

    parser.add_argument('--catalog', '-r', type=str, default=None,
                        help='Reference catalog file (any format astropy Table can read)')
    parser.add_argument('--rotation', '-a', type=float, default=None,
                        help='Initial rotation angle in degrees')
    parser.add_argument('--secpix', '-p', type=float, default=None,
                        help='Initial plate scale in arcsec/pixel')
    parser.add_argument('--center', nargs=2, type=float, metavar=('RA', 'DEC'), default=None,
                        help='Initial reference sky position in degrees')
    parser.add_argument('--refpix', nargs=2, type=float, metavar=('X', 'Y'), default=None,
                        help='Initial reference pixel')
    parser.add_argument('--equinox', '-e', type=float, default=None,
                        help='Equinox of the output WCS')

    parser.add_argument('--mag-limits', '-m', nargs=2, type=float, metavar=('M1', 'M2'),
                        default=None, help='Catalog magnitude limits')
    parser.add_argument('--nfit', '-n', type=int, default=None,
                        help='Parameters to fit (2-7, 0 for automatic, negative for none)')
    parser.add_argument('--max-catalog', '-u', type=int, default=None,
                        help='Maximum number of catalog stars')
    parser.add_argument('--frac', '-f', type=float, default=None,
                        help='Allowed excess of image over catalog stars')
    parser.add_argument('--imfrac', '-z', type=float, default=None,
                        help='Enlarge the catalog search area by this factor')
    parser.add_argument('--tolerance', '-t', type=float, default=None,
                        help='Match tolerance in pixels')
    parser.add_argument('--refine', action='store_true',
                        help='Refit with the best-matching pairs only')

    parser.add_argument('--iterate', '-i', action='store_true',
                        help='Repeat the fit starting from the first solution')
    parser.add_argument('--recenter', '-j', action='store_true',
                        help='Refit with the reference pixel at the image centre')
    parser.add_argument('--write', '-w', action='store_true',
                        help='Write the fitted WCS into the image header')
    parser.add_argument('--output', '-o', type=str, default=None,
                        help='Write calibrated image(s) here instead of updating in place')
    parser.add_argument('--cd', action='store_true',
                        help='Write a CD matrix instead of CDELT/CROTA')
    parser.add_argument('--residuals', type=str, default=None, metavar='DIR',
                        help='Save residual tables to this directory')
    parser.add_argument('--plot', action='store_true',
                        help='Save residual plots alongside the tables')
    parser.add_argument('--summary', type=str, default=None,
                        help='Write a JSON summary of all results')
    return parser


def build_config(args: argparse.Namespace) -> CalibrationConfig:
    """Apply command-line options on top of the configuration file."""
    config = load_config(args.config) if args.config else CalibrationConfig()

    catalog = config.catalog
    if args.catalog:
        catalog = replace(catalog, path=args.catalog)
    if args.mag_limits:
        catalog = replace(catalog, mag_min=args.mag_limits[0], mag_max=args.mag_limits[1])
    if args.max_catalog is not None:
        catalog = replace(catalog, max_stars=args.max_catalog)

    wcs = config.wcs
    if args.rotation is not None:
        wcs = replace(wcs, rotation=args.rotation)
    if args.secpix is not None:
        wcs = replace(wcs, secpix=args.secpix)
    if args.center:
        wcs = replace(wcs, center_ra=args.center[0], center_dec=args.center[1])
    if args.refpix:
        wcs = replace(wcs, refpix_x=args.refpix[0], refpix_y=args.refpix[1])
    if args.equinox is not None:
        wcs = replace(wcs, equinox=args.equinox)

    fit = config.fit
    if args.nfit is not None:
        fit = replace(fit, fit_parameters=args.nfit)
    if args.refine:
        fit = replace(fit, refine=True)

    match = config.match
    if args.tolerance is not None:
        match = replace(match, tolerance=args.tolerance)

    options = dict(catalog=catalog, wcs=wcs, fit=fit, match=match,
                   write_header=args.write or args.output is not None)
    if args.frac is not None:
        options['frac'] = args.frac
    if args.imfrac is not None:
        options['image_fraction'] = args.imfrac
    if args.iterate:
        options['iterate'] = True
    if args.recenter:
        options['recenter'] = True
    if args.cd:
        options['use_cd'] = True
    if args.residuals:
        options['residual_dir'] = args.residuals
    if args.plot:
        options['plot_residuals'] = True

    return config.with_overrides(**options)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run wcsfit from the command line.

    Returns 0 when every image calibrated and 1 otherwise.
    """
    args = build_parser().parse_args(argv)
    logger = setup_logging(level=args.log_level, log_file=args.log_file)

    try:
        config = build_config(args)
        pipeline = CalibrationPipeline(
            config, observer=LoggingObserver(verbose=args.log_level == 'DEBUG'))

        output = Path(args.output) if args.output else None
        if output is not None and len(args.images) == 1 and not output.is_dir():
            results = {args.images[0]: pipeline.calibrate_file(args.images[0], output_path=output)}
        else:
            results = pipeline.calibrate_files(args.images, output_dir=output)

    except KeyboardInterrupt:
        print("\nCalibration interrupted by user")
        return 1
    except (ConfigurationError, DataValidationError, AllocationFailure, OSError) as e:
        logger.error(f"Calibration failed: {e}")
        return 1

    for name, result in results.items():
        if result.success and result.transform is not None:
            print(f"{name}: {result.transform.describe()}")
        elif result.success:
            print(f"{name}: checked against {result.catalog_stars} catalog stars")
        else:
            print(f"{name}: FAILED ({result.reason})")

    if args.summary:
        save_summary(results, args.summary)

    return 0 if all(r.success for r in results.values()) else 1


if __name__ == '__main__':
    sys.exit(main())
