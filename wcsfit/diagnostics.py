"""
Calibration diagnostics.

Provides the observer interface the pipeline notifies at each stage,
a logging implementation of it, and the residual table comparing
catalog stars projected through a transform with the nearest detected
sources.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import matplotlib.pyplot as plt
import numpy as np
from astropy.table import Table
from scipy.spatial import cKDTree

from .catalog import CatalogSource
from .detection import DetectedSource
from .transform import SkyProjection, TransformModel
from .utils import validate_output_directory


class CalibrationObserver:
    """Receives pipeline checkpoints; every hook is a no-op by default."""

    def on_stage(self, stage, **info: Any) -> None:
        pass

    def on_catalog(self, stars: Sequence[CatalogSource]) -> None:
        pass

    def on_detections(self, sources: Sequence[DetectedSource]) -> None:
        pass

    def on_match(self, result) -> None:
        pass

    def on_fit(self, result, transform: TransformModel) -> None:
        pass

    def on_residuals(self, table: Table) -> None:
        pass

    def on_failure(self, stage, error: Exception) -> None:
        pass


class LoggingObserver(CalibrationObserver):
    """Observer that reports each checkpoint through logging."""

    def __init__(self, logger: Optional[logging.Logger] = None, verbose: bool = False):
        self.logger = logger or logging.getLogger(__name__)
        self.verbose = verbose

    def on_stage(self, stage, **info):
        details = " ".join(f"{k}={v}" for k, v in info.items())
        self.logger.debug(f"Stage {stage.value}{' ' + details if details else ''}")

    def on_catalog(self, stars):
        if stars:
            self.logger.info(f"Using {len(stars)} reference stars down to mag {stars[-1].mag:.2f}")
        if self.verbose:
            for star in stars:
                self.logger.debug(f"  {star.id:>12s} {star.ra:11.6f} {star.dec:+11.6f} {star.mag:6.2f}")

    def on_detections(self, sources):
        self.logger.info(f"Using {len(sources)} image sources")
        if self.verbose:
            for i, src in enumerate(sources, 1):
                self.logger.debug(f"  {i:4d} {src.x:8.2f} {src.y:8.2f} flux={src.flux:10.1f} peak={src.peak:8.1f}")

    def on_match(self, result):
        self.logger.info(f"{result.count} bin hits at dx={result.dx:.2f} dy={result.dy:.2f}")
        for peak in result.history:
            self.logger.debug(f"  {peak.count} bins at dx={peak.dx:.1f} dy={peak.dy:.1f}")

    def on_fit(self, result, transform):
        self.logger.info(f"Fit ({int(result.mode)} parameters, {result.n_pairs} pairs): "
                         f"rms={result.rms:.3f} px; {transform.describe()}")

    def on_residuals(self, table):
        meta = table.meta
        if not meta.get('NMATCH'):
            self.logger.warning("No catalog stars matched within tolerance")
            return
        self.logger.info(f"{meta['NMATCH']} matches: mean dx={meta['MEANDX']:.4f}/{meta['RMSDX']:.4f} "
                         f"dy={meta['MEANDY']:.4f}/{meta['RMSDY']:.4f} dxy={meta['MEANDXY']:.4f}")
        self.logger.info(f"Mean dra={meta['MEANDRA']:.4f}/{meta['RMSDRA']:.4f} "
                         f"ddec={meta['MEANDDEC']:.4f}/{meta['RMSDDEC']:.4f} sep={meta['MEANSEP']:.4f} arcsec")
        if self.verbose:
            for row in table:
                self.logger.debug(f"  {row['id']:>12s} {row['mag']:6.2f} {row['x']:8.2f} {row['y']:8.2f} "
                                  f"{row['dra']:7.2f} {row['ddec']:7.2f} {row['sep']:7.2f}")

    def on_failure(self, stage, error):
        self.logger.error(f"Calibration failed during {stage.value}: {error}")


_COLUMNS = ('id', 'ra', 'dec', 'mag', 'x', 'y', 'x_cat', 'y_cat',
            'dx', 'dy', 'dra', 'ddec', 'sep', 'matched')


def residual_table(transform: TransformModel,
                   detections: Sequence[DetectedSource],
                   stars: Sequence[CatalogSource],
                   projection: Optional[SkyProjection] = None,
                   tolerance: float = 10.0) -> Table:
    """
    Compare detected sources with catalog stars under a transform.

    Each detected source is paired with the nearest on-image catalog
    star within ``tolerance`` pixels.  Pixel residuals are catalog
    minus image; sky residuals are in arcseconds, with the RA term
    scaled by cos(dec).  On-image catalog stars that no source claimed
    follow the matched rows with ``matched`` False and NaN residuals.

    Returns:
    --------
    astropy.table.Table
        Matched rows, then unmatched catalog stars; summary statistics
        of the matched rows in ``meta``
    """
    projection = projection or SkyProjection()
    rows: Dict[str, list] = {name: [] for name in _COLUMNS}

    def add_row(star, x_cat, y_cat, x=np.nan, y=np.nan, dra=np.nan, ddec=np.nan, sep=np.nan):
        rows['id'].append(star.id)
        rows['ra'].append(star.ra)
        rows['dec'].append(star.dec)
        rows['mag'].append(star.mag)
        rows['x'].append(x)
        rows['y'].append(y)
        rows['x_cat'].append(x_cat)
        rows['y_cat'].append(y_cat)
        rows['dx'].append(x_cat - x)
        rows['dy'].append(y_cat - y)
        rows['dra'].append(dra)
        rows['ddec'].append(ddec)
        rows['sep'].append(sep)
        rows['matched'].append(bool(np.isfinite(x)))

    if stars:
        ra = np.array([s.ra for s in stars])
        dec = np.array([s.dec for s in stars])
        gx, gy, offscale = projection.project_to_pixel(transform, ra, dec)
        usable = np.nonzero(~np.atleast_1d(offscale))[0]
        claimed = set()

        if usable.size and detections:
            tree = cKDTree(np.column_stack([gx[usable], gy[usable]]))
            sxy = np.array([[d.x, d.y] for d in detections])
            dist, idx = tree.query(sxy, k=1, distance_upper_bound=tolerance)
            matched = np.nonzero(np.isfinite(dist))[0]

            if matched.size:
                src_ra, src_dec = projection.project_to_sky(transform, sxy[matched, 0], sxy[matched, 1])
                src_ra = np.atleast_1d(src_ra)
                src_dec = np.atleast_1d(src_dec)
                g_all = usable[idx[matched]]
                sep = 3600.0 * np.atleast_1d(projection.angular_separation(
                    ra[g_all], dec[g_all], src_ra, src_dec))
                for k, i in enumerate(matched):
                    g = g_all[k]
                    star = stars[g]
                    dra = ((star.ra - src_ra[k] + 180.0) % 360.0 - 180.0) * np.cos(np.radians(src_dec[k]))
                    add_row(star, gx[g], gy[g], sxy[i, 0], sxy[i, 1],
                            3600.0 * dra, 3600.0 * (star.dec - src_dec[k]), sep[k])
                    claimed.add(int(g))

        for g in usable:
            if int(g) not in claimed:
                add_row(stars[g], gx[g], gy[g])

    dtypes = ['U32'] + ['f8'] * (len(_COLUMNS) - 2) + [bool]
    table = Table([rows[name] for name in _COLUMNS], names=_COLUMNS, dtype=dtypes)
    table.meta.update(summarize_residuals(table))
    return table


def summarize_residuals(table: Table) -> Dict[str, float]:
    """Mean and RMS residuals in pixels and arcseconds over matched rows."""
    if 'matched' in table.colnames:
        table = table[table['matched']]
    n = len(table)
    summary: Dict[str, float] = {'NMATCH': n}
    if n == 0:
        return summary

    dx = np.asarray(table['dx'])
    dy = np.asarray(table['dy'])
    dra = np.asarray(table['dra'])
    ddec = np.asarray(table['ddec'])
    summary.update({
        'MEANDX': float(dx.mean()),
        'RMSDX': float(np.sqrt(np.mean(dx * dx))),
        'MEANDY': float(dy.mean()),
        'RMSDY': float(np.sqrt(np.mean(dy * dy))),
        'MEANDXY': float(np.mean(np.hypot(dx, dy))),
        'MEANDRA': float(dra.mean()),
        'RMSDRA': float(np.sqrt(np.mean(dra * dra))),
        'MEANDDEC': float(ddec.mean()),
        'RMSDDEC': float(np.sqrt(np.mean(ddec * ddec))),
        'MEANSEP': float(np.mean(table['sep'])),
    })
    return summary


def save_residual_table(table: Table, output_dir: Union[str, Path], stem: str,
                        format_type: str = 'ecsv') -> Path:
    """Write the residual table next to other run products."""
    output_dir = validate_output_directory(output_dir)
    suffix = {'ecsv': 'ecsv', 'fits': 'fits', 'csv': 'csv'}[format_type]
    output_path = output_dir / f"{stem}_residuals.{suffix}"
    fmt = {'ecsv': 'ascii.ecsv', 'fits': 'fits', 'csv': 'csv'}[format_type]
    table.write(output_path, format=fmt, overwrite=True)
    logging.getLogger(__name__).info(f"Saved residual table: {output_path}")
    return output_path


def plot_residuals(table: Table, output_path: Union[str, Path],
                   title: Optional[str] = None, scale: float = 50.0) -> Path:
    """
    Save a quiver plot of pixel residuals.

    Parameters:
    -----------
    table : astropy.table.Table
        Output of residual_table
    output_path : str or Path
        Image file to write
    title : str, optional
        Plot title
    scale : float, default=50.0
        Arrow magnification
    """
    output_path = Path(output_path)
    fig, ax = plt.subplots(figsize=(8, 8))
    try:
        matched = table[table['matched']] if 'matched' in table.colnames else table
        if len(matched):
            ax.quiver(matched['x'], matched['y'], matched['dx'], matched['dy'],
                      angles='xy', scale_units='xy', scale=1.0 / scale, color='tab:red')
            ax.scatter(matched['x'], matched['y'], s=8, color='k')
        if len(matched) < len(table):
            missed = table[~table['matched']]
            ax.scatter(missed['x_cat'], missed['y_cat'], s=30, facecolors='none',
                       edgecolors='tab:blue', label='unmatched catalog star')
            ax.legend(loc='upper right')
        ax.set_xlabel('x (pixels)')
        ax.set_ylabel('y (pixels)')
        ax.set_aspect('equal')
        rms = table.meta.get('MEANDXY')
        label = title or 'Catalog - image residuals'
        if rms is not None:
            label += f" (mean |d| = {rms:.3f} px, x{scale:g})"
        ax.set_title(label)
        plt.savefig(output_path, dpi=150, bbox_inches='tight')
    finally:
        plt.close(fig)
    logging.getLogger(__name__).info(f"Saved residual plot: {output_path}")
    return output_path
