"""
Transform refinement by downhill simplex minimisation.

The fitter varies between two and seven offsets from a seed transform
(reference position, plate scales, rotation and either a chip rotation
or a reference pixel shift) to minimise the summed squared pixel
distance between projected catalog stars and their matched image
sources.
"""

import logging
import math
from dataclasses import dataclass, fields
from enum import IntEnum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .config_manager import FitConfig
from .matching import Correspondence
from .transform import SkyProjection, TransformModel
from .utils import AmbiguousOrInsufficientMatch, OptimizerDidNotConverge

# Reflection, contraction and expansion coefficients
ALPHA = 1.0
BETA = 0.5
GAMMA = 2.0
TINY = 1.0e-10


class FitMode(IntEnum):
    """Which transform terms are free; the value is the parameter count."""
    SHIFT = 2
    SCALE = 3
    ROTATION = 4
    AXIS_SCALES = 5
    CHIP_ROTATION = 6
    REFERENCE_PIXEL = 7

    @property
    def min_pairs(self) -> int:
        """
        Fewest pairs a fit in this mode accepts: ceil((n + 1) / 2).

        Each pair contributes an x and a y residual, so this is fewer than
        the n + 1 pairs a one-equation-per-pair count would need.  A
        4-parameter fit runs on 3 pairs and a shift fit on 2.  The
        refinement pass still keeps n + 1 pairs.
        """
        return math.ceil((int(self) + 1) / 2)

    @classmethod
    def from_match_count(cls, n_pairs: int) -> 'FitMode':
        if n_pairs < 4:
            return cls.SHIFT
        if n_pairs > 5:
            return cls.ROTATION
        return cls.SCALE


@dataclass
class FitResult:
    """Summary of one simplex fit."""
    mode: FitMode
    parameters: np.ndarray
    evaluations: int
    initial_chisqr: float
    final_chisqr: float
    n_pairs: int
    refined: bool = False

    @property
    def rms(self) -> float:
        """Root-mean-square pixel residual per pair."""
        if self.n_pairs == 0:
            return 0.0
        return math.sqrt(self.final_chisqr / self.n_pairs)


def amoeba(func: Callable[[np.ndarray], float],
           simplex: np.ndarray,
           ftol: float = 1.0e-7,
           max_evaluations: int = 3000,
           values: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Nelder-Mead downhill simplex minimisation.

    Parameters:
    -----------
    func : callable
        Objective taking a parameter vector
    simplex : numpy.ndarray, shape (ndim + 1, ndim)
        Starting vertices
    ftol : float, default=1e-7
        Fractional tolerance on the spread of objective values
    max_evaluations : int, default=3000
        Objective evaluations allowed after the starting vertices
    values : numpy.ndarray, optional
        Objective values at the starting vertices

    Returns:
    --------
    tuple
        (vertices, values, evaluations) of the converged simplex

    Raises:
    -------
    OptimizerDidNotConverge
        If the evaluation cap is reached first
    """
    p = np.array(simplex, dtype=float)
    npts, ndim = p.shape
    if npts != ndim + 1:
        raise ValueError(f"Simplex needs {ndim + 1} vertices, got {npts}")

    y = np.array([func(v) for v in p] if values is None else values, dtype=float)
    psum = p.sum(axis=0)
    nfunk = 0

    def amotry(ihi: int, fac: float) -> float:
        nonlocal psum, nfunk
        fac1 = (1.0 - fac) / ndim
        fac2 = fac1 - fac
        ptry = psum * fac1 - p[ihi] * fac2
        ytry = func(ptry)
        nfunk += 1
        if ytry < y[ihi]:
            y[ihi] = ytry
            psum = psum + ptry - p[ihi]
            p[ihi] = ptry
        return ytry

    while True:
        order = np.argsort(y, kind='stable')
        ilo, inhi, ihi = order[0], order[-2], order[-1]

        rtol = 2.0 * abs(y[ihi] - y[ilo]) / (abs(y[ihi]) + abs(y[ilo]) + TINY)
        if rtol < ftol:
            break
        if nfunk >= max_evaluations:
            raise OptimizerDidNotConverge(
                f"Simplex did not converge after {nfunk} evaluations "
                f"(best={y[ilo]:.6g}, spread={rtol:.3g})")

        ytry = amotry(ihi, -ALPHA)
        if ytry <= y[ilo]:
            amotry(ihi, GAMMA)
        elif ytry >= y[inhi]:
            ysave = y[ihi]
            ytry = amotry(ihi, BETA)
            if ytry >= ysave:
                for i in range(npts):
                    if i != ilo:
                        p[i] = 0.5 * (p[i] + p[ilo])
                        y[i] = func(p[i])
                nfunk += ndim
                psum = p.sum(axis=0)

    return p, y, nfunk


class ModelFitter:
    """
    Simplex fitter for the sky-to-pixel transform.

    Parameters:
    -----------
    config : FitConfig, optional
        Tolerance, evaluation cap, refinement switch and initial steps
    projection : SkyProjection, optional
        Projection service used by the objective
    """

    def __init__(self, config: Optional[FitConfig] = None,
                 projection: Optional[SkyProjection] = None):
        self.config = config or FitConfig()
        self.projection = projection or SkyProjection()
        self.logger = logging.getLogger(__name__)

    def resolve_mode(self, dimensionality: Optional[int], n_pairs: int) -> FitMode:
        """Explicit dimensionality, or one derived from the number of pairs."""
        if dimensionality is None or dimensionality == 0:
            dimensionality = self.config.fit_parameters
        if not dimensionality:
            return FitMode.from_match_count(n_pairs)
        try:
            return FitMode(dimensionality)
        except ValueError:
            raise ValueError(f"Fit dimensionality must be 2..7, got {dimensionality}") from None

    @staticmethod
    def apply_parameters(seed: TransformModel, params: Sequence[float],
                         mode: FitMode) -> TransformModel:
        """
        Return a copy of ``seed`` with the parameter offsets applied.

        The layout is [d_crval1, d_crval2, d_scale1, d_rotation,
        d_scale2, d_chip_rotation] or, in reference pixel mode,
        [..., d_crpix1, d_crpix2].  Scale offsets act on the absolute
        plate scale; without a free second scale both axes keep their ratio.
        """
        dim = int(mode)
        t = seed.copy()
        t.crval1 = seed.crval1 + params[0]
        t.crval2 = seed.crval2 + params[1]
        if dim >= 3:
            scale1 = abs(seed.cdelt1) + params[2]
            t.cdelt1 = math.copysign(scale1, seed.cdelt1)
            if dim < 5:
                t.cdelt2 = seed.cdelt2 * scale1 / abs(seed.cdelt1)
        if dim >= 4:
            t.rotation = seed.rotation + params[3]
        if dim >= 5:
            t.cdelt2 = math.copysign(abs(seed.cdelt2) + params[4], seed.cdelt2)
        if mode == FitMode.CHIP_ROTATION:
            t.chip_rotation = seed.chip_rotation + params[5]
        elif mode == FitMode.REFERENCE_PIXEL:
            t.crpix1 = seed.crpix1 + params[5]
            t.crpix2 = seed.crpix2 + params[6]
        return t

    def initial_steps(self, seed: TransformModel, mode: FitMode) -> np.ndarray:
        cfg = self.config
        steps = [
            cfg.position_step * abs(seed.cdelt1),
            cfg.position_step * abs(seed.cdelt2),
            cfg.scale_step * abs(seed.cdelt1),
            cfg.rotation_step,
            cfg.scale_step * abs(seed.cdelt2),
        ]
        if mode == FitMode.CHIP_ROTATION:
            steps.append(cfg.rotation_step)
        elif mode == FitMode.REFERENCE_PIXEL:
            steps.extend([cfg.refpix_step, cfg.refpix_step])
        return np.array(steps[:int(mode)])

    def pixel_residuals(self, transform: TransformModel,
                        pairs: Sequence[Correspondence]) -> np.ndarray:
        """Distance in pixels between each projected star and its source."""
        ra = np.array([c.ra for c in pairs])
        dec = np.array([c.dec for c in pairs])
        px, py, _ = self.projection.project_to_pixel(transform, ra, dec)
        return np.hypot(px - np.array([c.x for c in pairs]),
                        py - np.array([c.y for c in pairs]))

    def make_objective(self, pairs: Sequence[Correspondence], seed: TransformModel,
                       mode: FitMode) -> Callable[[np.ndarray], float]:
        """
        Build the chi-square closure for a fixed pair set and seed.

        The value is the summed squared pixel distance, not normalised
        by the number of pairs.
        """
        ra = np.array([c.ra for c in pairs])
        dec = np.array([c.dec for c in pairs])
        x = np.array([c.x for c in pairs])
        y = np.array([c.y for c in pairs])
        projection = self.projection

        def chisqr(params: np.ndarray) -> float:
            trial = ModelFitter.apply_parameters(seed, params, mode)
            px, py, _ = projection.project_to_pixel(trial, ra, dec)
            value = float(np.sum((px - x) ** 2 + (py - y) ** 2))
            return value if math.isfinite(value) else math.inf

        return chisqr

    def _run_simplex(self, pairs: Sequence[Correspondence], seed: TransformModel,
                     mode: FitMode) -> Tuple[TransformModel, np.ndarray, int, float, float]:
        objective = self.make_objective(pairs, seed, mode)
        dim = int(mode)

        simplex = np.zeros((dim + 1, dim))
        simplex[1:] += np.diag(self.initial_steps(seed, mode))
        values = np.array([objective(v) for v in simplex])
        initial = float(values[0])

        vertices, values, evaluations = amoeba(objective, simplex,
                                               ftol=self.config.ftol,
                                               max_evaluations=self.config.max_evaluations,
                                               values=values)

        params = vertices.mean(axis=0)
        final = objective(params)
        best = int(np.argmin(values))
        if final > values[best] and final > initial:
            self.logger.debug("Averaged simplex is worse than the start; using best vertex")
            params = vertices[best]
            final = float(values[best])

        return self.apply_parameters(seed, params, mode), params, evaluations, initial, final

    def fit(self, pairs: Sequence[Correspondence], transform: TransformModel,
            dimensionality: Optional[int] = None,
            refine: Optional[bool] = None) -> FitResult:
        """
        Fit the transform to matched pairs, updating it in place.

        Parameters:
        -----------
        pairs : sequence of Correspondence
            Matched image sources and catalog stars
        transform : TransformModel
            Seed transform; receives the fitted values
        dimensionality : int, optional
            2..7, or None/0 to derive it from the number of pairs
        refine : bool, optional
            Refit with the best dimensionality + 1 pairs; the configured
            value if None

        Returns:
        --------
        FitResult
            Fit summary

        Raises:
        -------
        AmbiguousOrInsufficientMatch
            If there are too few pairs for the requested dimensionality
        OptimizerDidNotConverge
            If the simplex reaches its evaluation cap
        """
        pairs = list(pairs)
        mode = self.resolve_mode(dimensionality, len(pairs))
        if len(pairs) < mode.min_pairs:
            raise AmbiguousOrInsufficientMatch(
                f"{len(pairs)} pairs cannot constrain a {int(mode)}-parameter fit "
                f"(need {mode.min_pairs})")

        fitted, params, evaluations, initial, final = self._run_simplex(pairs, transform, mode)
        self.logger.info(f"{int(mode)}-parameter fit of {len(pairs)} pairs: "
                         f"chisqr {initial:.4g} -> {final:.4g} in {evaluations} evaluations")

        refined = False
        n_used = len(pairs)
        do_refine = self.config.refine if refine is None else refine
        keep = int(mode) + 1
        if do_refine and len(pairs) > keep:
            residuals = self.pixel_residuals(fitted, pairs)
            order = np.argsort(residuals, kind='stable')
            best_pairs = [pairs[i] for i in order[:keep]]
            fitted, params_2, evaluations_2, _, final = self._run_simplex(best_pairs, fitted, mode)
            params = params + params_2
            evaluations += evaluations_2
            refined = True
            n_used = keep
            self.logger.info(f"Refit with best {keep} pairs: chisqr {final:.4g}")

        for f in fields(TransformModel):
            setattr(transform, f.name, getattr(fitted, f.name))

        return FitResult(mode=mode, parameters=params, evaluations=evaluations,
                         initial_chisqr=initial, final_chisqr=final,
                         n_pairs=n_used, refined=refined)
