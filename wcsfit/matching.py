"""
Coarse image-to-catalog registration by translation voting.

Every (catalog, image) pair proposes a pixel translation; the
translation supported by the most other pairs within a tolerance wins
and its supporting pairs become the correspondence set used by the
fitter.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .catalog import CatalogSource
from .config_manager import MatchConfig
from .detection import DetectedSource
from .transform import SkyProjection, TransformModel
from .utils import AmbiguousOrInsufficientMatch


@dataclass(frozen=True)
class Correspondence:
    """A detected source believed to be the image of a catalog star."""
    source: DetectedSource
    star: CatalogSource

    @property
    def x(self) -> float:
        return self.source.x

    @property
    def y(self) -> float:
        return self.source.y

    @property
    def ra(self) -> float:
        return self.star.ra

    @property
    def dec(self) -> float:
        return self.star.dec


@dataclass(frozen=True)
class BinPeak:
    count: int
    dx: float
    dy: float


@dataclass
class MatchResult:
    """
    Outcome of translation voting.

    ``pairs`` lists (image index, catalog index) of the winning bin in
    the order they were found.  ``history`` keeps the most recent bins
    that equalled or beat the running best, newest first.
    """
    dx: float
    dy: float
    count: int
    pairs: List[Tuple[int, int]]
    history: List[BinPeak] = field(default_factory=list)
    ambiguous: bool = False

    @property
    def translation(self) -> Tuple[float, float]:
        return (self.dx, self.dy)

    @property
    def image_indices(self) -> List[int]:
        return [s for s, _ in self.pairs]

    @property
    def catalog_indices(self) -> List[int]:
        return [g for _, g in self.pairs]


class CorrespondenceMatcher:
    """
    Translation-voting matcher between image and catalog pixel positions.

    Parameters:
    -----------
    config : MatchConfig, optional
        Tolerance, minimum bin size and history length
    """

    def __init__(self, config: Optional[MatchConfig] = None):
        self.config = config or MatchConfig()
        self.logger = logging.getLogger(__name__)

    def match(self, image_xy: np.ndarray, catalog_xy: np.ndarray,
              tolerance: Optional[float] = None) -> MatchResult:
        """
        Find the best-supported translation from image to catalog positions.

        Parameters:
        -----------
        image_xy : array-like, shape (ns, 2)
            Detected source pixel positions
        catalog_xy : array-like, shape (ng, 2)
            Catalog positions projected through the trial transform
        tolerance : float, optional
            Componentwise pixel tolerance; the configured value if None

        Returns:
        --------
        MatchResult
            Winning translation (catalog minus image) and its pairs

        Raises:
        -------
        AmbiguousOrInsufficientMatch
            If the best bin holds fewer than the minimum number of pairs
        """
        tol = self.config.tolerance if tolerance is None else tolerance
        sxy = np.asarray(image_xy, dtype=float).reshape(-1, 2)
        gxy = np.asarray(catalog_xy, dtype=float).reshape(-1, 2)
        ns, ng = len(sxy), len(gxy)

        if ns == 0 or ng == 0:
            raise AmbiguousOrInsufficientMatch(
                f"Cannot match {ns} image sources against {ng} catalog stars")

        # all_dx[g, s] is the translation proposed by pairing catalog g with image s
        all_dx = gxy[:, 0, None] - sxy[None, :, 0]
        all_dy = gxy[:, 1, None] - sxy[None, :, 1]

        best_count = 0
        best_dx = best_dy = 0.0
        best_pairs: List[Tuple[int, int]] = []
        history: List[BinPeak] = []

        for g in range(ng):
            for s in range(ns):
                dx = all_dx[g, s]
                dy = all_dy[g, s]
                hits = (np.abs(all_dx - dx) <= tol) & (np.abs(all_dy - dy) <= tol)
                hits[g, :] = False
                hits[:, s] = False
                count = 1 + int(np.count_nonzero(hits))

                if count > 1 and count >= best_count:
                    history.insert(0, BinPeak(count, float(dx), float(dy)))
                    del history[self.config.peak_history:]
                    # ties keep the first bin found
                    if count > best_count:
                        best_count = count
                        best_dx, best_dy = float(dx), float(dy)
                        gi, si = np.nonzero(hits)
                        best_pairs = [(s, g)] + [(int(b), int(a)) for a, b in zip(gi, si)]

        ambiguous = any(peak.count == best_count
                        and (abs(peak.dx - best_dx) > tol or abs(peak.dy - best_dy) > tol)
                        for peak in history)

        self.logger.debug(f"Bin history (ns={ns} ng={ng} tol={tol:.1f}): "
                          + ", ".join(f"{p.count}@({p.dx:.1f},{p.dy:.1f})" for p in history))

        if best_count < self.config.min_bin:
            raise AmbiguousOrInsufficientMatch(
                f"Best translation bin has {best_count} pairs; need {self.config.min_bin}")

        if ambiguous:
            self.logger.warning(f"Broad peak: another translation also has {best_count} pairs; "
                                f"keeping dx={best_dx:.2f} dy={best_dy:.2f}")

        self.logger.info(f"Matched {best_count} pairs at dx={best_dx:.2f} dy={best_dy:.2f}")
        return MatchResult(dx=best_dx, dy=best_dy, count=best_count, pairs=best_pairs,
                           history=history, ambiguous=ambiguous)

    @staticmethod
    def correspondences(result: MatchResult,
                        detections: Sequence[DetectedSource],
                        stars: Sequence[CatalogSource]) -> List[Correspondence]:
        """Turn the winning index pairs into Correspondence objects."""
        return [Correspondence(source=detections[s], star=stars[g]) for s, g in result.pairs]

    def apply_translation(self, transform: TransformModel, result: MatchResult,
                          projection: Optional[SkyProjection] = None) -> None:
        """
        Shift the reference sky position by the matched translation.

        The new reference position is the sky position that the current
        transform puts at the reference pixel plus (dx, dy), so catalog
        stars move onto their matched image sources.
        """
        projection = projection or SkyProjection()
        ra, dec = projection.project_to_sky(transform,
                                            transform.crpix1 + result.dx,
                                            transform.crpix2 + result.dy)
        self.logger.debug(f"Reference moved from ({transform.crval1:.6f}, {transform.crval2:.6f}) "
                          f"to ({ra:.6f}, {dec:.6f})")
        transform.crval1 = ra
        transform.crval2 = dec
