"""
Star-like source detection for astrometric calibration.

This module finds compact bright sources in a pixel array using a
noise-adaptive row scan:
- Global background from an iteratively clipped central swath
- Local left/right window statistics refreshed every few columns
- Isolated hot-pixel rejection
- Peak walk to the local maximum
- Ring-based radius test and parabolic sub-pixel centroid
- Background-subtracted flux within a growth radius

Pixel coordinates of emitted sources follow the FITS convention
(the centre of the first pixel is 1.0).
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from .config_manager import DetectionConfig
from .image_handler import PixelImage
from .utils import AllocationFailure, validate_image_array


@dataclass(frozen=True)
class NoiseModel:
    """Background level and mean absolute deviation of background pixels."""
    mean: float
    sigma: float


@dataclass(frozen=True)
class DetectedSource:
    """
    A detected star-like source.

    Attributes:
    -----------
    x, y : float
        Centroid in 1-based pixel coordinates
    peak : float
        Value of the brightest pixel
    flux : float
        Background-subtracted flux within the growth radius
    radius : int
        Ring radius at which the profile drops below the peak
    background, noise : float
        Local background and noise at detection time
    threshold : float
        Local detection threshold, background + k * noise
    """
    x: float
    y: float
    peak: float
    flux: float
    radius: int
    background: float
    noise: float
    threshold: float


class SourceDetector:
    """
    Noise-adaptive detector for point sources.

    Parameters:
    -----------
    config : DetectionConfig, optional
        Detection parameters. Defaults are used if None.
    """

    _NEIGHBOURS = ((-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1))

    def __init__(self, config: Optional[DetectionConfig] = None):
        self.config = config or DetectionConfig()
        self.logger = logging.getLogger(__name__)
        self._rings = self._build_rings(2 * self.config.max_radius)

    @staticmethod
    def _build_rings(max_r: int) -> Dict[int, Tuple[np.ndarray, np.ndarray]]:
        """Pixel offsets with r^2 <= d^2 < (r+1)^2 for each integer radius."""
        span = np.arange(-(max_r + 1), max_r + 2)
        dy, dx = np.meshgrid(span, span, indexing='ij')
        d2 = dx * dx + dy * dy
        rings = {}
        for r in range(0, max_r + 1):
            sel = (d2 >= r * r) & (d2 < (r + 1) * (r + 1))
            rings[r] = (dy[sel], dx[sel])
        return rings

    def estimate_noise(self, data: np.ndarray) -> NoiseModel:
        """
        Estimate the global background from a central horizontal swath.

        The swath starts at the border margin and at half the image
        height and is clamped to the image.  The mean and mean absolute
        deviation are recomputed a fixed number of times from the pixels
        within k sigma of the previous mean.

        Parameters:
        -----------
        data : numpy.ndarray
            2-D pixel array

        Returns:
        --------
        NoiseModel
            Global background mean and sigma
        """
        cfg = self.config
        height, width = data.shape

        x0 = min(max(cfg.border, 0), width - 1)
        x1 = min(max(width - cfg.border, x0 + 1), width)
        y0 = min(max(height // 2, 0), height - 1)
        y1 = min(y0 + max(cfg.noise_rows, 1), height)

        swath = data[y0:y1, x0:x1]
        swath = swath[np.isfinite(swath)]
        if swath.size == 0:
            swath = data[np.isfinite(data)]

        low, high = -np.inf, np.inf
        mean, sigma = 0.0, 0.0
        for _ in range(cfg.noise_iterations):
            values = swath[(swath >= low) & (swath <= high)]
            if values.size == 0:
                break
            mean = float(values.mean())
            sigma = float(np.mean(np.abs(values - mean)))
            low = mean - cfg.star_sigma * sigma
            high = mean + cfg.star_sigma * sigma

        self.logger.debug(f"Global noise: mean={mean:.3f} sigma={sigma:.3f} "
                          f"from swath rows {y0}:{y1} cols {x0}:{x1}")
        return NoiseModel(mean=mean, sigma=max(sigma, 0.0))

    def _row_thresholds(self, row: np.ndarray, columns: np.ndarray, noise_model: NoiseModel):
        """
        Local background, noise and threshold for each scanned column.

        Statistics are computed at anchor columns every ``stat_interval``
        pixels from windows of ``stat_pixels`` to the left and right of
        the anchor.  Windows are clamped to the scanned columns, so the
        border never contributes.  The lower mean and lower sigma of the
        two windows set the threshold; a window with fewer than two
        pixels defers to the other one, and the local sigma never drops
        below the global sigma.
        """
        cfg = self.config
        n_win = cfg.stat_pixels
        lo, hi = int(columns[0]), int(columns[-1]) + 1

        csum = np.concatenate(([0.0], np.cumsum(row)))
        csum2 = np.concatenate(([0.0], np.cumsum(row * row)))

        first = columns[0]
        anchors = first + ((columns - first) // cfg.stat_interval) * cfg.stat_interval

        def window_stats(start, stop):
            start = np.clip(start, lo, hi)
            stop = np.clip(stop, lo, hi)
            n = stop - start
            safe = np.maximum(n, 1)
            mean = (csum[stop] - csum[start]) / safe
            var = (csum2[stop] - csum2[start] - safe * mean * mean) / np.maximum(n - 1, 1)
            return mean, np.sqrt(np.maximum(var, 0.0)), n >= 2

        lmean, lsigma, lvalid = window_stats(anchors - n_win, anchors)
        rmean, rsigma, rvalid = window_stats(anchors + 1, anchors + 1 + n_win)

        both = lvalid & rvalid
        background = np.where(both, np.minimum(lmean, rmean),
                              np.where(lvalid, lmean, np.where(rvalid, rmean, noise_model.mean)))
        noise = np.where(both, np.minimum(lsigma, rsigma),
                         np.where(lvalid, lsigma, np.where(rvalid, rsigma, noise_model.sigma)))
        noise = np.maximum(noise, noise_model.sigma)
        threshold = background + cfg.star_sigma * noise
        return background, noise, threshold

    def _is_hot_pixel(self, work: np.ndarray, x: int, y: int, limit: float) -> bool:
        for dy, dx in self._NEIGHBOURS:
            if work[y + dy, x + dx] > limit:
                return False
        return True

    def _walk_to_peak(self, work: np.ndarray, x: int, y: int) -> Optional[Tuple[int, int, float]]:
        """Climb to the brightest neighbour until none is brighter."""
        max_walk = self.config.max_walk
        px, py = x, y
        peak = work[py, px]
        while True:
            patch = work[py - 1:py + 2, px - 1:px + 2]
            iy, ix = np.unravel_index(np.argmax(patch), patch.shape)
            best = patch[iy, ix]
            if best <= peak:
                return px, py, float(peak)
            px += ix - 1
            py += iy - 1
            peak = best
            if abs(px - x) > max_walk or abs(py - y) > max_walk:
                return None

    def _ring_mean(self, work: np.ndarray, x: int, y: int, r: int) -> float:
        dy, dx = self._rings[r]
        return float(work[y + dy, x + dx].mean())

    def _star_radius(self, work: np.ndarray, x: int, y: int, peak: float, noise: float) -> int:
        """Smallest ring radius from 2 whose mean falls to peak - noise."""
        for r in range(2, self.config.max_radius + 1):
            if self._ring_mean(work, x, y, r) <= peak - noise:
                return r
        return self.config.max_radius + 1

    def _flux(self, work: np.ndarray, x: int, y: int, background: float, noise: float) -> float:
        limit = 2 * self.config.max_radius
        radius = limit
        for r in range(2, limit + 1):
            if self._ring_mean(work, x, y, r) <= background + noise:
                radius = r
                break
        flux = 0.0
        for r in range(0, radius + 1):
            dy, dx = self._rings[r]
            flux += float(np.clip(work[y + dy, x + dx] - background, 0.0, None).sum())
        return flux

    @staticmethod
    def _centroid(work: np.ndarray, x: int, y: int) -> Tuple[float, float]:
        """Vertex of the parabola through the peak and its two neighbours, per axis."""
        p2 = work[y, x]
        p1, p3 = work[y, x - 1], work[y, x + 1]
        d = p1 - 2.0 * p2 + p3
        xc = x if d == 0 else x + 0.5 * (p1 - p3) / d

        p1, p3 = work[y - 1, x], work[y + 1, x]
        d = p1 - 2.0 * p2 + p3
        yc = y if d == 0 else y + 0.5 * (p1 - p3) / d
        return float(xc), float(yc)

    def detect(self, image: Union[PixelImage, np.ndarray]) -> List[DetectedSource]:
        """
        Detect star-like sources.

        Parameters:
        -----------
        image : PixelImage or numpy.ndarray
            Image to scan; it is not modified

        Returns:
        --------
        list of DetectedSource
            Sources in scan order (not sorted by brightness)

        Raises:
        -------
        DataValidationError
            If the pixel data is not a usable 2-D array
        AllocationFailure
            If working memory cannot be allocated
        """
        cfg = self.config
        data = image.data if isinstance(image, PixelImage) else image
        data = validate_image_array(np.asarray(data))
        height, width = data.shape

        noise_model = self.estimate_noise(data)
        pad = cfg.max_walk + 2 * cfg.max_radius + 2

        try:
            work = np.pad(np.where(np.isfinite(data), data, noise_model.mean),
                          pad, mode='constant', constant_values=noise_model.mean)
        except MemoryError as e:
            raise AllocationFailure(f"Cannot allocate detection buffer for {width}x{height} image") from e

        border = cfg.border
        columns = np.arange(border, width - border)
        if columns.size == 0 or height <= 2 * border:
            self.logger.warning(f"Image {width}x{height} is too small for border {border}")
            return []

        sources: List[DetectedSource] = []
        peaks_x: List[int] = []
        peaks_y: List[int] = []
        n_hot = 0
        n_rejected = 0

        for y in range(border, height - border):
            py = y + pad
            row = work[py, pad:pad + width]

            background, noise, threshold = self._row_thresholds(row, columns, noise_model)
            values = row[columns]
            hits = np.nonzero((values > threshold) & (values > cfg.min_peak))[0]

            for i in hits:
                x = int(columns[i])
                px = x + pad
                limit = float(threshold[i])

                if self._is_hot_pixel(work, px, py, limit):
                    work[py, px] = limit
                    n_hot += 1
                    continue

                walked = self._walk_to_peak(work, px, py)
                if walked is None:
                    n_rejected += 1
                    continue
                sx, sy, peak = walked

                if cfg.saturation is not None and peak >= cfg.saturation:
                    continue

                if peaks_x and np.min(np.hypot(np.asarray(peaks_x) - sx,
                                               np.asarray(peaks_y) - sy)) < cfg.min_separation:
                    continue

                radius = self._star_radius(work, sx, sy, peak, float(noise[i]))
                if not cfg.min_radius <= radius <= cfg.max_radius:
                    n_rejected += 1
                    continue

                xc, yc = self._centroid(work, sx, sy)
                fits_x = xc - pad + 1.0
                fits_y = yc - pad + 1.0
                if sources and min(np.hypot(s.x - fits_x, s.y - fits_y) for s in sources) < cfg.min_separation:
                    continue

                flux = self._flux(work, sx, sy, float(background[i]), float(noise[i]))

                try:
                    sources.append(DetectedSource(
                        x=fits_x, y=fits_y, peak=peak, flux=flux, radius=radius,
                        background=float(background[i]), noise=float(noise[i]),
                        threshold=limit))
                    peaks_x.append(sx)
                    peaks_y.append(sy)
                except MemoryError as e:
                    raise AllocationFailure(f"Cannot grow source list beyond {len(sources)}") from e

                if len(sources) >= cfg.max_sources:
                    self.logger.warning(f"Reached maximum of {cfg.max_sources} sources; "
                                        f"stopping scan at row {y + 1}")
                    return sources

        self.logger.info(f"Detected {len(sources)} sources "
                         f"({n_hot} hot pixels, {n_rejected} rejected candidates)")
        return sources
