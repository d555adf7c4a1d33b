"""
Sky-to-pixel transform model and projection service.

The TransformModel holds the linear WCS terms that the fitter varies
(reference sky position, reference pixel, per-axis plate scales, a
rotation about the reference pixel and an optional rotation about the
chip centre).  SkyProjection turns a model into an astropy WCS and
provides the forward and inverse projections, angular separations and
equinox conversions used by the rest of the package.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import numpy as np
from astropy import units as u
from astropy.coordinates import FK4, FK5, ICRS, Angle, Galactic, SkyCoord
from astropy.io import fits
from astropy.time import Time
from astropy.wcs import WCS

from .config_manager import WCSOverrides
from .utils import IncompleteHeaderError


@dataclass
class TransformModel:
    """
    Mutable linear WCS description for one image.

    Scales are in degrees per pixel; ``cdelt1`` is negative when right
    ascension increases to the left.  Angles are in degrees.  Pixel
    coordinates follow the FITS convention (first pixel centre is 1.0).
    """
    crval1: float
    crval2: float
    crpix1: float
    crpix2: float
    cdelt1: float
    cdelt2: float
    naxis1: int
    naxis2: int
    rotation: float = 0.0
    chip_rotation: float = 0.0
    projection: str = 'TAN'
    radecsys: str = 'FK5'
    equinox: float = 2000.0

    def copy(self) -> 'TransformModel':
        return replace(self)

    @property
    def chip_center(self) -> Tuple[float, float]:
        return (0.5 * (self.naxis1 + 1), 0.5 * (self.naxis2 + 1))

    @property
    def secpix1(self) -> float:
        return abs(self.cdelt1) * 3600.0

    @property
    def secpix2(self) -> float:
        return abs(self.cdelt2) * 3600.0

    def cd_matrix(self) -> np.ndarray:
        """CD matrix for the scales and rotation, excluding chip rotation."""
        rho = math.radians(self.rotation)
        cos_r, sin_r = math.cos(rho), math.sin(rho)
        return np.array([
            [self.cdelt1 * cos_r, -self.cdelt2 * sin_r],
            [self.cdelt1 * sin_r, self.cdelt2 * cos_r],
        ])

    def folded_cd(self) -> Tuple[np.ndarray, float, float]:
        """
        Fold the chip rotation into a CD matrix and reference pixel.

        Returns:
        --------
        tuple
            (cd, crpix1, crpix2) describing the same pixel-to-sky mapping
            without a separate chip rotation term
        """
        cd = self.cd_matrix()
        if self.chip_rotation == 0.0:
            return cd, self.crpix1, self.crpix2
        cx, cy = self.chip_center
        cd = cd @ _rotation_matrix(-self.chip_rotation)
        dx, dy = _rotation_matrix(self.chip_rotation) @ np.array(
            [self.crpix1 - cx, self.crpix2 - cy])
        return cd, cx + dx, cy + dy

    def to_wcs(self) -> WCS:
        """Build an astropy WCS for the model (chip rotation not included)."""
        wcs = WCS(naxis=2)
        wcs.wcs.ctype = [f"RA---{self.projection}", f"DEC--{self.projection}"]
        wcs.wcs.crval = [self.crval1, self.crval2]
        wcs.wcs.crpix = [self.crpix1, self.crpix2]
        wcs.wcs.cd = self.cd_matrix()
        wcs.wcs.radesys = self.radecsys
        if self.radecsys in ('FK4', 'FK5'):
            wcs.wcs.equinox = self.equinox
        return wcs

    def describe(self) -> str:
        return (f"center=({self.crval1:.6f}, {self.crval2:.6f}) "
                f"refpix=({self.crpix1:.2f}, {self.crpix2:.2f}) "
                f"secpix=({self.secpix1:.4f}, {self.secpix2:.4f}) "
                f"rot={self.rotation:.4f} chiprot={self.chip_rotation:.4f}")


@dataclass(frozen=True)
class SearchBox:
    """Sky box used for the reference catalog search, in degrees."""
    center_ra: float
    center_dec: float
    half_width_ra: float
    half_width_dec: float


def _rotation_matrix(angle_deg: float) -> np.ndarray:
    theta = math.radians(angle_deg)
    c, s = math.cos(theta), math.sin(theta)
    return np.array([[c, -s], [s, c]])


def _rotate_about(x, y, cx: float, cy: float, angle_deg: float):
    if angle_deg == 0.0:
        return x, y
    theta = math.radians(angle_deg)
    c, s = math.cos(theta), math.sin(theta)
    dx = x - cx
    dy = y - cy
    return cx + c * dx - s * dy, cy + s * dx + c * dy


def _celestial_frame(system: str, equinox: float):
    system = system.upper()
    if system == 'FK5':
        return FK5(equinox=Time(f"J{equinox}"))
    if system == 'FK4':
        return FK4(equinox=Time(f"B{equinox}"))
    if system == 'ICRS':
        return ICRS()
    if system == 'GALACTIC':
        return Galactic()
    raise ValueError(f"Unsupported coordinate system: {system}")


class SkyProjection:
    """
    Projection service between sky and pixel coordinates.

    All methods are side-effect free.  Pixel coordinates are 1-based.
    Scalar inputs produce scalar outputs; array inputs produce arrays.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def project_to_pixel(self, transform: TransformModel, ra, dec):
        """
        Project sky coordinates into the image.

        Parameters:
        -----------
        transform : TransformModel
            Transform to project through
        ra, dec : float or array-like
            Sky coordinates in degrees

        Returns:
        --------
        tuple
            (x, y, offscale) where offscale is True for positions that
            fall outside the image or cannot be projected
        """
        scalar = np.ndim(ra) == 0
        ra_arr = np.atleast_1d(np.asarray(ra, dtype=float))
        dec_arr = np.atleast_1d(np.asarray(dec, dtype=float))

        x, y = transform.to_wcs().wcs_world2pix(ra_arr, dec_arr, 1)
        cx, cy = transform.chip_center
        x, y = _rotate_about(x, y, cx, cy, transform.chip_rotation)

        with np.errstate(invalid='ignore'):
            offscale = (~np.isfinite(x) | ~np.isfinite(y)
                        | (x < 0.5) | (x > transform.naxis1 + 0.5)
                        | (y < 0.5) | (y > transform.naxis2 + 0.5))

        if scalar:
            return float(x[0]), float(y[0]), bool(offscale[0])
        return x, y, offscale

    def project_to_sky(self, transform: TransformModel, x, y):
        """Return (ra, dec) in degrees for 1-based pixel coordinates."""
        scalar = np.ndim(x) == 0
        x_arr = np.atleast_1d(np.asarray(x, dtype=float))
        y_arr = np.atleast_1d(np.asarray(y, dtype=float))

        cx, cy = transform.chip_center
        x_arr, y_arr = _rotate_about(x_arr, y_arr, cx, cy, -transform.chip_rotation)
        ra, dec = transform.to_wcs().wcs_pix2world(x_arr, y_arr, 1)
        ra = np.mod(ra, 360.0)

        if scalar:
            return float(ra[0]), float(dec[0])
        return ra, dec

    def angular_separation(self, ra1, dec1, ra2, dec2):
        """Great-circle distance in degrees."""
        c1 = SkyCoord(ra=np.asarray(ra1) * u.deg, dec=np.asarray(dec1) * u.deg)
        c2 = SkyCoord(ra=np.asarray(ra2) * u.deg, dec=np.asarray(dec2) * u.deg)
        sep = c1.separation(c2).deg
        return float(sep) if np.ndim(sep) == 0 else sep

    def convert_equinox(self, ra, dec, from_system: str, from_equinox: float,
                        to_system: str, to_equinox: float):
        """
        Convert coordinates between equatorial systems and equinoxes.

        Systems are 'FK5', 'FK4', 'ICRS' or 'GALACTIC'.  Coordinates are
        returned unchanged when source and target agree.
        """
        if from_system.upper() == to_system.upper() and (
                from_system.upper() in ('ICRS', 'GALACTIC') or from_equinox == to_equinox):
            return ra, dec

        source = SkyCoord(np.asarray(ra) * u.deg, np.asarray(dec) * u.deg,
                          frame=_celestial_frame(from_system, from_equinox))
        target = source.transform_to(_celestial_frame(to_system, to_equinox))
        lon = target.spherical.lon.deg
        lat = target.spherical.lat.deg
        if np.ndim(lon) == 0:
            return float(lon), float(lat)
        return lon, lat

    def search_box(self, transform: TransformModel, image_fraction: float = 0.0) -> SearchBox:
        """
        Sky box covering the image, optionally enlarged by ``image_fraction``.

        The half-widths are the largest corner offsets from the image
        centre, so rotated images are fully covered.
        """
        cx, cy = transform.chip_center
        center_ra, center_dec = self.project_to_sky(transform, cx, cy)

        corners_x = np.array([0.5, transform.naxis1 + 0.5, 0.5, transform.naxis1 + 0.5])
        corners_y = np.array([0.5, 0.5, transform.naxis2 + 0.5, transform.naxis2 + 0.5])
        ra, dec = self.project_to_sky(transform, corners_x, corners_y)

        dra = np.abs((ra - center_ra + 180.0) % 360.0 - 180.0)
        ddec = np.abs(dec - center_dec)
        half_ra = float(np.max(dra))
        half_dec = float(np.max(ddec))

        if image_fraction > 0.0:
            half_ra *= image_fraction
            half_dec *= image_fraction

        return SearchBox(center_ra, center_dec, half_ra, half_dec)


def _header_float(header: fits.Header, *keys: str) -> Optional[float]:
    for key in keys:
        if key in header:
            value = header[key]
            if isinstance(value, str):
                try:
                    return float(value)
                except ValueError:
                    continue
            return float(value)
    return None


def _parse_ra(value) -> float:
    if isinstance(value, str):
        return Angle(value, unit=u.hourangle).deg
    return float(value)


def _parse_dec(value) -> float:
    if isinstance(value, str):
        return Angle(value, unit=u.deg).deg
    return float(value)


def transform_from_header(header: fits.Header,
                          overrides: Optional[WCSOverrides] = None,
                          projection: Optional[SkyProjection] = None) -> TransformModel:
    """
    Derive the nominal transform from a FITS header and overrides.

    Parameters:
    -----------
    header : astropy.io.fits.Header
        Image header; NAXIS1/2 are required
    overrides : WCSOverrides, optional
        Values that take precedence over the header
    projection : SkyProjection, optional
        Service used for equinox conversion of the centre

    Returns:
    --------
    TransformModel
        Nominal transform

    Raises:
    -------
    IncompleteHeaderError
        If the image size, centre or plate scale cannot be determined
    """
    logger = logging.getLogger(__name__)
    overrides = overrides or WCSOverrides()
    projection = projection or SkyProjection()

    naxis1 = header.get('NAXIS1')
    naxis2 = header.get('NAXIS2')
    if not naxis1 or not naxis2:
        raise IncompleteHeaderError("Header has no NAXIS1/NAXIS2 image size")

    equinox = _header_float(header, 'EQUINOX', 'EPOCH') or 2000.0
    radecsys = str(header.get('RADECSYS', header.get('RADESYS', ''))).strip().upper()
    if not radecsys:
        radecsys = 'FK4' if equinox < 1984.0 else 'FK5'

    has_wcs = str(header.get('CTYPE1', '')).upper().startswith('RA')

    # Sky position of the reference pixel
    from_crval = False
    if overrides.center_ra is not None and overrides.center_dec is not None:
        crval1, crval2 = overrides.center_ra, overrides.center_dec
    elif has_wcs and 'CRVAL1' in header and 'CRVAL2' in header:
        crval1, crval2 = float(header['CRVAL1']), float(header['CRVAL2'])
        from_crval = True
    elif 'RA' in header and 'DEC' in header:
        crval1, crval2 = _parse_ra(header['RA']), _parse_dec(header['DEC'])
    else:
        raise IncompleteHeaderError("No image centre in header (CRVAL1/2 or RA/DEC) or overrides")

    # Plate scale and rotation
    sign = -1.0 if overrides.ra_increases_left else 1.0
    rotation = 0.0
    if overrides.secpix is not None:
        cdelt1 = sign * overrides.secpix / 3600.0
        cdelt2 = (overrides.secpix2 or overrides.secpix) / 3600.0
        rotation = _header_float(header, 'CROTA2', 'CROTA1') or 0.0
    elif 'CD1_1' in header or 'CD2_2' in header:
        cd11 = _header_float(header, 'CD1_1') or 0.0
        cd12 = _header_float(header, 'CD1_2') or 0.0
        cd21 = _header_float(header, 'CD2_1') or 0.0
        cd22 = _header_float(header, 'CD2_2') or 0.0
        rho = math.atan2(-cd12, cd22)
        cdelt2 = math.hypot(cd12, cd22)
        if abs(math.cos(rho)) > abs(math.sin(rho)):
            cdelt1 = cd11 / math.cos(rho)
        else:
            cdelt1 = cd21 / math.sin(rho)
        rotation = math.degrees(rho)
    elif 'CDELT1' in header:
        cdelt1 = float(header['CDELT1'])
        cdelt2 = _header_float(header, 'CDELT2') or abs(cdelt1)
        rotation = _header_float(header, 'CROTA2', 'CROTA1') or 0.0
    else:
        secpix = _header_float(header, 'SECPIX', 'SECPIX1', 'SECPIX2')
        secpix2 = _header_float(header, 'SECPIX2')
        if secpix is None:
            pltscale = _header_float(header, 'PLTSCALE')
            pixsize = _header_float(header, 'XPIXSIZE', 'PIXSIZE')
            if pltscale is not None and pixsize is not None:
                secpix = pltscale * pixsize / 1000.0
        if secpix is None:
            raise IncompleteHeaderError("No plate scale in header (CD, CDELT, SECPIX, PLTSCALE) or overrides")
        cdelt1 = sign * secpix / 3600.0
        cdelt2 = (secpix2 or secpix) / 3600.0
        rotation = _header_float(header, 'CROTA2', 'CROTA1') or 0.0

    if overrides.rotation is not None:
        rotation = overrides.rotation

    # Reference pixel
    if overrides.refpix_x is not None and overrides.refpix_y is not None:
        crpix1, crpix2 = overrides.refpix_x, overrides.refpix_y
    elif from_crval and 'CRPIX1' in header and 'CRPIX2' in header:
        crpix1, crpix2 = float(header['CRPIX1']), float(header['CRPIX2'])
    else:
        crpix1, crpix2 = 0.5 * (naxis1 + 1), 0.5 * (naxis2 + 1)

    if overrides.equinox is not None and overrides.equinox != equinox:
        target = 'FK4' if overrides.equinox < 1984.0 else 'FK5'
        crval1, crval2 = projection.convert_equinox(crval1, crval2, radecsys, equinox,
                                                    target, overrides.equinox)
        logger.debug(f"Converted centre from {radecsys} {equinox} to {target} {overrides.equinox}")
        radecsys, equinox = target, overrides.equinox

    transform = TransformModel(
        crval1=float(crval1) % 360.0,
        crval2=float(crval2),
        crpix1=float(crpix1),
        crpix2=float(crpix2),
        cdelt1=float(cdelt1),
        cdelt2=float(cdelt2),
        naxis1=int(naxis1),
        naxis2=int(naxis2),
        rotation=float(rotation),
        projection=overrides.projection,
        radecsys=radecsys,
        equinox=float(equinox),
    )
    logger.debug(f"Nominal transform: {transform.describe()}")
    return transform


_CD_KEYS = ('CD1_1', 'CD1_2', 'CD2_1', 'CD2_2')
_CDELT_KEYS = ('CDELT1', 'CDELT2', 'CROTA1', 'CROTA2')


def write_transform(header: fits.Header, transform: TransformModel,
                    use_cd: bool = False,
                    mean_separation: Optional[float] = None,
                    history: Optional[str] = None) -> None:
    """
    Store a transform in a FITS header.

    Scale and rotation are written either as CDELT/CROTA or as a CD
    matrix; the keywords of the other representation are removed.  A
    non-zero chip rotation always uses the CD form.
    """
    header['CTYPE1'] = f"RA---{transform.projection}"
    header['CTYPE2'] = f"DEC--{transform.projection}"
    header['CRVAL1'] = (transform.crval1, 'Reference right ascension (deg)')
    header['CRVAL2'] = (transform.crval2, 'Reference declination (deg)')

    if use_cd or transform.chip_rotation != 0.0:
        cd, crpix1, crpix2 = transform.folded_cd()
        header['CRPIX1'] = (crpix1, 'Reference pixel along axis 1')
        header['CRPIX2'] = (crpix2, 'Reference pixel along axis 2')
        header['CD1_1'] = cd[0, 0]
        header['CD1_2'] = cd[0, 1]
        header['CD2_1'] = cd[1, 0]
        header['CD2_2'] = cd[1, 1]
        for key in _CDELT_KEYS:
            header.remove(key, ignore_missing=True)
    else:
        header['CRPIX1'] = (transform.crpix1, 'Reference pixel along axis 1')
        header['CRPIX2'] = (transform.crpix2, 'Reference pixel along axis 2')
        header['CDELT1'] = (transform.cdelt1, 'Plate scale (deg/pixel)')
        header['CDELT2'] = (transform.cdelt2, 'Plate scale (deg/pixel)')
        header['CROTA1'] = transform.rotation
        header['CROTA2'] = (transform.rotation, 'Rotation angle (deg)')
        for key in _CD_KEYS:
            header.remove(key, ignore_missing=True)

    if math.isclose(transform.secpix1, transform.secpix2, rel_tol=1e-9):
        header['SECPIX'] = (transform.secpix1, 'Arcseconds per pixel')
        header.remove('SECPIX1', ignore_missing=True)
        header.remove('SECPIX2', ignore_missing=True)
    else:
        header['SECPIX1'] = (transform.secpix1, 'Arcseconds per pixel along axis 1')
        header['SECPIX2'] = (transform.secpix2, 'Arcseconds per pixel along axis 2')
        header.remove('SECPIX', ignore_missing=True)

    header['RADECSYS'] = transform.radecsys
    header['EQUINOX'] = transform.equinox

    if mean_separation is not None:
        header['WCSSEP'] = (mean_separation, 'Mean catalog match separation (arcsec)')
    if history:
        header.add_history(history)
