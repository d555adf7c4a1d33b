"""
Shared fixtures: a synthetic star field with a known WCS and the
matching reference catalog.
"""

import os
import sys

import numpy as np
import pytest
from astropy.io import fits
from astropy.table import Table

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from wcsfit.transform import SkyProjection, TransformModel

# FITS pixel positions of the synthetic stars, brightest first
STAR_PIXELS = [
    (30.0, 35.0), (75.0, 30.0), (125.0, 40.0), (170.0, 32.0),
    (40.0, 85.0), (95.0, 80.0), (150.0, 90.0), (35.0, 140.0),
    (85.0, 130.0), (135.0, 145.0), (172.0, 150.0), (60.0, 172.0),
    (115.0, 170.0),
]


def gaussian_star_image(shape, positions, amplitudes, sigma=1.5,
                        background=100.0, noise=5.0, seed=42):
    """Gaussian stars on a noisy flat background; positions are 1-based."""
    rng = np.random.default_rng(seed)
    image = background + rng.normal(0.0, noise, shape)
    yy, xx = np.indices(shape, dtype=float)
    for (x, y), amp in zip(positions, amplitudes):
        image += amp * np.exp(-((xx - (x - 1.0)) ** 2 + (yy - (y - 1.0)) ** 2) / (2 * sigma ** 2))
    return image


@pytest.fixture
def projection():
    return SkyProjection()


@pytest.fixture
def true_transform():
    """1 arcsec/pixel tangent projection of a 200x200 image."""
    return TransformModel(crval1=150.0, crval2=20.0, crpix1=100.5, crpix2=100.5,
                          cdelt1=-1.0 / 3600.0, cdelt2=1.0 / 3600.0,
                          naxis1=200, naxis2=200)


@pytest.fixture
def star_mags():
    return [12.0 + 0.2 * i for i in range(len(STAR_PIXELS))]


@pytest.fixture
def star_image(star_mags):
    amplitudes = [4000.0 * 10 ** (-0.4 * (m - 12.0)) for m in star_mags]
    return gaussian_star_image((200, 200), STAR_PIXELS, amplitudes)


@pytest.fixture
def reference_table(true_transform, projection, star_mags):
    x = np.array([p[0] for p in STAR_PIXELS])
    y = np.array([p[1] for p in STAR_PIXELS])
    ra, dec = projection.project_to_sky(true_transform, x, y)
    return Table({
        'id': [f"S{i + 1:03d}" for i in range(len(x))],
        'ra': ra,
        'dec': dec,
        'mag': star_mags,
    })


@pytest.fixture
def nominal_header(true_transform):
    """Header whose WCS is a few pixels and a fraction of a degree off."""
    header = fits.Header()
    header['NAXIS'] = 2
    header['NAXIS1'] = true_transform.naxis1
    header['NAXIS2'] = true_transform.naxis2
    header['CTYPE1'] = 'RA---TAN'
    header['CTYPE2'] = 'DEC--TAN'
    header['CRVAL1'] = true_transform.crval1 + 0.0015
    header['CRVAL2'] = true_transform.crval2 - 0.0012
    header['CRPIX1'] = true_transform.crpix1
    header['CRPIX2'] = true_transform.crpix2
    header['CDELT1'] = true_transform.cdelt1
    header['CDELT2'] = true_transform.cdelt2
    header['CROTA2'] = 0.3
    header['RADECSYS'] = 'FK5'
    header['EQUINOX'] = 2000.0
    return header


@pytest.fixture
def star_fits(tmp_path, star_image, nominal_header):
    """The synthetic field written as a FITS file with the nominal header."""
    path = tmp_path / 'field.fits'
    hdu = fits.PrimaryHDU(data=star_image.astype(np.float32))
    for key, value in nominal_header.items():
        if key not in ('NAXIS', 'NAXIS1', 'NAXIS2'):
            hdu.header[key] = value
    hdu.writeto(path)
    return path


@pytest.fixture
def catalog_file(tmp_path, reference_table):
    path = tmp_path / 'reference.ecsv'
    reference_table.write(path, format='ascii.ecsv')
    return path
