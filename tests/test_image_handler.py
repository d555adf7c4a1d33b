"""
Unit tests for FITS image access and scoped header updates.
"""

import numpy as np
import pytest
from astropy.io import fits

from wcsfit.image_handler import FitsImageStore, PixelImage, read_pixel_image
from wcsfit.utils import DataValidationError


@pytest.fixture
def scaled_fits(tmp_path):
    """16-bit image stored with BZERO/BSCALE scaling."""
    path = tmp_path / 'scaled.fits'
    data = (np.arange(12 * 10).reshape(12, 10) * 3 + 1000).astype(np.float64)
    # scale() rewrites the array it was given
    hdu = fits.PrimaryHDU(data.copy())
    hdu.scale('int16', bzero=32768, bscale=1.0)
    hdu.header['OBJECT'] = 'test field'
    hdu.writeto(path)
    return path, data


class TestReadPixelImage:

    def test_physical_values(self, scaled_fits):
        path, data = scaled_fits
        image = read_pixel_image(path)

        assert isinstance(image, PixelImage)
        np.testing.assert_allclose(image.data, data)
        assert image.bitpix == 16
        assert image.bzero == 32768.0
        assert (image.width, image.height) == (10, 12)

    def test_named_extension(self, tmp_path):
        path = tmp_path / 'mef.fits'
        fits.HDUList([fits.PrimaryHDU(),
                      fits.ImageHDU(np.ones((5, 6)), name='SCI')]).writeto(path)
        image = read_pixel_image(path, extension='sci')
        assert image.data.shape == (5, 6)
        with pytest.raises(ValueError):
            read_pixel_image(path, extension='ERR')

    def test_from_array(self):
        image = PixelImage.from_array(np.zeros((3, 7), dtype=np.uint16))
        assert image.data.dtype == np.float64
        assert (image.width, image.height) == (7, 3)
        assert image.bitpix == -64

    def test_empty_primary(self, tmp_path):
        path = tmp_path / 'empty.fits'
        fits.PrimaryHDU().writeto(path)
        with pytest.raises(DataValidationError):
            read_pixel_image(path)


class TestFitsImageStore:

    def test_commit_updates_in_place(self, star_fits, true_transform):
        with FitsImageStore(star_fits) as store:
            assert store.image.width == 200
            store.commit(true_transform, mean_separation=0.2, history='test fit')
            assert store.committed
            assert store.header['CRVAL1'] == pytest.approx(true_transform.crval1)

        header = fits.getheader(star_fits)
        assert header['CRVAL1'] == pytest.approx(true_transform.crval1)
        assert header['WCSSEP'] == pytest.approx(0.2)

    def test_no_commit_leaves_file(self, star_fits):
        before = fits.getheader(star_fits)
        with FitsImageStore(star_fits) as store:
            store.header['CRVAL1'] = 0.0
        assert fits.getheader(star_fits)['CRVAL1'] == before['CRVAL1']

    def test_exception_discards_commit(self, star_fits, true_transform):
        before = fits.getheader(star_fits)
        with pytest.raises(RuntimeError):
            with FitsImageStore(star_fits) as store:
                store.commit(true_transform)
                raise RuntimeError("stage failed")
        assert fits.getheader(star_fits)['CRVAL1'] == before['CRVAL1']

    def test_write_disabled(self, star_fits, true_transform):
        before = fits.getheader(star_fits)
        with FitsImageStore(star_fits, write=False) as store:
            store.commit(true_transform)
        assert fits.getheader(star_fits)['CRVAL1'] == before['CRVAL1']

    def test_scaled_pixels_are_not_rewritten(self, scaled_fits, true_transform, tmp_path):
        path, data = scaled_fits
        output = tmp_path / 'out.fits'
        with FitsImageStore(path, output_path=output) as store:
            store.commit(true_transform)

        with fits.open(output, do_not_scale_image_data=True) as hdul:
            assert hdul[0].header['BITPIX'] == 16
            assert hdul[0].header['BZERO'] == 32768
            assert hdul[0].header['OBJECT'] == 'test field'
            assert 'CRVAL1' in hdul[0].header
        np.testing.assert_allclose(fits.getdata(output), data)

    def test_closed_store(self, star_fits):
        store = FitsImageStore(star_fits)
        with pytest.raises(RuntimeError):
            store.header
