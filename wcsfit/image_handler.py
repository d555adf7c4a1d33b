"""
FITS image and header access for the calibration pipeline.

Pixel data is read once into a PixelImage.  Headers are opened through
FitsImageStore, a context manager that only writes back when the
calibration committed a transform and the block exited without error.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
from astropy.io import fits

from .transform import TransformModel, write_transform
from .utils import DataValidationError, validate_file_exists, validate_image_array


@dataclass
class PixelImage:
    """Pixel buffer in physical units plus its storage description."""
    data: np.ndarray
    bitpix: int = -64
    bzero: float = 0.0
    bscale: float = 1.0

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @classmethod
    def from_array(cls, data: np.ndarray) -> 'PixelImage':
        return cls(data=validate_image_array(np.asarray(data)))


def _select_hdu(hdul: fits.HDUList, extension: Union[int, str]):
    if isinstance(extension, str):
        for hdu in hdul:
            if hdu.header.get('EXTNAME', '').upper() == extension.upper():
                return hdu
        raise ValueError(f"Extension '{extension}' not found")
    return hdul[extension]


def read_pixel_image(file_path: Union[str, Path],
                     extension: Union[int, str] = 0) -> PixelImage:
    """
    Read a FITS image HDU into a PixelImage.

    Parameters:
    -----------
    file_path : str or Path
        Path to the image file
    extension : int or str, default=0
        HDU index or EXTNAME

    Returns:
    --------
    PixelImage
        Image with scaled float64 pixel values
    """
    file_path = validate_file_exists(file_path, "Image file")
    with fits.open(file_path) as hdul:
        hdu = _select_hdu(hdul, extension)
        return _pixel_image_from_hdu(hdu, file_path)


def _pixel_image_from_hdu(hdu, file_path) -> PixelImage:
    header = hdu.header
    # Read before touching .data: astropy drops BZERO/BSCALE once it scales
    bitpix = int(header.get('BITPIX', -64))
    bzero = float(header.get('BZERO', 0.0))
    bscale = float(header.get('BSCALE', 1.0))

    if hdu.data is None:
        raise DataValidationError(f"No image data in {file_path}")

    data = validate_image_array(np.array(hdu.data), name=str(file_path))
    return PixelImage(data=data, bitpix=bitpix, bzero=bzero, bscale=bscale)


class FitsImageStore:
    """
    Scoped access to a FITS image and its header.

    The file is opened read-only on entry and always closed on exit.
    A committed transform is written only when the block raised no
    exception: in place, or to ``output_path`` when one is given.
    Pixel data is never rewritten in place.
    """

    def __init__(self, path: Union[str, Path],
                 output_path: Optional[Union[str, Path]] = None,
                 extension: Union[int, str] = 0,
                 overwrite: bool = False,
                 write: bool = True):
        self.logger = logging.getLogger(__name__)
        self.path = validate_file_exists(path, "Image file")
        self.output_path = Path(output_path) if output_path else None
        self.extension = extension
        self.overwrite = overwrite
        self.write = write
        self._hdul = None
        self._hdu = None
        self._header = None
        self._image = None
        self._pending = None

    def __enter__(self) -> 'FitsImageStore':
        self._hdul = fits.open(self.path)
        self._hdu = _select_hdu(self._hdul, self.extension)
        self._header = self._hdu.header.copy()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        try:
            self._hdul.close()
        finally:
            self._hdul = None
            self._hdu = None

        if self._pending is not None:
            if exc_type is not None:
                self.logger.warning(f"Discarding header changes for {self.path.name}: {exc_value}")
            elif self.write:
                self._flush()
        return False

    @property
    def header(self) -> fits.Header:
        if self._header is None:
            raise RuntimeError("FitsImageStore is not open")
        return self._header

    @property
    def image(self) -> PixelImage:
        if self._image is None:
            if self._hdu is None:
                raise RuntimeError("FitsImageStore is not open")
            self._image = _pixel_image_from_hdu(self._hdu, self.path)
        return self._image

    @property
    def committed(self) -> bool:
        return self._pending is not None

    def commit(self, transform: TransformModel, use_cd: bool = False,
               mean_separation: Optional[float] = None,
               history: Optional[str] = None) -> None:
        """Stage a transform for writing when the block exits cleanly."""
        self._pending = dict(transform=transform.copy(), use_cd=use_cd,
                             mean_separation=mean_separation, history=history)
        write_transform(self.header, **self._pending)

    def _flush(self) -> None:
        if self.output_path is not None:
            with fits.open(self.path, do_not_scale_image_data=True) as hdul:
                write_transform(_select_hdu(hdul, self.extension).header, **self._pending)
                hdul.writeto(self.output_path, overwrite=self.overwrite)
            self.logger.info(f"Wrote calibrated image to {self.output_path}")
        else:
            with fits.open(self.path, mode='update', do_not_scale_image_data=True) as hdul:
                write_transform(_select_hdu(hdul, self.extension).header, **self._pending)
            self.logger.info(f"Updated WCS in {self.path}")
