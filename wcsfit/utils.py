"""
Shared utilities for the wcsfit astrometric calibration package.

Logging setup, the calibration error taxonomy, stage timing and memory
context managers, and the input checks used by the detection, matching
and fitting stages.
"""

import copy
import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Union

import numpy as np
import psutil

PACKAGE_LOGGER = 'wcsfit'

_CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
_FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours the level name by severity."""

    COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        # other handlers share the record; colour a copy
        record = copy.copy(record)
        color = self.COLORS.get(record.levelno, '')
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  enable_colors: bool = True) -> logging.Logger:
    """
    Configure the ``wcsfit`` package logger.

    Every module logs through ``logging.getLogger(__name__)`` and so
    inherits these handlers.  Calling this again replaces them.

    Parameters:
    -----------
    level : str, default='INFO'
        Console level name ('DEBUG' through 'CRITICAL')
    log_file : str, optional
        Also write a DEBUG-level log with call sites to this file
    enable_colors : bool, default=True
        Colour level names when stdout is a terminal

    Returns:
    --------
    logging.Logger
        The package logger
    """
    numeric_level = getattr(logging, level.upper())
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(numeric_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(numeric_level)
    if enable_colors and sys.stdout.isatty():
        console.setFormatter(ColoredFormatter(_CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    else:
        console.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger


class DataValidationError(Exception):
    """Pixel data that cannot be calibrated: empty, not 2-D, or all non-finite."""
    pass


class ConfigurationError(Exception):
    """Invalid or unreadable configuration, including a missing catalog."""
    pass


class CalibrationError(Exception):
    """Base class for errors that abort the calibration of one image."""
    pass


class InsufficientCatalogStars(CalibrationError):
    """The reference catalog returned too few stars in the search box."""
    pass


class InsufficientImageSources(CalibrationError):
    """The detector found too few star-like sources in the image."""
    pass


class AmbiguousOrInsufficientMatch(CalibrationError):
    """Translation voting did not reach the minimum bin size."""
    pass


class OptimizerDidNotConverge(CalibrationError):
    """The simplex fit hit its evaluation cap before converging."""
    pass


class AllocationFailure(CalibrationError):
    """A working array could not be allocated; the run cannot continue."""
    pass


class IncompleteHeaderError(CalibrationError):
    """A nominal transform could not be derived from header and overrides."""
    pass


def _resident_mb() -> float:
    return psutil.Process().memory_info().rss / (1024.0 * 1024.0)


@contextmanager
def memory_monitor(operation_name: str, logger: Optional[logging.Logger] = None):
    """
    Log resident memory before and after a block at DEBUG level.

    Parameters:
    -----------
    operation_name : str
        Label used in the log messages
    logger : logging.Logger, optional
        Logger to report through; defaults to this module's logger
    """
    logger = logger or logging.getLogger(__name__)
    before = _resident_mb()
    logger.debug(f"Starting {operation_name} - Initial memory: {before:.1f} MB")
    try:
        yield
    finally:
        after = _resident_mb()
        logger.debug(f"Completed {operation_name} - Final memory: {after:.1f} MB "
                     f"({after - before:+.1f} MB)")


@contextmanager
def timing_context(operation_name: str, logger: Optional[logging.Logger] = None):
    """Log the wall time of a block at INFO level, even when it raises."""
    logger = logger or logging.getLogger(__name__)
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.info(f"Completed {operation_name} in {time.perf_counter() - start:.2f} seconds")


def validate_file_exists(file_path: Union[str, Path],
                         file_description: str = "File") -> Path:
    """
    Return ``file_path`` as a Path after checking it is a readable file.

    Raises:
    -------
    FileNotFoundError
        If nothing exists at the path
    ValueError
        If the path is a directory or other non-regular file
    PermissionError
        If the file cannot be read
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"{file_description} not found: {path}")
    if not path.is_file():
        raise ValueError(f"{file_description} is not a regular file: {path}")
    if not os.access(path, os.R_OK):
        raise PermissionError(f"{file_description} is not readable: {path}")
    return path


def validate_output_directory(output_dir: Union[str, Path],
                              create_if_missing: bool = True) -> Path:
    """
    Return a writable output directory, creating it when allowed.

    Parameters:
    -----------
    output_dir : str or Path
        Directory for calibrated images or residual products
    create_if_missing : bool, default=True
        Create missing parents as well; otherwise raise FileNotFoundError
    """
    path = Path(output_dir)
    if not path.exists():
        if not create_if_missing:
            raise FileNotFoundError(f"Output directory does not exist: {path}")
        path.mkdir(parents=True, exist_ok=True)
        logging.getLogger(__name__).info(f"Created output directory: {path}")
    elif not path.is_dir():
        raise ValueError(f"Output path is not a directory: {path}")
    elif not os.access(path, os.W_OK):
        raise PermissionError(f"Output directory is not writable: {path}")
    return path


def validate_image_array(image_data: np.ndarray, name: str = "Image") -> np.ndarray:
    """
    Check that pixel data is a usable 2-D array and return it as float64.

    A 3-D cube with a single plane is squeezed to 2-D.

    Raises:
    -------
    DataValidationError
        If the array is empty, not 2-D or has no finite values
    """
    if not isinstance(image_data, np.ndarray):
        raise DataValidationError(f"{name} must be a numpy array, got {type(image_data).__name__}")
    if image_data.size == 0:
        raise DataValidationError(f"{name} contains no pixels")

    if image_data.ndim == 3 and image_data.shape[0] == 1:
        logging.getLogger(__name__).warning(f"Using the single plane of 3-D {name}")
        image_data = image_data[0]
    if image_data.ndim != 2:
        raise DataValidationError(f"{name} has {image_data.ndim} dimensions, expected 2")

    finite = np.isfinite(image_data)
    n_finite = int(finite.sum())
    if n_finite == 0:
        raise DataValidationError(f"{name} contains no finite pixels")
    if n_finite < finite.size // 2:
        logging.getLogger(__name__).warning(
            f"{name}: only {n_finite} of {finite.size} pixels are finite")

    return image_data.astype(np.float64)
