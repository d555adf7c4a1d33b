"""
Reference catalog access for astrometric calibration.

A catalog is anything with a ``search`` method returning CatalogSource
objects inside a sky box.  TableCatalog serves the search from an
astropy Table, so any format Table.read understands (FITS, ECSV, CSV,
VOTable) can be used as a reference catalog.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Union

import numpy as np
from astropy.table import Table

from .config_manager import CatalogConfig
from .utils import ConfigurationError, validate_file_exists


@dataclass(frozen=True)
class CatalogSource:
    """One reference star: identifier, position in degrees, magnitude and class."""
    id: str
    ra: float
    dec: float
    mag: float
    class_code: int = 0


class CatalogQuery(Protocol):
    """Box search interface the calibration pipeline consumes."""

    frame: str
    equinox: float

    def search(self, center_ra: float, center_dec: float,
               half_width_ra: float, half_width_dec: float,
               mag_min: float, mag_max: float,
               max_count: int) -> List[CatalogSource]:
        ...


class TableCatalog:
    """
    Reference catalog backed by an astropy Table.

    Parameters:
    -----------
    table : astropy.table.Table
        Catalog rows; must contain the RA and Dec columns
    id_column, ra_column, dec_column, mag_column, class_column : str
        Column names. Missing id, magnitude or class columns fall back
        to the row number, 0.0 and 0 respectively
    frame : str, default='FK5'
        Coordinate system of the positions
    equinox : float, default=2000.0
        Equinox of the positions
    class_code : int, optional
        Only return sources with this classification
    """

    def __init__(self, table: Table,
                 id_column: str = 'id',
                 ra_column: str = 'ra',
                 dec_column: str = 'dec',
                 mag_column: str = 'mag',
                 class_column: str = 'class',
                 frame: str = 'FK5',
                 equinox: float = 2000.0,
                 class_code: Optional[int] = None,
                 name: str = 'table'):
        self.logger = logging.getLogger(__name__)

        for column in (ra_column, dec_column):
            if column not in table.colnames:
                raise ConfigurationError(
                    f"Catalog '{name}' has no column '{column}' (columns: {table.colnames})")

        n_rows = len(table)
        self.name = name
        self.frame = frame.upper()
        self.equinox = float(equinox)
        self.class_code = class_code

        self._ra = np.asarray(table[ra_column], dtype=float) % 360.0
        self._dec = np.asarray(table[dec_column], dtype=float)
        if id_column in table.colnames:
            # FITS tables hold byte strings
            self._ids = np.array([v.decode().strip() if isinstance(v, bytes) else str(v)
                                  for v in table[id_column]])
        else:
            self._ids = np.array([str(i + 1) for i in range(n_rows)])
        if mag_column in table.colnames:
            self._mag = np.asarray(table[mag_column], dtype=float)
        else:
            self._mag = np.zeros(n_rows)
        if class_column in table.colnames:
            self._class = np.asarray(table[class_column], dtype=int)
        else:
            self._class = np.zeros(n_rows, dtype=int)

        self.logger.debug(f"Catalog '{name}' holds {n_rows} sources ({self.frame} {self.equinox})")

    def __len__(self) -> int:
        return len(self._ra)

    @classmethod
    def from_config(cls, config: CatalogConfig,
                    table: Optional[Table] = None) -> 'TableCatalog':
        """Build a catalog from configuration, reading ``config.path`` unless a table is given."""
        if table is None:
            if not config.path:
                raise ConfigurationError("No reference catalog path configured")
            path = validate_file_exists(config.path, "Reference catalog")
            table = Table.read(path)
            name = Path(path).name
        else:
            name = 'table'
        return cls(table,
                   id_column=config.id_column,
                   ra_column=config.ra_column,
                   dec_column=config.dec_column,
                   mag_column=config.mag_column,
                   class_column=config.class_column,
                   frame=config.frame,
                   equinox=config.equinox,
                   class_code=config.class_code,
                   name=name)

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> 'TableCatalog':
        path = validate_file_exists(path, "Reference catalog")
        return cls(Table.read(path), name=Path(path).name, **kwargs)

    def search(self, center_ra: float, center_dec: float,
               half_width_ra: float, half_width_dec: float,
               mag_min: float = 0.0, mag_max: float = 0.0,
               max_count: int = 50) -> List[CatalogSource]:
        """
        Return the brightest sources inside a sky box.

        Right ascension differences wrap at 0/360 degrees.  Equal
        magnitude limits disable magnitude filtering.  Results are
        sorted by magnitude, brightest first, and truncated to
        ``max_count``.
        """
        dra = (self._ra - center_ra + 180.0) % 360.0 - 180.0
        mask = (np.abs(dra) <= half_width_ra) & (np.abs(self._dec - center_dec) <= half_width_dec)

        if mag_min != mag_max:
            low, high = min(mag_min, mag_max), max(mag_min, mag_max)
            mask &= (self._mag >= low) & (self._mag <= high)

        if self.class_code is not None:
            mask &= self._class == self.class_code

        indices = np.nonzero(mask)[0]
        # NaN magnitudes sort last
        order = np.argsort(self._mag[indices], kind='stable')
        indices = indices[order]

        n_found = len(indices)
        if max_count > 0:
            indices = indices[:max_count]

        self.logger.debug(f"Catalog '{self.name}': {n_found} sources in box, returning {len(indices)}")

        return [
            CatalogSource(id=self._ids[i], ra=float(self._ra[i]), dec=float(self._dec[i]),
                          mag=float(self._mag[i]), class_code=int(self._class[i]))
            for i in indices
        ]
