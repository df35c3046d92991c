
import os

import numpy as np
import pandas as pd

from typing import Tuple, Sequence, Union

from ..exceptions import InvalidInputError, SchemaMismatchError
from ..zonation.predictor import NO_DATA


class EnvironmentalGrid:
    """
    Equal-resolution multi-band predictor grid of one epoch.

    The grid is the interface to the raster loader: bands are named like the predictors, cells map to coordinates
    through a north-up affine ``transform = (x_origin, pixel_width, y_origin, pixel_height)`` (``pixel_height`` is
    negative for north-up rasters), and no-data cells are flagged explicitly instead of being zero.

    Attributes:
        bands (np.ndarray): Band values, shape (n_bands, n_rows, n_columns).
        band_names (List[str]): Band name per band.
        transform (Tuple[float, float, float, float]): Cell-to-coordinate mapping of the upper-left corner.
        nodata_mask (np.ndarray): True where a cell has no data, shape (n_rows, n_columns).
    """
    def __init__(
            self,
            bands: np.ndarray,
            band_names: Sequence[str],
            transform: Tuple[float, float, float, float] = (0.0, 1.0, 0.0, -1.0),
            nodata_mask: Union[np.ndarray, None] = None,
            nodata_value: Union[float, None] = None,
    ):
        bands = np.asarray(bands, dtype=float)
        if bands.ndim == 2:
            bands = bands[np.newaxis]
        if bands.ndim != 3:
            raise InvalidInputError(f'Expected bands of shape (n_bands, n_rows, n_columns), got {bands.shape}.')

        band_names = [str(name) for name in band_names]
        if len(band_names) != bands.shape[0]:
            raise InvalidInputError(f'Got {len(band_names)} band names for {bands.shape[0]} bands.')
        if len(set(band_names)) != len(band_names):
            raise InvalidInputError(f'Band names must be unique, got {band_names}.')

        if len(tuple(transform)) != 4:
            raise InvalidInputError("'transform' must be (x_origin, pixel_width, y_origin, pixel_height).")

        if nodata_value is not None:
            bands = np.where(bands == nodata_value, np.nan, bands)

        if nodata_mask is None:
            nodata_mask = np.zeros(bands.shape[1:], dtype=bool)
        nodata_mask = np.asarray(nodata_mask, dtype=bool)
        if nodata_mask.shape != bands.shape[1:]:
            raise InvalidInputError(f'nodata_mask {nodata_mask.shape} does not match the grid {bands.shape[1:]}.')

        self.bands = bands
        self.band_names = band_names
        self.transform = tuple(float(v) for v in transform)
        # A cell is missing if flagged or if any band is NaN
        self.nodata_mask = nodata_mask | ~np.isfinite(bands).all(axis=0)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.bands.shape[1], self.bands.shape[2]

    @property
    def valid_mask(self) -> np.ndarray:
        return ~self.nodata_mask

    def stack(self, names: Sequence[str]) -> np.ndarray:
        """
        Bands ordered like ``names``.

        Raises:
            SchemaMismatchError: If any name has no band.
        """
        missing = [name for name in names if name not in self.band_names]
        if missing:
            raise SchemaMismatchError(f'Grid has no bands for predictors {missing} (bands: {self.band_names}).')
        return self.bands[[self.band_names.index(name) for name in names]]

    def cell_to_coordinate(self, rows: np.ndarray, columns: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        # Coordinates of cell centers
        x0, width, y0, height = self.transform
        x = x0 + (np.asarray(columns) + 0.5) * width
        y = y0 + (np.asarray(rows) + 0.5) * height
        return x, y

    def coordinate_to_cell(self, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Row and column of the cells containing the coordinates; ``-1`` for coordinates outside the grid.
        """
        return coordinate_to_cell(x=x, y=y, transform=self.transform, shape=self.shape)

    def sample(self, x: np.ndarray, y: np.ndarray) -> pd.DataFrame:
        """
        Band values at point coordinates (missing outside the grid or on no-data cells).

        Returns:
            pd.DataFrame: One row per point, one column per band.
        """
        rows, columns = self.coordinate_to_cell(x, y)
        inside = (rows >= 0) & (columns >= 0)

        values = np.full((rows.shape[0], len(self.band_names)), np.nan)
        values[inside] = self.bands[:, rows[inside], columns[inside]].T

        flagged = np.zeros(rows.shape[0], dtype=bool)
        flagged[inside] = self.nodata_mask[rows[inside], columns[inside]]
        values[flagged] = np.nan

        return pd.DataFrame(values, columns=self.band_names)

    def features(self) -> pd.DataFrame:
        # One row per cell (row-major) with band values and cell-center coordinates
        rows, columns = np.indices(self.shape)
        x, y = self.cell_to_coordinate(rows.ravel(), columns.ravel())
        df = pd.DataFrame(self.bands.reshape(self.bands.shape[0], -1).T, columns=self.band_names)
        df['lon'] = x
        df['lat'] = y
        return df


def coordinate_to_cell(
        x: np.ndarray,
        y: np.ndarray,
        transform: Tuple[float, float, float, float],
        shape: Tuple[int, int],
) -> Tuple[np.ndarray, np.ndarray]:
    x0, width, y0, height = transform
    x = np.atleast_1d(np.asarray(x, dtype=float))
    y = np.atleast_1d(np.asarray(y, dtype=float))

    columns = np.floor((x - x0) / width)
    rows = np.floor((y - y0) / height)

    outside = ~np.isfinite(rows) | ~np.isfinite(columns)
    outside |= (rows < 0) | (rows >= shape[0]) | (columns < 0) | (columns >= shape[1])

    rows = np.where(outside, -1, rows).astype(int)
    columns = np.where(outside, -1, columns).astype(int)
    return rows, columns


def extract_at_points(
        risk_grid: np.ndarray,
        transform: Tuple[float, float, float, float],
        x: np.ndarray,
        y: np.ndarray,
        no_data: int = NO_DATA,
) -> np.ndarray:
    """
    Risk tier of the cells containing the given coordinates.

    Args:
        risk_grid (np.ndarray): 2-D tier grid.
        transform (tuple): Affine transform of the grid, see :class:`EnvironmentalGrid`.
        x (np.ndarray): Point x coordinates / longitudes.
        y (np.ndarray): Point y coordinates / latitudes.
        no_data (int): Value for points outside the grid. Defaults to ``NO_DATA``.

    Returns:
        np.ndarray: Tier per point; ``no_data`` outside the grid or on no-data cells.
    """
    risk_grid = np.asarray(risk_grid)
    rows, columns = coordinate_to_cell(x=x, y=y, transform=transform, shape=risk_grid.shape)
    inside = rows >= 0
    values = np.full(rows.shape[0], no_data, dtype=risk_grid.dtype)
    values[inside] = risk_grid[rows[inside], columns[inside]]
    return values


# ### .npz reference adapters ##########################################################################################
def load_grid(filename: str, filepath: Union[str, None] = None) -> EnvironmentalGrid:
    """
    Load an environmental grid stored with :func:`save_grid`.

    The ``.npz`` file holds ``bands`` (n_bands, n_rows, n_columns), ``band_names``, ``transform`` and optionally
    ``nodata_mask``.
    """
    if filepath is None:
        filepath = os.getcwd()

    with np.load(os.path.join(filepath, filename), allow_pickle=False) as npz:
        missing = [key for key in ('bands', 'band_names') if key not in npz.files]
        if missing:
            raise InvalidInputError(f'{filename} is missing arrays {missing}.')
        return EnvironmentalGrid(
            bands=npz['bands'],
            band_names=[str(name) for name in npz['band_names']],
            transform=tuple(npz['transform']) if 'transform' in npz.files else (0.0, 1.0, 0.0, -1.0),
            nodata_mask=npz['nodata_mask'] if 'nodata_mask' in npz.files else None,
        )


def save_grid(grid: EnvironmentalGrid, filename: str, filepath: Union[str, None] = None) -> None:
    if filepath is None:
        filepath = os.getcwd()
    np.savez_compressed(
        os.path.join(filepath, filename),
        bands=grid.bands,
        band_names=np.array(grid.band_names),
        transform=np.array(grid.transform),
        nodata_mask=grid.nodata_mask,
    )


def write_risk_grid(
        risk_grid: np.ndarray,
        filename: str,
        filepath: Union[str, None] = None,
        transform: Tuple[float, float, float, float] = (0.0, 1.0, 0.0, -1.0),
        no_data: int = NO_DATA,
) -> str:
    """
    Persist a single-band risk grid with its georeferencing and no-data sentinel.

    Returns:
        str: Path of the written file.
    """
    if filepath is None:
        filepath = os.getcwd()
    os.makedirs(filepath, exist_ok=True)

    path = os.path.join(filepath, filename)
    np.savez_compressed(
        path,
        risk=np.asarray(risk_grid, dtype=np.int32),
        transform=np.array(transform, dtype=float),
        no_data=np.array(no_data, dtype=np.int32),
    )
    # np.savez appends '.npz' if missing
    return path if path.endswith('.npz') else path + '.npz'


def read_risk_grid(filename: str, filepath: Union[str, None] = None) -> Tuple[np.ndarray, Tuple[float, ...], int]:
    if filepath is None:
        filepath = os.getcwd()
    with np.load(os.path.join(filepath, filename), allow_pickle=False) as npz:
        return npz['risk'], tuple(npz['transform'].tolist()), int(npz['no_data'])

