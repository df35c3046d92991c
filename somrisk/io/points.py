
import os

import numpy as np
import pandas as pd

from typing import List, Union

from ..exceptions import InvalidInputError


def load_points(
        filename: str,
        filepath: Union[str, None] = None,
        lon_key: str = 'lon',
        lat_key: str = 'lat',
        label_key: Union[str, None] = None,
        predictor_names: Union[List[str], None] = None,
        verbosity: int = 1,
) -> pd.DataFrame:
    """
    Load a point set (presence, background, absence or validation records) from a CSV file.

    Coordinates are expected to be already reprojected to the coordinate reference of the environmental grids.
    Empty predictor fields are read as missing values and kept; they are handled downstream.

    Args:
        filename (str): CSV filename.
        filepath (str or None): Directory containing the file. Defaults to CWD.
        lon_key (str): Column with x / longitude. Renamed to ``'lon'``. Defaults to 'lon'.
        lat_key (str): Column with y / latitude. Renamed to ``'lat'``. Defaults to 'lat'.
        label_key (str or None): Optional binary label column (1 presence, 0 absence). Renamed to ``'label'``.
        predictor_names (list[str] or None): Predictor columns to keep. If ``None``, all columns are kept.
        verbosity (int): Logging level. Defaults to 1.

    Returns:
        pd.DataFrame: Columns ``'lon'``, ``'lat'``, the predictors and, if requested, ``'label'``.

    Raises:
        InvalidInputError: If coordinate, label or predictor columns are missing, or labels are not 0/1.
    """
    if filepath is None:
        filepath = os.getcwd()

    df = pd.read_csv(os.path.join(filepath, filename))

    required = [lon_key, lat_key] + ([label_key] if label_key is not None else [])
    missing = [key for key in required if key not in df.columns]
    if missing:
        raise InvalidInputError(f'{filename} is missing columns {missing}.')

    rename = {lon_key: 'lon', lat_key: 'lat'}
    if label_key is not None:
        rename[label_key] = 'label'
    df = df.rename(columns=rename)

    if predictor_names is not None:
        missing_predictors = [name for name in predictor_names if name not in df.columns]
        if missing_predictors:
            raise InvalidInputError(f'{filename} is missing predictors {missing_predictors}.')
        keep = ['lon', 'lat'] + list(predictor_names) + (['label'] if label_key is not None else [])
        df = df.loc[:, keep]

    if label_key is not None:
        labels = df['label'].dropna().unique()
        if not set(labels.tolist()).issubset({0, 1}):
            raise InvalidInputError(f"Labels must be 0 (absence) or 1 (presence), found {sorted(labels.tolist())}.")

    if verbosity >= 2:
        n_incomplete = int(df.isna().any(axis=1).sum())
        print(f'# ### Loaded {df.shape[0]} points from {filename} ({n_incomplete} with missing values).')

    return df


def coordinates(points: pd.DataFrame) -> np.ndarray:
    # (n_points, 2) array of lon, lat
    return points.loc[:, ['lon', 'lat']].to_numpy(dtype=float)
