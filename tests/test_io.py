import numpy as np
import pandas as pd
import pytest

from somrisk.io import (
    load_points, coordinates, EnvironmentalGrid, coordinate_to_cell, extract_at_points, load_grid, save_grid,
    write_risk_grid, read_risk_grid
)
from somrisk.zonation import NO_DATA
from somrisk.exceptions import InvalidInputError, SchemaMismatchError


@pytest.fixture
def points_csv(tmp_path):
    df = pd.DataFrame({
        'x': [1.5, 2.5, 3.5],
        'y': [-1.5, -2.5, -3.5],
        'temp': [1.0, np.nan, 3.0],
        'rain': [0.1, 0.2, 0.3],
        'site': ['a', 'b', 'c'],
        'case': [1, 0, 1],
    })
    df.to_csv(tmp_path / 'points.csv', index=False)
    return tmp_path


def test_load_points_renames_and_selects(points_csv):
    df = load_points(
        'points.csv', filepath=str(points_csv), lon_key='x', lat_key='y', label_key='case',
        predictor_names=['temp', 'rain'], verbosity=0,
    )

    assert list(df.columns) == ['lon', 'lat', 'temp', 'rain', 'label']
    assert df['label'].tolist() == [1, 0, 1]
    assert np.isnan(df.loc[1, 'temp'])
    assert coordinates(df).tolist() == [[1.5, -1.5], [2.5, -2.5], [3.5, -3.5]]


def test_load_points_keeps_all_columns(points_csv):
    df = load_points('points.csv', filepath=str(points_csv), lon_key='x', lat_key='y', verbosity=0)
    assert set(df.columns) == {'lon', 'lat', 'temp', 'rain', 'site', 'case'}


def test_load_points_errors(points_csv):
    with pytest.raises(InvalidInputError):
        load_points('points.csv', filepath=str(points_csv), verbosity=0)
    with pytest.raises(InvalidInputError):
        load_points('points.csv', filepath=str(points_csv), lon_key='x', lat_key='y',
                    predictor_names=['elevation'], verbosity=0)

    pd.DataFrame({'lon': [0.0], 'lat': [0.0], 'label': [2]}).to_csv(points_csv / 'bad.csv', index=False)
    with pytest.raises(InvalidInputError):
        load_points('bad.csv', filepath=str(points_csv), label_key='label', verbosity=0)


def test_cell_coordinate_mapping(env_grid):
    assert env_grid.shape == (10, 12)

    x, y = env_grid.cell_to_coordinate(np.array([0, 4]), np.array([0, 3]))
    assert x.tolist() == [0.5, 3.5]
    assert y.tolist() == [-0.5, -4.5]

    rows, columns = env_grid.coordinate_to_cell(np.array([3.2, -0.5, 12.0, 1.0]), np.array([-4.7, -1.0, -1.0, 0.5]))
    assert rows.tolist() == [4, -1, -1, -1]
    assert columns.tolist() == [3, -1, -1, -1]


def test_nodata_cells_flagged(env_grid):
    assert env_grid.nodata_mask[0, 0]
    assert env_grid.nodata_mask[5, 5]
    assert env_grid.valid_mask.sum() == 10 * 12 - 2


def test_sample(env_grid):
    df = env_grid.sample(np.array([3.5, 0.5, 5.5, 20.0]), np.array([-2.5, -0.5, -5.5, -1.0]))

    assert list(df.columns) == ['temp', 'rain']
    assert df.loc[0, 'temp'] == pytest.approx(np.linspace(-3.0, 3.0, 12)[3])
    assert df.loc[0, 'rain'] == pytest.approx(np.linspace(-1.0, 1.0, 10)[2])
    assert df.loc[1:].isna().to_numpy().all()


def test_features_and_stack(env_grid):
    df = env_grid.features()

    assert df.shape == (120, 4)
    assert df.loc[13, ['lon', 'lat']].tolist() == [1.5, -1.5]
    assert env_grid.stack(['rain', 'temp']).shape == (2, 10, 12)
    with pytest.raises(SchemaMismatchError):
        env_grid.stack(['elevation'])


def test_grid_validation():
    with pytest.raises(InvalidInputError):
        EnvironmentalGrid(bands=np.zeros((2, 3, 3)), band_names=['a'])
    with pytest.raises(InvalidInputError):
        EnvironmentalGrid(bands=np.zeros((2, 3, 3)), band_names=['a', 'a'])
    with pytest.raises(InvalidInputError):
        EnvironmentalGrid(bands=np.zeros((1, 3, 3)), band_names=['a'], nodata_mask=np.zeros((2, 2), dtype=bool))


def test_nodata_value_is_flagged():
    bands = np.array([[[1.0, -9999.0], [2.0, 3.0]]])
    grid = EnvironmentalGrid(bands=bands, band_names=['a'], nodata_value=-9999.0)

    assert grid.nodata_mask.tolist() == [[False, True], [False, False]]


def test_grid_save_load(env_grid, tmp_path):
    save_grid(env_grid, 'epoch.npz', filepath=str(tmp_path))
    loaded = load_grid('epoch.npz', filepath=str(tmp_path))

    assert loaded.band_names == env_grid.band_names
    assert loaded.transform == env_grid.transform
    assert np.array_equal(loaded.nodata_mask, env_grid.nodata_mask)
    assert np.allclose(loaded.bands, env_grid.bands, equal_nan=True)


def test_risk_grid_write_read(tmp_path):
    risk = np.array([[1, 2], [NO_DATA, 3]])
    path = write_risk_grid(risk, 'risk_present', filepath=str(tmp_path / 'out'), transform=(10.0, 0.5, 5.0, -0.5))

    assert path.endswith('risk_present.npz')

    loaded, transform, no_data = read_risk_grid('risk_present.npz', filepath=str(tmp_path / 'out'))
    assert loaded.tolist() == risk.tolist()
    assert loaded.dtype == np.int32
    assert transform == (10.0, 0.5, 5.0, -0.5)
    assert no_data == NO_DATA


def test_extract_at_points():
    risk = np.array([[1, 2, 3], [NO_DATA, 2, 1]], dtype=np.int32)
    transform = (0.0, 1.0, 0.0, -1.0)

    values = extract_at_points(risk, transform, x=np.array([0.5, 2.9, 0.1, 5.0]), y=np.array([-0.5, -1.2, -1.5, -0.5]))

    assert values.tolist() == [1, 1, NO_DATA, NO_DATA]


def test_coordinate_to_cell_handles_nan():
    rows, columns = coordinate_to_cell(np.array([np.nan]), np.array([-0.5]), (0.0, 1.0, 0.0, -1.0), (2, 2))
    assert rows.tolist() == [-1]
    assert columns.tolist() == [-1]
