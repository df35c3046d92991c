import numpy as np
import pandas as pd
import pytest

from somrisk.zonation import SomTrainer, SomGrid, ScalingParameters, ZonationModel
from somrisk.io import EnvironmentalGrid

PREDICTORS = ['temp', 'rain']


@pytest.fixture
def small_X():
    np.random.seed(42)
    return np.random.rand(100, 3)


@pytest.fixture
def presence():
    # Warm locations
    np.random.seed(0)
    return pd.DataFrame({
        'lon': np.random.uniform(0, 12, 50),
        'lat': np.random.uniform(-10, 0, 50),
        'temp': np.random.normal(2.0, 0.3, 50),
        'rain': np.random.normal(1.0, 0.3, 50),
    })


@pytest.fixture
def background():
    np.random.seed(1)
    return pd.DataFrame({
        'lon': np.random.uniform(0, 12, 200),
        'lat': np.random.uniform(-10, 0, 200),
        'temp': np.random.uniform(-3.0, 3.0, 200),
        'rain': np.random.uniform(-3.0, 3.0, 200),
    })


@pytest.fixture
def absence():
    # Cold locations
    np.random.seed(2)
    return pd.DataFrame({
        'lon': np.random.uniform(0, 12, 30),
        'lat': np.random.uniform(-10, 0, 30),
        'temp': np.random.normal(-2.0, 0.3, 30),
        'rain': np.random.normal(-1.0, 0.3, 30),
    })


@pytest.fixture
def som_trainer():
    return SomTrainer(
        learning_rate=(0.5, 0.05),
        som_dimensions=(3, 3),
        n_epochs=5,
        verbosity=0,
    )


@pytest.fixture
def toy_model():
    # Two nodes: (-1, -1) -> tier 1, (1, 1) -> tier 2, identity scaling
    return ZonationModel(
        prototypes=np.array([[-1.0, -1.0], [1.0, 1.0]]),
        grid=SomGrid(n_rows=1, n_columns=2, grid_type='rectangular'),
        scaling=ScalingParameters(feature_names=('temp', 'rain'), center=[0.0, 0.0], scale=[1.0, 1.0]),
        node_to_tier=np.array([1, 2]),
        ordering_feature='temp',
    )


@pytest.fixture
def env_grid():
    # 10 x 12 cells covering lon [0, 12], lat [-10, 0]; temp rises from west to east
    n_rows, n_columns = 10, 12
    temp = np.tile(np.linspace(-3.0, 3.0, n_columns), (n_rows, 1))
    rain = np.tile(np.linspace(-1.0, 1.0, n_rows)[:, np.newaxis], (1, n_columns))
    temp[5, 5] = np.nan

    nodata_mask = np.zeros((n_rows, n_columns), dtype=bool)
    nodata_mask[0, 0] = True

    return EnvironmentalGrid(
        bands=np.stack([temp, rain]),
        band_names=PREDICTORS,
        transform=(0.0, 1.0, 0.0, -1.0),
        nodata_mask=nodata_mask,
    )
