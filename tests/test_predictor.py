import numpy as np
import pandas as pd
import pytest

from somrisk.zonation import ZonationModel, ZonationPredictor, SomGrid, ScalingParameters, NO_DATA
from somrisk.io import EnvironmentalGrid
from somrisk.exceptions import InvalidInputError, SchemaMismatchError


def test_predict_nearest_prototype(toy_model):
    predictor = ZonationPredictor(toy_model, verbosity=0)
    X = np.array([[-2.0, -0.5], [0.9, 1.2], [0.1, 0.2]])

    assert predictor.predict_nodes(X).tolist() == [0, 1, 1]
    assert predictor.predict(X).tolist() == [1, 2, 2]
    assert predictor.predict(X).dtype == np.int32


def test_tie_goes_to_lowest_node(toy_model):
    predictor = ZonationPredictor(toy_model, verbosity=0)
    assert predictor.predict_nodes(np.array([[0.0, 0.0]])).tolist() == [0]


def test_prototypes_predict_their_own_tier():
    np.random.seed(3)
    prototypes = np.random.rand(6, 2)
    model = ZonationModel(
        prototypes=prototypes,
        grid=SomGrid(2, 3),
        scaling=ScalingParameters(feature_names=('a', 'b'), center=[0.0, 0.0], scale=[1.0, 1.0]),
        node_to_tier=[1, 1, 2, 2, 3, 3],
        ordering_feature='a',
    )
    predictor = ZonationPredictor(model, verbosity=0)

    assert predictor.predict(prototypes).tolist() == model.node_to_tier.tolist()


def test_missing_values_yield_no_data(toy_model):
    predictor = ZonationPredictor(toy_model, verbosity=0)
    X = np.array([[np.nan, 1.0], [1.0, 1.0], [1.0, np.inf]])

    assert predictor.predict(X).tolist() == [NO_DATA, 2, NO_DATA]
    assert predictor.predict_nodes(X).tolist() == [-1, 1, -1]


def test_single_vector(toy_model):
    predictor = ZonationPredictor(toy_model, verbosity=0)
    assert predictor.predict(np.array([1.0, 1.0])).tolist() == [2]


def test_predict_raw_applies_frozen_scaling():
    model = ZonationModel(
        prototypes=np.array([[-1.0], [1.0]]),
        grid=SomGrid(1, 2),
        scaling=ScalingParameters(feature_names=('temp',), center=[20.0], scale=[5.0]),
        node_to_tier=[1, 2],
        ordering_feature='temp',
    )
    predictor = ZonationPredictor(model, verbosity=0)

    assert predictor.predict_raw(pd.DataFrame({'temp': [14.0, 19.0, 26.0]})).tolist() == [1, 1, 2]


def test_schema_and_dimension_mismatch(toy_model):
    predictor = ZonationPredictor(toy_model, verbosity=0)

    with pytest.raises(SchemaMismatchError):
        predictor.predict(pd.DataFrame({'temp': [0.0], 'elevation': [0.0]}))
    with pytest.raises(InvalidInputError):
        predictor.predict(np.zeros((2, 3)))


def test_predict_grid(toy_model):
    bands = np.array([
        [[-1.0, 1.0, np.nan], [-1.0, 1.0, 1.0]],
        [[-1.0, 1.0, 1.0], [-1.0, 1.0, 1.0]],
    ])
    nodata_mask = np.array([[False, False, False], [False, False, True]])
    grid = EnvironmentalGrid(bands=bands, band_names=['rain', 'temp'], nodata_mask=nodata_mask)

    risk = ZonationPredictor(toy_model, verbosity=0).predict_grid(grid, batch_size=2)

    assert risk.shape == (2, 3)
    assert risk.dtype == np.int32
    assert risk.tolist() == [[1, 2, NO_DATA], [1, 2, NO_DATA]]


def test_predict_grid_missing_band_raises(toy_model):
    grid = EnvironmentalGrid(bands=np.zeros((1, 2, 2)), band_names=['temp'])
    with pytest.raises(SchemaMismatchError):
        ZonationPredictor(toy_model).predict_grid(grid)


def test_model_validation_and_immutability(toy_model):
    assert toy_model.num_tiers == 2
    assert not toy_model.prototypes.flags.writeable
    assert not toy_model.node_to_tier.flags.writeable

    with pytest.raises(InvalidInputError):
        ZonationModel(
            prototypes=np.zeros((3, 2)),
            grid=SomGrid(1, 2),
            scaling=toy_model.scaling,
            node_to_tier=[1, 2],
            ordering_feature='temp',
        )
    with pytest.raises(InvalidInputError):
        ZonationModel(
            prototypes=np.zeros((2, 2)),
            grid=SomGrid(1, 2),
            scaling=toy_model.scaling,
            node_to_tier=[0, 1],
            ordering_feature='temp',
        )
    with pytest.raises(SchemaMismatchError):
        ZonationModel(
            prototypes=np.zeros((2, 2)),
            grid=SomGrid(1, 2),
            scaling=toy_model.scaling,
            node_to_tier=[1, 2],
            ordering_feature='elevation',
        )


def test_model_save_load(toy_model, tmp_path):
    toy_model.save(filepath=str(tmp_path))
    loaded = ZonationModel.load(filepath=str(tmp_path))

    assert np.array_equal(loaded.prototypes, toy_model.prototypes)
    assert np.array_equal(loaded.node_to_tier, toy_model.node_to_tier)
    assert loaded.grid == toy_model.grid
    assert loaded.scaling.feature_names == ('temp', 'rain')
    assert loaded.ordering_feature == 'temp'

    X = np.array([[0.5, 0.3], [-0.2, -0.9]])
    assert np.array_equal(ZonationPredictor(loaded).predict(X), ZonationPredictor(toy_model).predict(X))
