import numpy as np
import pytest
from sklearn.exceptions import NotFittedError

from somrisk.zonation import SomGrid, SomTrainer
from somrisk.zonation.som_trainer import compute_distances, nearest_nodes, decay_schedule
from somrisk.exceptions import InvalidInputError


def test_hexagonal_grid_neighbors():
    grid = SomGrid(n_rows=5, n_columns=5, grid_type='hexagonal')

    # Interior nodes have 6 neighbors, the corner at the origin has 2
    assert len(grid.neighbors(2 * 5 + 2)) == 6
    assert len(grid.neighbors(1 * 5 + 2)) == 6
    assert len(grid.neighbors(0)) == 2

    # Odd rows are shifted right: node (1, 0) touches (0, 0) and (0, 1)
    assert set(grid.neighbors(5).tolist()) == {0, 1, 6, 10, 11}


def test_rectangular_grid_neighbors():
    grid = SomGrid(n_rows=4, n_columns=4, grid_type='rectangular')

    assert len(grid.neighbors(5)) == 4
    assert grid.are_adjacent(np.array([0, 0]), np.array([1, 5])).tolist() == [True, False]


def test_grid_invalid_arguments():
    with pytest.raises(InvalidInputError):
        SomGrid(n_rows=0, n_columns=3)
    with pytest.raises(InvalidInputError):
        SomGrid(n_rows=3, n_columns=3, grid_type='toroid')


def test_compute_distances_small_and_large_paths():
    np.random.seed(42)
    data = np.random.rand(50, 3)
    small_codebook = np.random.rand(4, 3)
    large_codebook = np.random.rand(121, 3)

    for codebook in (small_codebook, large_codebook):
        expected = np.linalg.norm(data[:, np.newaxis, :] - codebook[np.newaxis, :, :], axis=2)
        assert compute_distances(data, codebook) == pytest.approx(expected)


def test_nearest_nodes_ties_to_lowest_index():
    codebook = np.array([[1.0], [-1.0], [1.0]])
    data = np.array([[0.0], [1.0], [2.0]])

    assert nearest_nodes(data, codebook).tolist() == [0, 0, 0]
    assert nearest_nodes(data, codebook, n=2).tolist() == [[0, 1], [0, 2], [0, 2]]


def test_decay_schedule():
    assert decay_schedule(0.5, 0.1, 5) == pytest.approx([0.5, 0.4, 0.3, 0.2, 0.1])
    exp = decay_schedule(1.0, 0.01, 3, decay='exponential')
    assert exp == pytest.approx([1.0, 0.1, 0.01])


def test_fit_sets_attributes(som_trainer, small_X):
    som_trainer.fit(small_X)

    assert som_trainer.codebook_.shape == (9, 3)
    assert som_trainer.bmus_.shape == (100,)
    assert som_trainer.n_features_in_ == 3
    assert som_trainer.quantization_error_history_.shape == (5,)
    assert som_trainer.radius_0_ == pytest.approx(1.5)
    assert som_trainer.grid_ == SomGrid(3, 3, 'hexagonal')


def test_train_returns_frozen_prototypes(som_trainer, small_X):
    prototypes, bmus = som_trainer.train(small_X)

    assert prototypes.shape == (9, 3)
    assert not prototypes.flags.writeable
    with pytest.raises(ValueError):
        prototypes[0, 0] = 1.0

    assert np.array_equal(bmus, nearest_nodes(small_X, prototypes))


@pytest.mark.parametrize('training_mode', ['batch', 'online'])
def test_training_is_deterministic(small_X, training_mode):
    kwargs = dict(
        learning_rate=(0.5, 0.01),
        som_dimensions=(4, 3),
        n_epochs=10,
        initialization='sample',
        training_mode=training_mode,
        random_state=7,
        verbosity=0,
    )

    p0, b0 = SomTrainer(**kwargs).train(small_X)
    p1, b1 = SomTrainer(**kwargs).train(small_X)

    assert np.array_equal(p0, p1)
    assert np.array_equal(b0, b1)

    p2, _ = SomTrainer(**{**kwargs, 'random_state': 8}).train(small_X)
    assert not np.array_equal(p0, p2)


@pytest.mark.parametrize('initialization', ['pca', 'sample', 'random'])
@pytest.mark.parametrize('neighborhood', ['gaussian', 'bubble'])
def test_batch_quantization_error_never_increases(small_X, initialization, neighborhood):
    trainer = SomTrainer(
        learning_rate=(0.5, 0.01),
        som_dimensions=(4, 4),
        n_epochs=30,
        initialization=initialization,
        neighborhood=neighborhood,
        random_state=0,
        verbosity=0,
    )
    trainer.fit(small_X)
    history = trainer.quantization_error_history_

    assert history.shape == (30,)
    assert np.all(np.diff(history) <= 0)
    assert history[-1] == pytest.approx(trainer.quantization_error(small_X))


def test_batch_first_checkpoint_does_not_exceed_initial_error(small_X):
    initial = np.tile(small_X.mean(axis=0), (9, 1)) + np.linspace(-0.1, 0.1, 9)[:, np.newaxis]
    trainer = SomTrainer(
        learning_rate=(0.5, 0.01), som_dimensions=(3, 3), n_epochs=3, initial_codebook=initial, verbosity=0
    )
    trainer.fit(small_X)

    assert trainer.quantization_error_history_[0] <= SomTrainer._quantization_error(small_X, initial)


def test_online_quantization_error_improves(small_X):
    trainer = SomTrainer(
        learning_rate=(0.5, 0.01), som_dimensions=(4, 4), n_epochs=30, training_mode='online', random_state=0,
        verbosity=0
    )
    trainer.fit(small_X)
    history = trainer.quantization_error_history_

    assert history.shape == (30,)
    assert history[-1] < history[0]
    assert history[-1] == pytest.approx(trainer.quantization_error(small_X))


def test_pca_initialization_spans_principal_axis():
    rng = np.random.default_rng(0)
    t = rng.uniform(-1, 1, size=200)
    X = np.column_stack((t, 2 * t + rng.normal(0, 0.01, size=200)))

    trainer = SomTrainer(learning_rate=(0.5, 0.01), som_dimensions=(1, 5), n_epochs=1, verbosity=0)
    trainer.grid_ = SomGrid(1, 5)
    codebook = trainer._initialize_codebook(X=X, rng=np.random.default_rng(0))

    assert codebook.shape == (5, 2)
    assert codebook.mean(axis=0) == pytest.approx(X.mean(axis=0))
    # Prototypes lie on the principal line and are ordered along the grid
    assert codebook[:, 1] - codebook[0, 1] == pytest.approx(2 * (codebook[:, 0] - codebook[0, 0]), abs=1e-2)
    steps = np.diff(codebook[:, 0])
    assert np.all(steps > 0) or np.all(steps < 0)


@pytest.mark.parametrize('neighborhood', ['gaussian', 'bubble'])
@pytest.mark.parametrize('grid_type', ['hexagonal', 'rectangular'])
def test_neighborhoods_and_grid_types(small_X, neighborhood, grid_type):
    trainer = SomTrainer(
        learning_rate=(0.3, 0.01),
        som_dimensions=(3, 4),
        som_grid_type=grid_type,
        neighborhood=neighborhood,
        radius_cooling='exponential',
        initialization='random',
        n_epochs=5,
        verbosity=0,
    )
    prototypes, _ = trainer.train(small_X)

    assert prototypes.shape == (12, 3)
    assert np.isfinite(prototypes).all()
    # Prototypes stay within the data range
    assert np.all(prototypes >= small_X.min(axis=0) - 1e-9)
    assert np.all(prototypes <= small_X.max(axis=0) + 1e-9)


def test_initial_codebook_is_used(small_X):
    initial = np.full((4, 3), 0.5)
    trainer = SomTrainer(
        learning_rate=(1e-9, 1e-9), som_dimensions=(2, 2), n_epochs=1, initial_codebook=initial, verbosity=0
    )
    prototypes, _ = trainer.train(small_X)

    assert prototypes == pytest.approx(initial, abs=1e-6)


def test_initial_codebook_in_grid_shape_is_accepted(small_X):
    initial = np.full((2, 2, 3), 0.5)
    trainer = SomTrainer(
        learning_rate=(1e-9, 1e-9), som_dimensions=(2, 2), n_epochs=1, initial_codebook=initial, verbosity=0
    )
    prototypes, _ = trainer.train(small_X)

    assert prototypes.shape == (4, 3)


@pytest.mark.parametrize('shape', [(2, 6), (12, ), (4, 2), (5, 3), (2, 2, 2)])
def test_initial_codebook_with_wrong_shape_raises(small_X, shape):
    trainer = SomTrainer(
        learning_rate=(0.5, 0.01), som_dimensions=(2, 2), n_epochs=1, initial_codebook=np.zeros(shape), verbosity=0
    )
    with pytest.raises(InvalidInputError, match='shape'):
        trainer.fit(small_X)


def test_unused_nodes_warn():
    X = np.array([[0.0, 0.0], [0.0, 0.0], [1.0, 1.0]])
    trainer = SomTrainer(
        learning_rate=(1e-9, 1e-9),
        som_dimensions=(1, 3),
        n_epochs=1,
        initial_codebook=np.array([[0.0, 0.0], [1.0, 1.0], [10.0, 10.0]]),
        verbosity=0,
    )
    with pytest.warns(UserWarning, match='not BMU'):
        trainer.fit(X)


@pytest.mark.parametrize('kwargs', [
    {'learning_rate': 0.5},
    {'learning_rate': (0.5, -0.1)},
    {'learning_rate': (0.5, 0.1), 'n_epochs': 0},
    {'learning_rate': (0.5, 0.1), 'radius': (1.0, 0.0)},
    {'learning_rate': (0.5, 0.1), 'neighborhood': 'mexican_hat'},
    {'learning_rate': (0.5, 0.1), 'training_mode': 'parallel'},
    {'learning_rate': (0.5, 0.1), 'initialization': 'linear'},
])
def test_invalid_parameters_raise(small_X, kwargs):
    with pytest.raises(InvalidInputError):
        SomTrainer(verbosity=0, **kwargs).fit(small_X)


def test_missing_values_raise(som_trainer, small_X):
    X = small_X.copy()
    X[3, 0] = np.nan
    with pytest.raises(InvalidInputError):
        som_trainer.fit(X)


def test_transform_before_fit_raises(som_trainer, small_X):
    with pytest.raises(NotFittedError):
        som_trainer.transform(small_X)


def test_somoclu_training(small_X):
    pytest.importorskip('somoclu')

    trainer = SomTrainer(
        learning_rate=(0.1, 0.01), som_dimensions=(3, 3), n_epochs=5, training_mode='somoclu', verbosity=0
    )
    prototypes, bmus = trainer.train(small_X)

    assert prototypes.shape == (9, 3)
    assert bmus.shape == (100,)
    assert trainer.quantization_error_history_.shape == (1,)
