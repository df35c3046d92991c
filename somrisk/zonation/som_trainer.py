
import warnings

import numpy as np

from typing import Tuple, Union
from typing_extensions import Literal, Self
from sklearn.base import BaseEstimator
from sklearn.utils.validation import check_array, check_is_fitted
from scipy.spatial.distance import cdist
from numba import njit, prange

from ..exceptions import InvalidInputError

try:
    from somoclu import Somoclu
    SOMOCLU_AVAILABLE = True
except Exception:
    Somoclu = None
    SOMOCLU_AVAILABLE = False


class SomGrid:
    """
    Planar 2-D SOM node layout.

    Nodes are indexed row-major, ``node = row * n_columns + column``. On a hexagonal grid odd rows are shifted by
    half a unit so that every interior node has 6 equidistant neighbors; on a rectangular grid interior nodes have 4.

    Attributes:
        n_rows (int): Number of grid rows.
        n_columns (int): Number of grid columns.
        grid_type (Literal['hexagonal', 'rectangular']): Node layout.
        coordinates (np.ndarray): Planar node coordinates, shape (n_nodes, 2).
    """
    # Unit distance between neighbors, plus slack for floating point hexagon geometry
    ADJACENCY_TOLERANCE = 1.1

    def __init__(
            self,
            n_rows: int,
            n_columns: int,
            grid_type: Literal['hexagonal', 'rectangular'] = 'hexagonal',
    ):
        if int(n_rows) < 1 or int(n_columns) < 1:
            raise InvalidInputError(f'SOM grid dimensions must be positive, got ({n_rows}, {n_columns}).')
        if grid_type not in ('hexagonal', 'rectangular'):
            raise InvalidInputError(f"'grid_type' must be 'hexagonal' or 'rectangular', got '{grid_type}'.")

        self.n_rows = int(n_rows)
        self.n_columns = int(n_columns)
        self.grid_type = grid_type

        rows, columns = np.divmod(np.arange(self.n_nodes), self.n_columns)
        if grid_type == 'hexagonal':
            x = columns + 0.5 * (rows % 2)
            y = rows * np.sqrt(3) / 2
        else:
            x = columns.astype(float)
            y = rows.astype(float)
        self.coordinates = np.column_stack((x, y)).astype(float)

    @property
    def n_nodes(self) -> int:
        return self.n_rows * self.n_columns

    @property
    def shape(self) -> Tuple[int, int]:
        return self.n_rows, self.n_columns

    def node_position(self, node: int) -> Tuple[int, int]:
        row, column = divmod(int(node), self.n_columns)
        return row, column

    def distances(self) -> np.ndarray:
        # Euclidean distance between node positions in the grid plane, shape (n_nodes, n_nodes)
        return cdist(self.coordinates, self.coordinates, metric='euclidean')

    def adjacency(self) -> np.ndarray:
        d = self.distances()
        return (d > 0) & (d <= self.ADJACENCY_TOLERANCE)

    def neighbors(self, node: int) -> np.ndarray:
        return np.flatnonzero(self.adjacency()[node])

    def are_adjacent(self, nodes0: np.ndarray, nodes1: np.ndarray) -> np.ndarray:
        d = np.linalg.norm(self.coordinates[nodes0] - self.coordinates[nodes1], axis=1)
        return d <= self.ADJACENCY_TOLERANCE

    def __eq__(self, other):
        if not isinstance(other, SomGrid):
            return NotImplemented
        return (self.n_rows, self.n_columns, self.grid_type) == (other.n_rows, other.n_columns, other.grid_type)

    def __repr__(self):
        return f"SomGrid(n_rows={self.n_rows}, n_columns={self.n_columns}, grid_type='{self.grid_type}')"


# ### Distance computations shared by training, prediction and quality metrics ########################################
def compute_distances(data: np.ndarray, codebook: np.ndarray) -> np.ndarray:
    """
    Euclidean distances between samples and prototypes.

    Args:
        data (np.ndarray): Samples, shape (n_samples, n_features).
        codebook (np.ndarray): Prototypes, shape (n_nodes, n_features).

    Returns:
        np.ndarray: Distance matrix of shape (n_samples, n_nodes).
    """
    if codebook.shape[0] <= 100 and data.shape[0] <= 100000:
        # ### For small maps, compute Euclidean distances in chunks for memory efficiency
        num_splits = max(1, min(200, data.shape[0]))
        chunks = np.array_split(data, num_splits, axis=0)
        return np.vstack([cdist(chunk, codebook, metric='euclidean') for chunk in chunks])
    # ### For larger inputs, compute Euclidean distances with numba parallelized loop
    return _compute_distances(np.ascontiguousarray(data, dtype=np.float64),
                              np.ascontiguousarray(codebook, dtype=np.float64))


@njit(parallel=True, fastmath=True, nogil=True)
def _compute_distances(data: np.ndarray, codebook: np.ndarray):
    num_samples, num_codebook = data.shape[0], codebook.shape[0]
    distances = np.empty((num_samples, num_codebook), dtype=np.float64)

    for i in prange(num_samples):  # Parallel loop
        for j in range(num_codebook):
            diff = data[i] - codebook[j]
            distances[i, j] = np.sqrt(np.sum(diff ** 2))

    return distances


def nearest_nodes(data: np.ndarray, codebook: np.ndarray, n: int = 1) -> np.ndarray:
    """
    Indices of the ``n`` nearest prototypes per sample, closest first.

    Ties are broken by the lowest node index (stable sort).

    Returns:
        np.ndarray: Shape (n_samples,) for ``n == 1``, else (n_samples, n).
    """
    distances = compute_distances(data, codebook)
    if n == 1:
        return np.argmin(distances, axis=1)
    return np.argsort(distances, axis=1, kind='stable')[:, :n]


def decay_schedule(
        start: float,
        end: float,
        n_steps: int,
        decay: Literal['linear', 'exponential'] = 'linear',
) -> np.ndarray:
    # Value per step, starting at `start` and reaching `end` on the last step
    if n_steps <= 1:
        return np.full(max(n_steps, 0), float(start))
    fraction = np.arange(n_steps) / (n_steps - 1)
    if decay == 'linear':
        return start + (end - start) * fraction
    if decay == 'exponential':
        return start * (end / start) ** fraction
    raise InvalidInputError(f"Decay must be 'linear' or 'exponential', got '{decay}'.")


class SomTrainer(BaseEstimator):
    """
    Self-organizing map trained by competitive learning on scaled environmental features.

    The default training mode is full batch: every epoch assigns all samples to their best-matching unit (BMU,
    minimum Euclidean distance, ties to the lowest node index) and moves each prototype towards the
    neighborhood-weighted mean of the samples, scaled by the current learning rate. A step that would raise the
    quantization error is halved, and skipped after ``MAX_STEP_HALVINGS`` tries, so the per-epoch quantization error
    history never increases.
    The sequential (online) mode presents all samples once per epoch in a seeded random order and pulls the BMU and
    its grid neighbors towards each sample; its error history fluctuates with the presentation order. Learning rate
    and neighborhood radius decay from their start to their end value over the whole run. Training stops after a
    fixed number of epochs and is exactly reproducible given the same seed, data and hyperparameters.

    The optional Somoclu mode delegates batch training to Somoclu. Its parallel updates are not numerically
    equivalent to the single-threaded numba modes.

    Attributes:
        learning_rate (Tuple[float, float]): Required (start, end) learning rate pair.
        som_dimensions (Tuple[int, int]): Grid size (n_rows, n_columns). Defaults to (10, 10).
        som_grid_type (Literal['hexagonal', 'rectangular']): Grid layout. Defaults to 'hexagonal'.
        n_epochs (int): Number of passes over the training data. Defaults to 100.
        radius (Tuple[float, float]): (start, end) neighborhood radius in grid units. A negative start is
            interpreted as a fraction of the smaller grid side, 0 as half of it. Defaults to (-0.5, 1.0).
        neighborhood (Literal['gaussian', 'bubble']): Neighborhood kernel. Defaults to 'gaussian'.
        learning_rate_decay (Literal['linear', 'exponential']): Learning rate schedule. Defaults to 'linear'.
        radius_cooling (Literal['linear', 'exponential']): Radius schedule. Defaults to 'linear'.
        initialization (Literal['pca', 'sample', 'random']): Spread initial prototypes along the first two principal
            axes of the data, draw them from the training samples or uniformly within the per-feature data range.
            Defaults to 'pca'.
        initial_codebook (np.ndarray or None): Custom initial prototypes, shape (n_nodes, n_features) or
            (n_rows, n_columns, n_features).
        training_mode (Literal['batch', 'online', 'somoclu']): Full batch or sequential numba updates, or Somoclu
            batch training. Defaults to 'batch'.
        random_state (int): Seed for initialization and sample order. Defaults to 42.
        verbosity (int): Logging level. Defaults to 1.
        grid_ (SomGrid): Node layout.
        codebook_ (np.ndarray): Frozen prototypes, shape (n_nodes, n_features).
        bmus_ (np.ndarray): BMU node index per training sample.
        radius_0_ (float): Resolved starting radius.
        quantization_error_history_ (np.ndarray): Quantization error after every epoch (numba modes) or after
            training (Somoclu mode).
    """
    MAX_STEP_HALVINGS = 10

    def __init__(
            self,
            learning_rate: Tuple[float, float],
            som_dimensions: Tuple[int, int] = (10, 10),
            som_grid_type: Literal['hexagonal', 'rectangular'] = 'hexagonal',
            n_epochs: int = 100,
            radius: Tuple[float, float] = (-0.5, 1.0),
            neighborhood: Literal['gaussian', 'bubble'] = 'gaussian',
            learning_rate_decay: Literal['linear', 'exponential'] = 'linear',
            radius_cooling: Literal['linear', 'exponential'] = 'linear',
            initialization: Literal['pca', 'sample', 'random'] = 'pca',
            initial_codebook: Union[np.ndarray, None] = None,
            training_mode: Literal['batch', 'online', 'somoclu'] = 'batch',
            random_state: int = 42,
            verbosity: int = 1,
    ):
        self.learning_rate = learning_rate
        self.som_dimensions = som_dimensions
        self.som_grid_type = som_grid_type
        self.n_epochs = n_epochs
        self.radius = radius
        self.neighborhood = neighborhood
        self.learning_rate_decay = learning_rate_decay
        self.radius_cooling = radius_cooling
        self.initialization = initialization
        self.initial_codebook = initial_codebook
        self.training_mode = training_mode
        self.random_state = random_state
        self.verbosity = verbosity

    # ### fit(), train() ###############################################################################################
    def fit(self, X: np.ndarray, y=None) -> Self:
        """
        Train the SOM on scaled samples.

        Args:
            X (np.ndarray): Scaled training features of shape (n_samples, n_features), without missing values.
            y: Ignored, SOM training is unsupervised.

        Returns:
            Self: The trained instance.

        Raises:
            InvalidInputError: If the hyperparameters are invalid or ``X`` contains missing values.
            ImportError: If ``training_mode='somoclu'`` but Somoclu is not installed.
        """
        self._check_parameters()

        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[0] == 0:
            raise InvalidInputError(f'Expected a non-empty 2-D training matrix, got shape {X.shape}.')
        if not np.isfinite(X).all():
            raise InvalidInputError('Training samples must not contain missing or infinite values.')
        X = check_array(X)

        self.grid_ = SomGrid(
            n_rows=self.som_dimensions[0], n_columns=self.som_dimensions[1], grid_type=self.som_grid_type
        )
        self.n_features_in_ = X.shape[1]
        self.radius_0_ = self._resolve_radius_0()

        rng = np.random.default_rng(self.random_state)
        codebook = self._initialize_codebook(X=X, rng=rng)

        if self.verbosity >= 2:
            print(
                f'# ### Training {self.training_mode} SOM {self.grid_.shape} ({self.som_grid_type}) '
                f'on {X.shape[0]} samples for {self.n_epochs} epochs.'
            )

        if self.training_mode == 'batch':
            codebook, history = self._train_batch(X=X, codebook=codebook)
        elif self.training_mode == 'online':
            codebook, history = self._train_online(X=X, codebook=codebook, rng=rng)
        else:
            codebook, history = self._train_somoclu(X=X, codebook=codebook)

        # Prototypes are frozen after training
        codebook.setflags(write=False)
        self.codebook_ = codebook
        self.quantization_error_history_ = np.asarray(history, dtype=float)
        self.bmus_ = nearest_nodes(X, self.codebook_)

        unused = np.setdiff1d(np.arange(self.grid_.n_nodes), self.bmus_)
        if unused.size > 0:
            warnings.warn(
                f'{unused.size} SOM nodes are not BMU for any training sample: {unused.tolist()}',
                UserWarning
            )

        if self.verbosity >= 2:
            print(f'# ### Final quantization error: {self.quantization_error_history_[-1]:.4f}')

        return self

    def train(self, scaled_samples: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Train the SOM and return its frozen prototypes and the BMU of every training sample.

        Args:
            scaled_samples (np.ndarray): Scaled training features of shape (n_samples, n_features).

        Returns:
            Tuple[np.ndarray, np.ndarray]: Prototypes (n_nodes, n_features) and BMU index per sample.
        """
        self.fit(scaled_samples)
        return self.codebook_, self.bmus_

    def transform(self, X: np.ndarray) -> np.ndarray:
        # BMU node index of each sample
        check_is_fitted(self, 'codebook_')
        X = check_array(X)
        return nearest_nodes(X, self.codebook_)

    def quantization_error(self, X: np.ndarray) -> float:
        check_is_fitted(self, 'codebook_')
        return SomTrainer._quantization_error(np.asarray(X, dtype=float), self.codebook_)

    # ### Full batch training #########################################################################################
    def _train_batch(self, X: np.ndarray, codebook: np.ndarray):
        learning_rates = decay_schedule(
            start=self.learning_rate[0], end=self.learning_rate[1], n_steps=self.n_epochs,
            decay=self.learning_rate_decay
        )
        sigmas = decay_schedule(
            start=self.radius_0_, end=self.radius[1], n_steps=self.n_epochs, decay=self.radius_cooling
        )
        grid_dist_sq = self.grid_.distances() ** 2
        gaussian = self.neighborhood == 'gaussian'

        data = np.ascontiguousarray(X, dtype=np.float64)
        codebook = np.ascontiguousarray(codebook, dtype=np.float64)
        error = SomTrainer._quantization_error(data, codebook)

        history = []
        for epoch in range(self.n_epochs):
            targets = SomTrainer._batch_targets(data, codebook, sigmas[epoch], grid_dist_sq, gaussian)

            step = learning_rates[epoch]
            for _ in range(self.MAX_STEP_HALVINGS + 1):
                candidate = codebook + step * (targets - codebook)
                candidate_error = SomTrainer._quantization_error(data, candidate)
                if candidate_error <= error:
                    codebook, error = candidate, candidate_error
                    break
                step /= 2
            else:
                step = 0.0

            history.append(error)

            if self.verbosity >= 3:
                print(
                    f'# ### Epoch {epoch + 1}/{self.n_epochs}: quantization error {error:.4f} '
                    f'(step {step:.4g}, radius {sigmas[epoch]:.3f})'
                )

        return codebook, history

    @staticmethod
    @njit(nogil=True)
    def _batch_targets(
            data: np.ndarray,
            codebook: np.ndarray,
            sigma: float,
            grid_dist_sq: np.ndarray,
            gaussian: bool,
    ):
        n_samples = data.shape[0]
        n_nodes, n_features = codebook.shape

        # Per-node sample sums and counts over the current BMU assignment
        sums = np.zeros((n_nodes, n_features))
        counts = np.zeros(n_nodes)
        for i in range(n_samples):
            bmu = 0
            best = np.inf
            for j in range(n_nodes):
                d = 0.0
                for k in range(n_features):
                    diff = data[i, k] - codebook[j, k]
                    d += diff * diff
                if d < best:
                    best = d
                    bmu = j
            counts[bmu] += 1.0
            for k in range(n_features):
                sums[bmu, k] += data[i, k]

        # Neighborhood-weighted mean of the samples per node, nodes without weight keep their prototype
        sigma_sq = sigma * sigma
        targets = codebook.copy()
        for j in range(n_nodes):
            weight = 0.0
            acc = np.zeros(n_features)
            for b in range(n_nodes):
                if counts[b] == 0.0:
                    continue
                dist_sq = grid_dist_sq[b, j]
                if gaussian:
                    h = np.exp(-dist_sq / (2.0 * sigma_sq))
                else:
                    h = 1.0 if dist_sq <= sigma_sq else 0.0
                if h > 0.0:
                    weight += h * counts[b]
                    for k in range(n_features):
                        acc[k] += h * sums[b, k]
            if weight > 0.0:
                for k in range(n_features):
                    targets[j, k] = acc[k] / weight

        return targets

    # ### Online (sequential) training #################################################################################
    def _train_online(self, X: np.ndarray, codebook: np.ndarray, rng: np.random.Generator):
        n_samples = X.shape[0]
        n_steps = self.n_epochs * n_samples

        learning_rates = decay_schedule(
            start=self.learning_rate[0], end=self.learning_rate[1], n_steps=n_steps, decay=self.learning_rate_decay
        )
        sigmas = decay_schedule(
            start=self.radius_0_, end=self.radius[1], n_steps=n_steps, decay=self.radius_cooling
        )
        grid_dist_sq = self.grid_.distances() ** 2
        gaussian = self.neighborhood == 'gaussian'

        data = np.ascontiguousarray(X, dtype=np.float64)
        codebook = np.ascontiguousarray(codebook, dtype=np.float64)

        history = []
        for epoch in range(self.n_epochs):
            order = rng.permutation(n_samples).astype(np.int64)
            window = slice(epoch * n_samples, (epoch + 1) * n_samples)

            SomTrainer._online_epoch(
                data, codebook, order, learning_rates[window], sigmas[window], grid_dist_sq, gaussian
            )

            history.append(SomTrainer._quantization_error(data, codebook))

            if self.verbosity >= 3:
                print(f'# ### Epoch {epoch + 1}/{self.n_epochs}: quantization error {history[-1]:.4f}')

        return codebook, history

    @staticmethod
    @njit(nogil=True)
    def _online_epoch(
            data: np.ndarray,
            codebook: np.ndarray,
            order: np.ndarray,
            learning_rates: np.ndarray,
            sigmas: np.ndarray,
            grid_dist_sq: np.ndarray,
            gaussian: bool,
    ):
        n_nodes, n_features = codebook.shape

        for step in range(order.shape[0]):
            x = data[order[step]]

            # BMU search, strict '<' keeps the lowest index on ties
            bmu = 0
            best = np.inf
            for j in range(n_nodes):
                d = 0.0
                for k in range(n_features):
                    diff = x[k] - codebook[j, k]
                    d += diff * diff
                if d < best:
                    best = d
                    bmu = j

            alpha = learning_rates[step]
            sigma_sq = sigmas[step] * sigmas[step]

            for j in range(n_nodes):
                dist_sq = grid_dist_sq[bmu, j]
                if gaussian:
                    h = np.exp(-dist_sq / (2.0 * sigma_sq))
                else:
                    h = 1.0 if dist_sq <= sigma_sq else 0.0
                if h > 0.0:
                    for k in range(n_features):
                        codebook[j, k] += alpha * h * (x[k] - codebook[j, k])

    # ### Batch training (Somoclu) #####################################################################################
    def _train_somoclu(self, X: np.ndarray, codebook: np.ndarray):
        if not SOMOCLU_AVAILABLE:
            raise ImportError(
                "training_mode='somoclu' requires Somoclu, which is not installed. "
                "Install it with 'pip install somoclu' or use training_mode='batch'."
            )

        n_rows, n_columns = self.grid_.shape
        som = Somoclu(
            n_columns=n_columns,
            n_rows=n_rows,
            gridtype=self.som_grid_type,
            maptype='planar',
            neighborhood=self.neighborhood,
            initialization=None,
            initialcodebook=codebook.reshape(n_rows, n_columns, -1).astype(np.float32),
            kerneltype=0,  # Only cpu training
            verbose=max(0, self.verbosity - 1),
        )
        som.train(
            data=X.astype(np.float32),
            epochs=self.n_epochs,
            radius0=self.radius_0_,
            radiusN=self.radius[1],
            radiuscooling=self.radius_cooling,
            scale0=self.learning_rate[0],
            scaleN=self.learning_rate[1],
            scalecooling=self.learning_rate_decay,
        )

        codebook = np.array(som.codebook, dtype=np.float64).reshape(n_rows * n_columns, -1)
        return codebook, [SomTrainer._quantization_error(X, codebook)]

    # ### Auxiliary functions ##########################################################################################
    def _check_parameters(self):
        try:
            lr_0, lr_n = (float(v) for v in self.learning_rate)
        except (TypeError, ValueError):
            raise InvalidInputError(
                f"'learning_rate' must be an explicit (start, end) pair, got {self.learning_rate!r}."
            )
        if not (lr_0 > 0 and lr_n > 0):
            raise InvalidInputError(f"Learning rates must be positive, got ({lr_0}, {lr_n}).")
        if len(tuple(self.radius)) != 2 or not self.radius[1] > 0:
            raise InvalidInputError(f"'radius' must be a (start, end) pair with end > 0, got {self.radius!r}.")
        if len(tuple(self.som_dimensions)) != 2:
            raise InvalidInputError(f"'som_dimensions' must be (n_rows, n_columns), got {self.som_dimensions!r}.")
        if not isinstance(self.n_epochs, (int, np.integer)) or self.n_epochs < 1:
            raise InvalidInputError(f"'n_epochs' must be a positive integer, got {self.n_epochs!r}.")
        if self.neighborhood not in ('gaussian', 'bubble'):
            raise InvalidInputError(f"'neighborhood' must be 'gaussian' or 'bubble', got '{self.neighborhood}'.")
        if self.initialization not in ('pca', 'sample', 'random'):
            raise InvalidInputError(
                f"'initialization' must be 'pca', 'sample' or 'random', got '{self.initialization}'."
            )
        if self.training_mode not in ('batch', 'online', 'somoclu'):
            raise InvalidInputError(
                f"'training_mode' must be 'batch', 'online' or 'somoclu', got '{self.training_mode}'."
            )

    def _resolve_radius_0(self) -> float:
        radius_0 = float(self.radius[0])
        if radius_0 < 0:
            radius_0 = min(self.som_dimensions) * abs(radius_0)
        elif radius_0 == 0:
            radius_0 = min(self.som_dimensions) / 2
        # The neighborhood must not be narrower than its final value
        return max(radius_0, float(self.radius[1]))

    def _initialize_codebook(self, X: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        n_nodes = self.grid_.n_nodes

        if self.initial_codebook is not None:
            codebook = np.array(self.initial_codebook, dtype=np.float64)
            if codebook.shape == self.grid_.shape + (X.shape[1], ):
                codebook = codebook.reshape(n_nodes, X.shape[1])
            if codebook.shape != (n_nodes, X.shape[1]):
                raise InvalidInputError(
                    f'Initial codebook has shape {codebook.shape}, expected ({n_nodes}, {X.shape[1]}) '
                    f'or {self.grid_.shape + (X.shape[1], )}.'
                )
            return codebook

        if self.initialization == 'pca':
            return self._pca_codebook(X=X)

        if self.initialization == 'sample':
            idxs = rng.choice(X.shape[0], size=n_nodes, replace=X.shape[0] < n_nodes)
            return X[idxs].astype(np.float64).copy()

        low, high = X.min(axis=0), X.max(axis=0)
        return rng.uniform(low, high, size=(n_nodes, X.shape[1]))

    def _pca_codebook(self, X: np.ndarray) -> np.ndarray:
        # Regular lattice in the plane of the two leading principal axes, the longer grid side follows the first axis.
        # The lattice spans +-1 standard deviation along each axis.
        center = X.mean(axis=0)
        codebook = np.tile(center, (self.grid_.n_nodes, 1))
        if X.shape[0] < 2:
            return codebook

        _, singular_values, components = np.linalg.svd(X - center, full_matrices=False)
        stds = singular_values / np.sqrt(X.shape[0] - 1)

        coords = self.grid_.coordinates
        low = coords.min(axis=0)
        span = coords.max(axis=0) - low
        axis_order = np.argsort(-span, kind='stable')

        for c in range(min(2, components.shape[0])):
            a = axis_order[c]
            if span[a] == 0:
                continue
            unit = 2 * (coords[:, a] - low[a]) / span[a] - 1
            codebook += np.outer(unit * stds[c], components[c])

        return codebook

    @staticmethod
    def _quantization_error(X: np.ndarray, codebook: np.ndarray) -> float:
        return float(compute_distances(X, codebook).min(axis=1).mean())
