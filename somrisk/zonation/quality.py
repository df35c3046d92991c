
import warnings

import numpy as np

from typing import Dict, Union
from sklearn.metrics import silhouette_score, davies_bouldin_score

from .som_trainer import SomGrid, compute_distances, nearest_nodes
from ..exceptions import InvalidInputError


class QualityEvaluator:
    """
    Read-only quality diagnostics of a trained SOM.

    All metrics are computed on the scaled training features against the frozen prototypes; nothing is mutated.

    Attributes:
        prototypes (np.ndarray): Frozen prototypes, shape (n_nodes, n_features).
        grid (SomGrid): Node layout used for topographic adjacency.
        X (np.ndarray): Scaled training features, shape (n_samples, n_features).
        bmus (np.ndarray): BMU node index per sample. Recomputed from the prototypes if not given.
    """
    def __init__(
            self,
            prototypes: np.ndarray,
            grid: SomGrid,
            X: np.ndarray,
            bmus: Union[np.ndarray, None] = None,
    ):
        X = np.asarray(X, dtype=float)
        prototypes = np.asarray(prototypes, dtype=float)
        if X.ndim != 2 or X.shape[0] == 0:
            raise InvalidInputError(f'Expected a non-empty 2-D feature matrix, got shape {X.shape}.')
        if X.shape[1] != prototypes.shape[1]:
            raise InvalidInputError(
                f'Features have {X.shape[1]} columns but prototypes have {prototypes.shape[1]}.'
            )

        self.prototypes = prototypes
        self.grid = grid
        self.X = X
        self.bmus = nearest_nodes(X, prototypes) if bmus is None else np.asarray(bmus, dtype=int)

    def quantization_error(self) -> float:
        """
        Mean Euclidean distance between each sample and its BMU prototype (scaled units, lower is better).
        """
        return float(np.linalg.norm(self.X - self.prototypes[self.bmus], axis=1).mean())

    def topographic_error(self) -> float:
        """
        Fraction of samples whose 1st and 2nd nearest prototypes are not adjacent on the SOM grid.

        Returns:
            float: Topographic error in [0, 1].
        """
        if self.prototypes.shape[0] < 2:
            return 0.0
        distances = compute_distances(self.X, self.prototypes)
        first_second = np.argsort(distances, axis=1, kind='stable')[:, :2]
        adjacency_bool = self.grid.are_adjacent(first_second[:, 0], first_second[:, 1])
        return float(np.logical_not(adjacency_bool).mean())

    def silhouette(self) -> float:
        """
        Mean silhouette coefficient of the samples, using each sample's BMU as its cluster label.

        Returns:
            float: Silhouette score in [-1, 1], NaN if fewer than 2 or more than n_samples - 1 distinct BMUs.
        """
        if not self._labels_are_scorable():
            return np.nan
        return float(silhouette_score(self.X, self.bmus, metric='euclidean'))

    def separation_index(self) -> float:
        """
        Davies–Bouldin index of the BMU partition (within-cluster scatter over between-center distance).

        Returns:
            float: Separation index (lower is better), NaN if the BMU partition is degenerate.
        """
        if not self._labels_are_scorable():
            return np.nan
        return float(davies_bouldin_score(self.X, self.bmus))

    def report(self) -> Dict[str, float]:
        return {
            'quantization_error': self.quantization_error(),
            'topographic_error': self.topographic_error(),
            'silhouette': self.silhouette(),
            'separation_index': self.separation_index(),
        }

    def _labels_are_scorable(self) -> bool:
        n_labels = np.unique(self.bmus).shape[0]
        if 2 <= n_labels <= self.X.shape[0] - 1:
            return True
        warnings.warn(
            f'Cluster scores need between 2 and n_samples - 1 distinct BMUs, got {n_labels}. Returning NaN.',
            UserWarning
        )
        return False
