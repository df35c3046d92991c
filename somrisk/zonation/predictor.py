
import os
import pickle

import numpy as np
import pandas as pd

from dataclasses import dataclass
from typing import Union
from typing_extensions import Self

from .schema import FeatureSchema, missing_rows
from .scaling import ScalingParameters
from .som_trainer import SomGrid, nearest_nodes
from ..exceptions import InvalidInputError, SchemaMismatchError

# Raster and point value for cells/rows that could not be predicted
NO_DATA = -9999


@dataclass(frozen=True)
class ZonationModel:
    """
    Immutable trained zonation model: everything needed to score new feature batches without retraining.

    Attributes:
        prototypes (np.ndarray): Frozen SOM prototypes in scaled feature space, shape (n_nodes, n_features).
        grid (SomGrid): Node layout of the SOM.
        scaling (ScalingParameters): Scaling fitted on the merged training set.
        node_to_tier (np.ndarray): Risk tier (1..num_tiers) per node.
        ordering_feature (str): Predictor whose prototype means order the tiers.
    """
    prototypes: np.ndarray
    grid: SomGrid
    scaling: ScalingParameters
    node_to_tier: np.ndarray
    ordering_feature: str

    def __post_init__(self):
        prototypes = np.array(self.prototypes, dtype=float)
        node_to_tier = np.array(self.node_to_tier, dtype=int)

        if prototypes.ndim != 2 or prototypes.shape[0] != self.grid.n_nodes:
            raise InvalidInputError(
                f'Expected {self.grid.n_nodes} prototypes for grid {self.grid.shape}, got shape {prototypes.shape}.'
            )
        if prototypes.shape[1] != len(self.scaling.feature_names):
            raise InvalidInputError(
                f'Prototypes have {prototypes.shape[1]} features, scaling has {len(self.scaling.feature_names)}.'
            )
        if node_to_tier.shape != (self.grid.n_nodes,) or np.any(node_to_tier < 1):
            raise InvalidInputError('Every SOM node needs exactly one tier >= 1.')
        if self.ordering_feature not in self.scaling.feature_names:
            raise SchemaMismatchError(
                f"Ordering feature '{self.ordering_feature}' is not one of {list(self.scaling.feature_names)}."
            )

        prototypes.setflags(write=False)
        node_to_tier.setflags(write=False)
        object.__setattr__(self, 'prototypes', prototypes)
        object.__setattr__(self, 'node_to_tier', node_to_tier)

    @property
    def schema(self) -> FeatureSchema:
        return self.scaling.schema

    @property
    def num_tiers(self) -> int:
        return int(self.node_to_tier.max())

    def save(
            self,
            filename: str = 'zonation_model.pkl',
            filepath: Union[str, None] = None,
    ) -> None:
        """
        Persist prototypes, grid topology, scaling parameters and node → tier table as one unit.

        Args:
            filename (str): Output filename.
            filepath (str or None): Directory to save the file. Defaults to CWD.
        """
        if filepath is None:
            filepath = os.getcwd()
        with open(os.path.join(filepath, filename), 'wb') as f:
            pickle.dump(self, f)

    @classmethod
    def load(
            cls,
            filename: str = 'zonation_model.pkl',
            filepath: Union[str, None] = None,
    ) -> Self:
        if filepath is None:
            filepath = os.getcwd()
        with open(os.path.join(filepath, filename), 'rb') as f:
            model = pickle.load(f)
        if not isinstance(model, cls):
            raise TypeError(f'{os.path.join(filepath, filename)} does not contain a {cls.__name__}.')
        return model


class ZonationPredictor:
    """
    Nearest-prototype risk scoring with a frozen :class:`ZonationModel`.

    ``predict`` is the single scoring primitive of the system: raster cells of every epoch, validation points and
    synthetic response-curve inputs all go through it. Rows with a missing predictor value are not scored and
    carry ``NO_DATA``.

    Attributes:
        model (ZonationModel): The frozen model.
        verbosity (int): Logging level. Defaults to 1.
    """
    def __init__(self, model: ZonationModel, verbosity: int = 1):
        self.model = model
        self.verbosity = verbosity

    def predict_nodes(self, scaled_features: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
        """
        BMU node index per row; ``-1`` for rows with missing values.

        Args:
            scaled_features (np.ndarray or pd.DataFrame): Scaled feature batch, shape (n_samples, n_features).

        Returns:
            np.ndarray: Node index per row.
        """
        X = self.model.schema.select(scaled_features)
        nodes = np.full(X.shape[0], -1, dtype=int)
        valid_bool = ~missing_rows(X)
        if np.any(valid_bool):
            nodes[valid_bool] = nearest_nodes(X[valid_bool], self.model.prototypes)
        return nodes

    def predict(self, scaled_features: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
        """
        Risk tier per row via the nearest prototype (ties to the lowest node index).

        Args:
            scaled_features (np.ndarray or pd.DataFrame): Scaled feature batch, or a single scaled feature vector.

        Returns:
            np.ndarray: Integer tier per row, ``NO_DATA`` where any predictor is missing.

        Raises:
            InvalidInputError: If the number of features does not match the model.
            SchemaMismatchError: If a DataFrame lacks any of the model's predictors.
        """
        nodes = self.predict_nodes(scaled_features)
        tiers = np.full(nodes.shape[0], NO_DATA, dtype=np.int32)
        valid_bool = nodes >= 0
        tiers[valid_bool] = self.model.node_to_tier[nodes[valid_bool]]
        return tiers

    def predict_raw(self, features: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
        # Scale with the frozen training parameters, then score
        return self.predict(self.model.scaling.transform(features))

    def predict_grid(self, grid, batch_size: int = 500_000) -> np.ndarray:
        """
        Apply the model to every valid cell of an environmental grid.

        Bands are matched to the model's predictors by name. Cells flagged as no-data or with a missing band value
        are set to ``NO_DATA``.

        Args:
            grid (EnvironmentalGrid): Multi-band raw predictor grid.
            batch_size (int): Number of cells scored at once. Defaults to 500000.

        Returns:
            np.ndarray: ``int32`` risk grid with the grid's spatial shape.

        Raises:
            SchemaMismatchError: If a model predictor has no band in the grid.
        """
        stack = grid.stack(self.model.schema.names)
        n_features, n_rows, n_columns = stack.shape

        flat = stack.reshape(n_features, -1).T
        risk_flat = np.full(n_rows * n_columns, NO_DATA, dtype=np.int32)

        valid_bool = grid.valid_mask.ravel() & ~missing_rows(flat)
        valid_idx = np.flatnonzero(valid_bool)

        for start in range(0, len(valid_idx), batch_size):
            sel = valid_idx[start:start + batch_size]
            risk_flat[sel] = self.predict(self.model.scaling.transform(flat[sel]))

        if self.verbosity >= 2:
            print(f'# ### Predicted {valid_idx.size} of {risk_flat.size} grid cells.')

        return risk_flat.reshape(n_rows, n_columns)