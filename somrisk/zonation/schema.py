
import numpy as np
import pandas as pd

from dataclasses import dataclass
from typing import Tuple, Sequence, Union

from ..exceptions import InvalidInputError, SchemaMismatchError


@dataclass(frozen=True)
class FeatureSchema:
    """
    Ordered, named set of environmental predictors.

    Every feature batch entering the system (training points, grid cells, validation points, synthetic
    response-curve inputs) is matched against the schema by name, never by position alone.

    Attributes:
        names (Tuple[str, ...]): Predictor names in the order used for the feature matrix columns.
    """
    names: Tuple[str, ...]

    def __post_init__(self):
        names = tuple(self.names)
        if len(names) == 0:
            raise InvalidInputError('A feature schema needs at least one predictor name.')
        if any(not isinstance(name, str) for name in names):
            raise InvalidInputError(f'Predictor names must be strings, got {names}.')
        duplicated = sorted({name for name in names if names.count(name) > 1})
        if duplicated:
            raise InvalidInputError(f'Duplicated predictor names: {duplicated}.')
        object.__setattr__(self, 'names', names)

    @property
    def n_features(self) -> int:
        return len(self.names)

    def check_names(self, names: Sequence[str]) -> None:
        """
        Verify that ``names`` equals the schema, including order.

        Args:
            names (Sequence[str]): Predictor names of an incoming batch.

        Raises:
            SchemaMismatchError: If names are missing, unexpected, or in a different order.
        """
        names = tuple(names)
        if names == self.names:
            return

        missing = [name for name in self.names if name not in names]
        unexpected = [name for name in names if name not in self.names]
        if missing or unexpected:
            raise SchemaMismatchError(
                f'Predictor names do not match the training schema. Missing: {missing}, unexpected: {unexpected}.'
            )
        raise SchemaMismatchError(
            f'Predictor order {list(names)} differs from the training order {list(self.names)}.'
        )

    def select(
            self,
            X: Union[pd.DataFrame, np.ndarray, Sequence[float]],
            names: Union[Sequence[str], None] = None,
    ) -> np.ndarray:
        """
        Extract the schema's predictors from a feature batch as a float matrix.

        DataFrames are matched by column name (additional columns such as coordinates or labels are ignored).
        Arrays are accepted as-is if their width matches; if ``names`` is given they are checked against the schema.

        Args:
            X (pd.DataFrame or np.ndarray or sequence): Feature batch, or a single feature vector.
            names (Sequence[str] or None): Column names of an array input.

        Returns:
            np.ndarray: Float matrix of shape (n_samples, n_features).

        Raises:
            SchemaMismatchError: If required predictors are missing from a DataFrame or ``names`` do not match.
            InvalidInputError: If an array has the wrong number of columns.
        """
        if isinstance(X, pd.DataFrame):
            missing = [name for name in self.names if name not in X.columns]
            if missing:
                raise SchemaMismatchError(f'Feature table is missing predictors {missing}.')
            return X.loc[:, list(self.names)].to_numpy(dtype=float)

        if names is not None:
            self.check_names(names)

        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(1, -1)
        if X.ndim != 2:
            raise InvalidInputError(f'Expected a 2-D feature matrix, got an array with {X.ndim} dimensions.')
        if X.shape[1] != self.n_features:
            raise InvalidInputError(
                f'Expected {self.n_features} features ({list(self.names)}), but got {X.shape[1]}.'
            )
        return X

    def to_frame(self, X: np.ndarray) -> pd.DataFrame:
        return pd.DataFrame(self.select(X), columns=list(self.names))

    def index_of(self, name: str) -> int:
        if name not in self.names:
            raise SchemaMismatchError(f"'{name}' is not one of the predictors {list(self.names)}.")
        return self.names.index(name)

    @classmethod
    def from_names(cls, names: Union[Sequence[str], str]) -> 'FeatureSchema':
        if isinstance(names, str):
            names = [names]
        return cls(names=tuple(names))


def missing_rows(X: np.ndarray) -> np.ndarray:
    # Row-wise flag for any non-finite predictor value
    return ~np.isfinite(X).all(axis=1)


