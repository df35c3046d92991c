
import warnings

import numpy as np
import pandas as pd

from dataclasses import dataclass
from typing import Tuple, Sequence, Union
from typing_extensions import Self
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.utils.validation import check_is_fitted

from .schema import FeatureSchema, missing_rows
from ..exceptions import InvalidInputError


@dataclass(frozen=True)
class ScalingParameters:
    """
    Frozen per-feature centering and scaling fitted once on the merged training set.

    Attributes:
        feature_names (Tuple[str, ...]): Predictor names the parameters belong to.
        center (np.ndarray): Per-feature mean, shape (n_features,).
        scale (np.ndarray): Per-feature standard deviation, shape (n_features,).
    """
    feature_names: Tuple[str, ...]
    center: np.ndarray
    scale: np.ndarray

    def __post_init__(self):
        center = np.array(self.center, dtype=float)
        scale = np.array(self.scale, dtype=float)
        if center.shape != scale.shape or center.shape != (len(self.feature_names),):
            raise InvalidInputError(
                f'center {center.shape} and scale {scale.shape} must both have shape ({len(self.feature_names)},).'
            )
        center.setflags(write=False)
        scale.setflags(write=False)
        object.__setattr__(self, 'feature_names', tuple(self.feature_names))
        object.__setattr__(self, 'center', center)
        object.__setattr__(self, 'scale', scale)

    @property
    def schema(self) -> FeatureSchema:
        return FeatureSchema(names=self.feature_names)

    def transform(self, X: Union[pd.DataFrame, np.ndarray], names: Union[Sequence[str], None] = None) -> np.ndarray:
        # Missing values stay missing: (nan - c) / s = nan
        X = self.schema.select(X, names=names)
        return (X - self.center) / self.scale

    def inverse_transform(self, X: np.ndarray) -> np.ndarray:
        X = self.schema.select(X)
        return X * self.scale + self.center


class FeatureScaler(BaseEstimator, TransformerMixin):
    """
    Z-score scaler for environmental feature vectors with a scikit-learn–compatible API.

    The scaler is fitted exactly once, on the pooled raw presence, background and absence features before
    pseudo-absences are selected.
    The resulting :class:`ScalingParameters` are immutable and are reused verbatim for every later feature
    batch (grid cells of any epoch, validation points, synthetic response-curve inputs).

    Attributes:
        feature_names (Sequence[str] or None): Predictor names. If ``None``, DataFrame columns or
            ``x0..x{D-1}`` are used.
        ddof (int): Delta degrees of freedom of the standard deviation. Defaults to 1 (sample standard deviation).
        verbosity (int): Logging level. Defaults to 1.
        params_ (ScalingParameters): Fitted parameters.
        n_features_in_ (int): Number of predictors seen during fit.
    """
    def __init__(
            self,
            feature_names: Union[Sequence[str], None] = None,
            ddof: int = 1,
            verbosity: int = 1,
    ):
        self.feature_names = feature_names
        self.ddof = ddof
        self.verbosity = verbosity

    def fit(self, X: Union[pd.DataFrame, np.ndarray], y=None) -> Self:
        """
        Compute per-feature mean and standard deviation.

        Rows with missing values are dropped before fitting.

        Args:
            X (pd.DataFrame or np.ndarray): Training features of shape (n_samples, n_features).
            y: Ignored.

        Returns:
            Self: The fitted scaler.

        Raises:
            InvalidInputError: If fewer than 2 complete samples remain or any feature has zero variance.
        """
        if hasattr(self, 'params_'):
            warnings.warn(
                'The scaler was already fitted. Scaling parameters must not be refitted on new data; '
                'create a new FeatureScaler to start over.',
                UserWarning
            )

        schema = self._resolve_schema(X)
        X = schema.select(X)

        nan_bool = missing_rows(X)
        if np.any(nan_bool) and self.verbosity >= 2:
            print(f'# ### Dropping {int(nan_bool.sum())} of {X.shape[0]} rows with missing values before scaling.')
        X = X[~nan_bool]

        if X.shape[0] < 2:
            raise InvalidInputError(
                f'At least 2 complete samples are required to fit the scaling, got {X.shape[0]}.'
            )

        center = X.mean(axis=0)
        scale = X.std(axis=0, ddof=self.ddof)

        constant = [name for name, s in zip(schema.names, scale) if not s > 0]
        if constant:
            raise InvalidInputError(
                f'Features {constant} have zero variance; drop constant predictors before fitting.'
            )

        self.params_ = ScalingParameters(feature_names=schema.names, center=center, scale=scale)
        self.n_features_in_ = schema.n_features

        if self.verbosity >= 2:
            print(f'# ### Fitted scaling on {X.shape[0]} samples and {schema.n_features} predictors.')

        return self

    def transform(self, X: Union[pd.DataFrame, np.ndarray], names: Union[Sequence[str], None] = None) -> np.ndarray:
        """
        Apply ``(x - center) / scale`` with the frozen parameters.

        Args:
            X (pd.DataFrame or np.ndarray): Feature batch or single feature vector.
            names (Sequence[str] or None): Column names of an array input, checked against the training schema.

        Returns:
            np.ndarray: Scaled features; missing values stay missing.
        """
        check_is_fitted(self, 'params_')
        return self.params_.transform(X, names=names)

    def inverse_transform(self, X: np.ndarray) -> np.ndarray:
        check_is_fitted(self, 'params_')
        return self.params_.inverse_transform(X)

    def _resolve_schema(self, X) -> FeatureSchema:
        if self.feature_names is not None:
            return FeatureSchema.from_names(self.feature_names)
        if isinstance(X, pd.DataFrame):
            return FeatureSchema.from_names([str(c) for c in X.columns])
        n_features = np.atleast_2d(np.asarray(X)).shape[1]
        return FeatureSchema.from_names([f'x{i}' for i in range(n_features)])
