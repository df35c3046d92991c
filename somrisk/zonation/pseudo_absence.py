
import numpy as np
import pandas as pd

from typing import Sequence, Union
from scipy.spatial import cKDTree

from .schema import FeatureSchema, missing_rows
from ..exceptions import InvalidInputError, InsufficientDataError


class PseudoAbsenceSampler:
    """
    Select background points that can be trusted as absences.

    A background point is accepted as pseudo-absence iff its Euclidean distance to the nearest known presence,
    measured in raw (unscaled) feature space, exceeds ``distance_threshold``. Background points environmentally
    similar to presences are ambiguous and are discarded.

    Attributes:
        distance_threshold (float): Minimum nearest-presence distance in raw feature units. Defaults to 0.2.
        feature_names (Sequence[str] or None): Predictors to use. If ``None``, all columns / array columns are used.
        verbosity (int): Logging level. Defaults to 1.
        nn_distances_ (np.ndarray or None): Nearest-presence distance per input background row (NaN for rows with
            missing values).
        accepted_mask_ (np.ndarray or None): Boolean mask over the input background rows.
    """
    def __init__(
            self,
            distance_threshold: float = 0.2,
            feature_names: Union[Sequence[str], None] = None,
            verbosity: int = 1,
    ):
        self.distance_threshold = distance_threshold
        self.feature_names = feature_names
        self.verbosity = verbosity

        self.nn_distances_ = None
        self.accepted_mask_ = None

    def select(
            self,
            presence_features: Union[pd.DataFrame, np.ndarray],
            background_features: Union[pd.DataFrame, np.ndarray],
            distance_threshold: Union[float, None] = None,
    ) -> Union[pd.DataFrame, np.ndarray]:
        """
        Return the background rows accepted as pseudo-absences.

        Args:
            presence_features (pd.DataFrame or np.ndarray): Raw features at presence locations.
            background_features (pd.DataFrame or np.ndarray): Raw features at randomly sampled background locations.
            distance_threshold (float or None): Overrides the instance threshold for this call.

        Returns:
            pd.DataFrame or np.ndarray: Subset of ``background_features`` (same type, original index preserved).

        Raises:
            InsufficientDataError: If either set is empty after removing rows with missing values.
            InvalidInputError: If the threshold is negative or the feature dimensions differ.
        """
        threshold = self.distance_threshold if distance_threshold is None else distance_threshold
        if threshold < 0:
            raise InvalidInputError(f"'distance_threshold' must be >= 0, got {threshold}.")

        schema = self._resolve_schema(presence_features, background_features)
        x_presence = schema.select(presence_features)
        x_background = schema.select(background_features)

        x_presence = x_presence[~missing_rows(x_presence)]
        background_valid = ~missing_rows(x_background)

        if x_presence.shape[0] == 0:
            raise InsufficientDataError('No presence samples without missing values.')
        if not np.any(background_valid):
            raise InsufficientDataError('No background samples without missing values.')

        # ### Nearest-presence distance for every complete background row
        tree = cKDTree(x_presence)
        distances, _ = tree.query(x_background[background_valid], k=1)

        self.nn_distances_ = np.full(x_background.shape[0], np.nan)
        self.nn_distances_[background_valid] = distances

        self.accepted_mask_ = np.zeros(x_background.shape[0], dtype=bool)
        self.accepted_mask_[background_valid] = distances > threshold

        if self.verbosity >= 2:
            n_accepted = int(self.accepted_mask_.sum())
            print(
                f'# ### Pseudo-absences: accepted {n_accepted} of {x_background.shape[0]} background points '
                f'(threshold {threshold}, {int((~background_valid).sum())} with missing values).'
            )

        if isinstance(background_features, pd.DataFrame):
            return background_features.loc[self.accepted_mask_]
        return np.asarray(background_features, dtype=float)[self.accepted_mask_]

    def _resolve_schema(self, presence, background) -> FeatureSchema:
        if self.feature_names is not None:
            return FeatureSchema.from_names(self.feature_names)
        if isinstance(presence, pd.DataFrame):
            return FeatureSchema.from_names([str(c) for c in presence.columns])
        n_presence = np.atleast_2d(np.asarray(presence, dtype=float)).shape[1]
        n_background = np.atleast_2d(np.asarray(background, dtype=float)).shape[1]
        if n_presence != n_background:
            raise InvalidInputError(
                f'Presence ({n_presence}) and background ({n_background}) features differ in dimension.'
            )
        return FeatureSchema.from_names([f'x{i}' for i in range(n_presence)])
