
import os
import warnings
import pickle

import numpy as np
import pandas as pd

from sklearn.exceptions import NotFittedError

from typing import List, Dict, Union, Any
from typing_extensions import Literal, Self

from .exceptions import InvalidInputError
from .zonation import (
    FeatureSchema, FeatureScaler, PseudoAbsenceSampler, SomTrainer, RiskTierClusterer, ZonationModel,
    ZonationPredictor, QualityEvaluator, SpatialSmoother, NO_DATA
)
from .zonation.schema import missing_rows
from .io import EnvironmentalGrid, coordinates, extract_at_points, write_risk_grid
from .evaluation import validate_points, response_curves, tier_summary


class ZonationPipeline:
    """
    End-to-end disease-risk zonation from point records and environmental predictor grids.

    This class orchestrates the full workflow:

    1. **Check the predictor schema of all point sets**
    2. **Fit the feature scaling on presence, background and absence features**
    3. **Select pseudo-absences from the background points**
    4. **Merge presences, pseudo-absences and absences into the training set**
    5. **Train the SOM on the scaled training set**
    6. **Cluster the prototypes into ordered risk tiers and freeze the model**
    7. **Compute quality diagnostics**
    8. **Apply the frozen model to the grid of every epoch, smooth and write the risk grids**
    9. **(Optional) Validate against held-out points and compute response curves**

    Attributes:
        predictor_names (list[str]): Predictor names, in training order. Grid bands and point columns are matched
            by these names.
        ordering_feature (str or None): Predictor whose prototype means order the tiers (higher mean = higher risk).
            If ``None``, the first predictor is used.
        num_tiers (int): Number of risk tiers. Defaults to 3.
        distance_threshold (float): Pseudo-absence distance threshold in raw feature units. Defaults to 0.2.
        som_kwargs (dict or None): Arguments for :class:`SomTrainer`. Must contain an explicit ``'learning_rate'``
            (start, end) pair.
        tier_linkage (Literal['complete', 'average']): Linkage of the tier clustering. Defaults to 'complete'.
        smoothing_window (int or None): Window size of the majority filter; ``None`` disables smoothing.
        save_path (str or None): Output directory for the pipeline and risk grids. Defaults to CWD.
        verbosity (int): Logging level.
        is_trained_ (bool): Whether the pipeline has been successfully trained.
        model_ (ZonationModel or None): The frozen zonation model.
        predictor_ (ZonationPredictor or None): Scoring wrapper around ``model_``.
        training_table_ (pd.DataFrame or None): Merged training samples with ``'label'`` and ``'source'`` columns.
        training_tiers_ (np.ndarray or None): Tier of every training sample.
        quantization_error_history_ (np.ndarray or None): Per-epoch quantization error of the SOM training.
        quality_ (dict or None): Quality diagnostics, see :meth:`QualityEvaluator.report`.
    """
    def __init__(
            self,
            predictor_names: List[str],
            ordering_feature: Union[str, None] = None,
            num_tiers: int = 3,
            distance_threshold: float = 0.2,
            som_kwargs: Union[Dict[str, Any], None] = None,  # {'learning_rate': (start, end), ...}
            tier_linkage: Literal['complete', 'average'] = 'complete',
            smoothing_window: Union[int, None] = 3,
            save_path: Union[str, None] = None,
            verbosity: int = 1,
    ):

        # Predictors and tier ordering
        self.predictor_names = list(predictor_names)
        self.ordering_feature = ordering_feature
        self.num_tiers = num_tiers

        self.distance_threshold = distance_threshold

        # SOM and clustering parameters
        self.som_kwargs = som_kwargs
        self.tier_linkage = tier_linkage

        self.smoothing_window = smoothing_window

        # Initialize the save path
        self.save_path = save_path
        self._init_save_path()

        self.verbosity = verbosity

        self.is_trained_ = False
        self.model_ = None
        self.predictor_ = None
        self.training_table_ = None
        self.training_tiers_ = None
        self.quantization_error_history_ = None
        self.quality_ = None

    def _init_save_path(self):

        if self.save_path is None:
            self.save_path = os.getcwd()

        os.makedirs(self.save_path, exist_ok=True)

    # ### Training #####################################################################################################
    def train(
            self,
            presence: pd.DataFrame,
            background: pd.DataFrame,
            absence: Union[pd.DataFrame, None] = None,
    ) -> Self:
        """
        Train the zonation model.

        Args:
            presence (pd.DataFrame): Raw predictor values at disease-presence locations.
            background (pd.DataFrame): Raw predictor values at randomly sampled background locations.
            absence (pd.DataFrame or None): Raw predictor values at confirmed-absence locations.

        Returns:
            Self: The trained pipeline.

        Raises:
            SchemaMismatchError: If a point set lacks any of the predictors.
            InvalidInputError: If the configuration is invalid or the training data is degenerate.
            InsufficientDataError: If presences or usable background points are missing.
        """
        schema = FeatureSchema.from_names(self.predictor_names)
        ordering_feature = self._resolve_ordering_feature()

        if self.som_kwargs is None or 'learning_rate' not in self.som_kwargs:
            raise InvalidInputError(
                "'som_kwargs' must contain an explicit 'learning_rate' (start, end) pair for SOM training."
            )

        # Schema check of every point set
        point_sets = [('presence', presence), ('background', background)]
        if absence is not None:
            point_sets.append(('absence', absence))
        for _, df in point_sets:
            schema.select(df)

        # ### Scaling is fitted once on all raw features
        scaling_pool = pd.concat([df.loc[:, self.predictor_names] for _, df in point_sets], ignore_index=True)
        scaler = FeatureScaler(feature_names=self.predictor_names, verbosity=self.verbosity)
        scaler.fit(scaling_pool)

        # ### Pseudo-absences in raw feature space
        sampler = PseudoAbsenceSampler(
            distance_threshold=self.distance_threshold,
            feature_names=self.predictor_names,
            verbosity=self.verbosity,
        )
        pseudo_absence = sampler.select(presence, background)
        if pseudo_absence.shape[0] == 0:
            warnings.warn(
                f'No background point is farther than {self.distance_threshold} from all presences; '
                'training without pseudo-absences.',
                UserWarning
            )

        training_table = self._merge_training_table(
            presence=presence, pseudo_absence=pseudo_absence, absence=absence
        )
        x_train = scaler.transform(training_table)

        # ### SOM
        som_kwargs = dict(self.som_kwargs)
        som_kwargs.setdefault('verbosity', self.verbosity)
        trainer = SomTrainer(**som_kwargs)
        prototypes, bmus = trainer.train(x_train)

        # ### Risk tiers ordered by the prototypes' coordinate on the ordering predictor
        clusterer = RiskTierClusterer(linkage=self.tier_linkage, verbosity=self.verbosity)
        node_to_tier = clusterer.assign_tiers(
            prototypes=prototypes,
            num_tiers=self.num_tiers,
            ordering_values=prototypes[:, schema.index_of(ordering_feature)],
        )

        self.model_ = ZonationModel(
            prototypes=prototypes,
            grid=trainer.grid_,
            scaling=scaler.params_,
            node_to_tier=node_to_tier,
            ordering_feature=ordering_feature,
        )
        self.predictor_ = ZonationPredictor(model=self.model_, verbosity=self.verbosity)

        self.training_table_ = training_table
        self.training_tiers_ = np.asarray(self.model_.node_to_tier[bmus], dtype=np.int32)
        self.quantization_error_history_ = trainer.quantization_error_history_

        # Diagnostics only, nothing is fed back into the model
        self.quality_ = QualityEvaluator(
            prototypes=self.model_.prototypes, grid=self.model_.grid, X=x_train, bmus=bmus
        ).report()

        self.is_trained_ = True

        if self.verbosity >= 1:
            print(
                f'# ### Trained zonation model: {training_table.shape[0]} samples, '
                f'{self.model_.grid.n_nodes} SOM nodes, {self.num_tiers} tiers.'
            )
        if self.verbosity >= 2:
            for key, value in self.quality_.items():
                print(f'# ### {key}: {value:.4f}')

        return self

    def _resolve_ordering_feature(self) -> str:
        if self.ordering_feature is None:
            warnings.warn(
                f"No 'ordering_feature' given; tiers are ordered by the first predictor "
                f"'{self.predictor_names[0]}'.",
                UserWarning
            )
            return self.predictor_names[0]
        if self.ordering_feature not in self.predictor_names:
            raise InvalidInputError(
                f"'ordering_feature' '{self.ordering_feature}' is not one of the predictors {self.predictor_names}."
            )
        return self.ordering_feature

    def _merge_training_table(
            self,
            presence: pd.DataFrame,
            pseudo_absence: pd.DataFrame,
            absence: Union[pd.DataFrame, None],
    ) -> pd.DataFrame:

        parts = [(presence, 1, 'presence'), (pseudo_absence, 0, 'pseudo_absence')]
        if absence is not None:
            parts.append((absence, 0, 'absence'))

        tables = []
        for df, label, source in parts:
            table = df.loc[:, self.predictor_names].reset_index(drop=True)
            table['label'] = label
            table['source'] = source
            tables.append(table)
        training_table = pd.concat(tables, ignore_index=True)

        # SOM training needs complete feature vectors
        nan_bool = missing_rows(training_table.loc[:, self.predictor_names].to_numpy(dtype=float))
        if np.any(nan_bool):
            if self.verbosity >= 2:
                print(f'# ### Dropping {int(nan_bool.sum())} training samples with missing predictor values.')
            training_table = training_table.loc[~nan_bool].reset_index(drop=True)

        if self.verbosity >= 2:
            counts = training_table['source'].value_counts().to_dict()
            print(f'# ### Training samples per source: {counts}')

        return training_table

    # ### Prediction ###################################################################################################
    def predict_grid(self, grid: EnvironmentalGrid, smooth: bool = True) -> np.ndarray:
        """
        Apply the frozen model to every cell of one epoch's environmental grid.

        Args:
            grid (EnvironmentalGrid): Raw predictor grid of the epoch. Bands are matched by predictor name.
            smooth (bool): Whether to apply the majority filter. Ignored if ``smoothing_window`` is ``None``.

        Returns:
            np.ndarray: ``int32`` risk grid, ``NO_DATA`` on cells without a complete feature vector.

        Raises:
            NotFittedError: If the pipeline is not trained.
            SchemaMismatchError: If the grid lacks any of the predictors.
        """
        self._check_is_trained()

        unused = [name for name in grid.band_names if name not in self.predictor_names]
        if unused:
            warnings.warn(f'Grid bands {unused} are not predictors of the model and are ignored.', UserWarning)

        risk_grid = self.predictor_.predict_grid(grid)

        if smooth and self.smoothing_window is not None:
            smoother = SpatialSmoother(window_size=self.smoothing_window, no_data=NO_DATA)
            risk_grid = smoother.smooth(risk_grid)

        return risk_grid

    def run_epochs(
            self,
            grids: Dict[str, EnvironmentalGrid],
            save_path: Union[str, None] = None,
            filename_prefix: str = 'risk_',
            smooth: bool = True,
    ) -> Dict[str, str]:
        """
        Predict, smooth and write the risk grid of every epoch with the same frozen model.

        Args:
            grids (dict[str, EnvironmentalGrid]): Epoch name → environmental grid.
            save_path (str or None): Output directory. Defaults to the pipeline ``save_path``.
            filename_prefix (str): Prefix of the written files, followed by the epoch name.
            smooth (bool): Whether to apply the majority filter.

        Returns:
            dict[str, str]: Epoch name → path of the written risk grid.
        """
        self._check_is_trained()

        if save_path is None:
            save_path = self.save_path

        paths = {}
        for epoch, grid in grids.items():
            risk_grid = self.predict_grid(grid=grid, smooth=smooth)
            paths[epoch] = write_risk_grid(
                risk_grid=risk_grid,
                filename=f'{filename_prefix}{epoch}.npz',
                filepath=save_path,
                transform=grid.transform,
                no_data=NO_DATA,
            )
            if self.verbosity >= 1:
                print(f"# ### Epoch '{epoch}': risk grid written to {paths[epoch]}")

        return paths

    # ### Evaluation ###################################################################################################
    def validate(
            self,
            points: pd.DataFrame,
            grid: Union[EnvironmentalGrid, None] = None,
            label_key: str = 'label',
            high_risk_tier: Union[int, None] = None,
            smooth: bool = True,
    ) -> Dict[str, Any]:
        """
        Validate the model against held-out presence/absence points.

        If ``grid`` is given, the epoch's risk grid is produced and the tier of the cell containing each point is
        used. Otherwise the points' own predictor columns are scored directly.

        Args:
            points (pd.DataFrame): Validation points with ``'lon'``, ``'lat'`` (grid mode) or predictor columns
                (direct mode) and a binary label column.
            grid (EnvironmentalGrid or None): Environmental grid of the validation epoch.
            label_key (str): Label column. Defaults to 'label'.
            high_risk_tier (int or None): Lowest tier counted as high risk. Defaults to the top tier.
            smooth (bool): Whether the risk grid is smoothed before extraction (grid mode only).

        Returns:
            dict: See :func:`somrisk.evaluation.validate_points`.
        """
        self._check_is_trained()

        if label_key not in points.columns:
            raise InvalidInputError(f"Validation points have no label column '{label_key}'.")

        if grid is not None:
            risk_grid = self.predict_grid(grid=grid, smooth=smooth)
            xy = coordinates(points)
            tiers = extract_at_points(risk_grid=risk_grid, transform=grid.transform, x=xy[:, 0], y=xy[:, 1])
        else:
            tiers = self.predictor_.predict_raw(points)

        results = validate_points(
            tiers=tiers,
            labels=points[label_key].to_numpy(),
            num_tiers=self.model_.num_tiers,
            high_risk_tier=high_risk_tier,
        )

        if self.verbosity >= 1:
            print(
                f"# ### Validation on {results['n_points']} points ({results['n_no_data']} without prediction): "
                f"AUC {results['auc']:.3f}, high-risk capture {results['high_risk_capture']:.3f}"
            )

        return results

    def response_curves(self, features: Union[List[str], None] = None, n_steps: int = 50) -> pd.DataFrame:
        self._check_is_trained()
        return response_curves(
            predictor=self.predictor_,
            training_features=self.training_table_,
            features=features,
            n_steps=n_steps,
        )

    def tier_summary(self) -> pd.DataFrame:
        self._check_is_trained()
        return tier_summary(
            training_table=self.training_table_,
            tiers=self.training_tiers_,
            predictor_names=self.predictor_names,
        )

    def quality_report(self) -> Dict[str, float]:
        self._check_is_trained()
        return dict(self.quality_)

    def _check_is_trained(self):
        if not self.is_trained_:
            raise NotFittedError("This pipeline instance is not trained yet. Call 'train' first.")

    # ### Persistence ##################################################################################################
    def save(self, filename: str = 'zonation_pipeline.pkl', filepath: Union[str, None] = None):
        """
        Save the pipeline, including the frozen zonation model, to a pickle file.

        Args:
            filename (str): Output filename.
            filepath (str or None): Directory to save to. Defaults to pipeline ``save_path``.

        Returns:
            None
        """

        if filepath is None:
            filepath = self.save_path

        with open(os.path.join(filepath, filename), 'wb') as f:
            pickle.dump({'pipeline': self}, f)

    @classmethod
    def load(cls, filename: str = 'zonation_pipeline.pkl', filepath: Union[str, None] = None) -> Self:
        """
        Load a previously saved ZonationPipeline.

        Args:
            filename (str): Pipeline pickle filename.
            filepath (str or None): Directory path for the file. Defaults to CWD.

        Returns:
            ZonationPipeline: Fully restored pipeline instance.
        """

        if filepath is None:
            filepath = os.getcwd()

        with open(os.path.join(filepath, filename), 'rb') as f:
            obj = pickle.load(f)

        pipeline = obj.get('pipeline', None) if isinstance(obj, dict) else None
        if not isinstance(pipeline, cls):
            raise TypeError(f'{os.path.join(filepath, filename)} does not contain a {cls.__name__}.')

        return pipeline
