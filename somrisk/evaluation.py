
import warnings

import numpy as np
import pandas as pd

from typing import Dict, Any, Sequence, Union
from sklearn.metrics import roc_auc_score

from .zonation import ZonationPredictor, NO_DATA
from .exceptions import InvalidInputError


def validate_points(
        tiers: np.ndarray,
        labels: np.ndarray,
        num_tiers: int,
        high_risk_tier: Union[int, None] = None,
        no_data: int = NO_DATA,
) -> Dict[str, Any]:
    """
    Compare predicted risk tiers at held-out points with their presence/absence labels.

    Args:
        tiers (np.ndarray): Predicted tier per point (``no_data`` where no prediction was possible).
        labels (np.ndarray): Binary label per point, 1 presence and 0 absence.
        num_tiers (int): Number of tiers of the model.
        high_risk_tier (int or None): Lowest tier counted as high risk. Defaults to the top tier.
        no_data (int): Missing-prediction marker. Defaults to ``NO_DATA``.

    Returns:
        dict:
            - ``'n_points'``: number of points with a prediction.
            - ``'n_no_data'``: number of points without a prediction (excluded from all scores).
            - ``'per_tier'``: DataFrame indexed by tier with ``n_points``, ``n_presence`` and ``presence_rate``.
            - ``'auc'``: ROC AUC of the tier as presence score, NaN if only one class is present.
            - ``'high_risk_capture'``: fraction of presences predicted in tiers ``>= high_risk_tier``.

    Raises:
        InvalidInputError: If tiers and labels do not align or labels are not binary.
    """
    tiers = np.asarray(tiers).ravel()
    labels = np.asarray(labels).ravel()
    if tiers.shape != labels.shape:
        raise InvalidInputError(f'Got {tiers.shape[0]} tiers for {labels.shape[0]} labels.')
    if not set(np.unique(labels).tolist()).issubset({0, 1}):
        raise InvalidInputError('Validation labels must be 0 (absence) or 1 (presence).')

    if high_risk_tier is None:
        high_risk_tier = num_tiers

    valid_bool = tiers != no_data
    tiers_valid = tiers[valid_bool].astype(int)
    labels_valid = labels[valid_bool].astype(int)

    per_tier = pd.DataFrame({'tier': tiers_valid, 'label': labels_valid})
    per_tier = per_tier.groupby('tier')['label'].agg(n_points='size', n_presence='sum')
    per_tier = per_tier.reindex(range(1, num_tiers + 1), fill_value=0)
    per_tier['presence_rate'] = np.divide(
        per_tier['n_presence'].to_numpy(dtype=float),
        per_tier['n_points'].to_numpy(dtype=float),
        out=np.full(num_tiers, np.nan),
        where=per_tier['n_points'].to_numpy() > 0,
    )

    if np.unique(labels_valid).shape[0] == 2:
        auc = float(roc_auc_score(labels_valid, tiers_valid))
    else:
        auc = np.nan
        warnings.warn('Validation points contain a single class only; AUC is undefined.', UserWarning)

    presence_tiers = tiers_valid[labels_valid == 1]
    high_risk_capture = float(np.mean(presence_tiers >= high_risk_tier)) if presence_tiers.size else np.nan

    return {
        'n_points': int(valid_bool.sum()),
        'n_no_data': int((~valid_bool).sum()),
        'per_tier': per_tier,
        'auc': auc,
        'high_risk_capture': high_risk_capture,
    }


def response_curves(
        predictor: ZonationPredictor,
        training_features: pd.DataFrame,
        features: Union[Sequence[str], None] = None,
        n_steps: int = 50,
) -> pd.DataFrame:
    """
    Predicted tier along one predictor while all others are held at their training mean.

    The synthetic inputs are built in raw units, scaled with the model's frozen parameters and scored with the
    same nearest-prototype primitive as raster cells.

    Args:
        predictor (ZonationPredictor): Predictor wrapping the trained model.
        training_features (pd.DataFrame): Raw training features; their per-predictor min/max span the curves and
            their mean is the fixed value of the other predictors.
        features (Sequence[str] or None): Predictors to vary. Defaults to all.
        n_steps (int): Number of values per curve. Defaults to 50.

    Returns:
        pd.DataFrame: Long table with columns ``'feature'``, ``'value'`` and ``'tier'``.
    """
    if n_steps < 2:
        raise InvalidInputError(f"'n_steps' must be at least 2, got {n_steps}.")

    model = predictor.model
    names = model.schema.names
    if features is None:
        features = names

    x_train = model.schema.select(training_features)
    low = np.nanmin(x_train, axis=0)
    high = np.nanmax(x_train, axis=0)
    mean = np.nanmean(x_train, axis=0)

    curves = []
    for feature in features:
        j = model.schema.index_of(feature)
        values = np.linspace(low[j], high[j], n_steps)

        x_synthetic = np.tile(mean, (n_steps, 1))
        x_synthetic[:, j] = values

        curves.append(pd.DataFrame({
            'feature': feature,
            'value': values,
            'tier': predictor.predict_raw(x_synthetic),
        }))

    return pd.concat(curves, ignore_index=True)


def tier_summary(
        training_table: pd.DataFrame,
        tiers: np.ndarray,
        predictor_names: Sequence[str],
        label_key: str = 'label',
) -> pd.DataFrame:
    """
    Per-tier profile of the training samples: counts, presence fraction and mean raw predictor values.

    Args:
        training_table (pd.DataFrame): Merged training samples with predictors and labels.
        tiers (np.ndarray): Tier of each training sample.
        predictor_names (Sequence[str]): Predictors to average.
        label_key (str): Label column. Defaults to 'label'.

    Returns:
        pd.DataFrame: One row per tier.
    """
    df = training_table.loc[:, list(predictor_names) + [label_key]].copy()
    df['tier'] = np.asarray(tiers)
    df = df[df['tier'] != NO_DATA]

    summary = df.groupby('tier').agg(
        n_samples=(label_key, 'size'),
        presence_fraction=(label_key, 'mean'),
    )
    means = df.groupby('tier')[list(predictor_names)].mean().add_prefix('mean_')
    return summary.join(means)
