"""
Area of applicability (AOA) of the fitted model.

Follows Meyer & Pebesma (2021): predictors are standardised and weighted by
their importance, the dissimilarity index (DI) of a location is the distance
to the nearest training observation divided by the mean distance between
training observations, and locations whose DI exceeds what is seen within
the cross-validation are outside the area of applicability.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.spatial import cKDTree
from scipy.spatial.distance import pdist

from .exceptions import InsufficientDataError
from .prediction import feature_matrix, iter_chunks

logger = logging.getLogger(__name__)

AOA_NODATA = 255


@dataclass
class AreaOfApplicability:
    features: list
    mean: np.ndarray
    scale: np.ndarray
    weights: np.ndarray
    train_scaled: np.ndarray
    mean_distance: float
    train_di: np.ndarray
    threshold: float

    def transform(self, X) -> np.ndarray:
        X = np.asarray(X[self.features] if isinstance(X, pd.DataFrame) else X, dtype=float)
        return (X - self.mean) / self.scale * self.weights

    def dissimilarity(self, X, chunk_size: int = 65536) -> np.ndarray:
        """DI of new observations: nearest training point distance / mean training distance."""
        tree = cKDTree(self.train_scaled)
        scaled = self.transform(X)
        di = np.empty(len(scaled))
        for chunk in iter_chunks(len(scaled), chunk_size):
            dist, _ = tree.query(scaled[chunk], k=1)
            di[chunk] = dist / self.mean_distance
        return di

    def applicable(self, X) -> np.ndarray:
        return self.dissimilarity(X) <= self.threshold

    def summary(self) -> dict:
        return {
            'threshold': float(self.threshold),
            'mean_training_distance': float(self.mean_distance),
            'training_di_max': float(self.train_di.max()),
            'weights': dict(zip(self.features, map(float, self.weights))),
        }


def upper_whisker(values: np.ndarray) -> float:
    """Largest value not above Q3 + 1.5 * IQR (the upper boxplot whisker)."""
    values = np.asarray(values, dtype=float)
    q1, q3 = np.percentile(values, [25, 75])
    limit = q3 + 1.5 * (q3 - q1)
    return float(values[values <= limit].max())


def train_dissimilarity(X: pd.DataFrame, weights: Optional[Sequence[float]] = None,
                        folds: Optional[np.ndarray] = None) -> AreaOfApplicability:
    """
    Training DI and the AOA threshold.

    With ``folds``, the DI of a training point is measured to the nearest
    training point of another fold, mirroring what the spatial
    cross-validation exposed the model to. Without folds the nearest other
    training point is used.
    """
    features = list(X.columns)
    values = X.to_numpy(dtype=float)
    if len(values) < 2:
        raise InsufficientDataError("At least two training observations are needed for the AOA.")

    mean = values.mean(axis=0)
    scale = values.std(axis=0)
    scale[scale == 0] = 1.0
    if weights is None:
        weights = np.ones(len(features))
    weights = np.asarray(weights, dtype=float)
    if weights.shape != (len(features),):
        raise ValueError(f"{len(weights)} weights for {len(features)} predictors")
    if weights.max() > 0:
        weights = weights / weights.max()

    scaled = (values - mean) / scale * weights
    mean_distance = float(pdist(scaled).mean())
    if mean_distance == 0:
        raise InsufficientDataError("All training observations are identical in predictor space.")

    train_di = np.empty(len(scaled))
    if folds is None:
        dist, _ = cKDTree(scaled).query(scaled, k=2)
        train_di[:] = dist[:, 1] / mean_distance
    else:
        folds = np.asarray(folds)
        for fold in np.unique(folds):
            in_fold = folds == fold
            if in_fold.all():
                raise InsufficientDataError("The AOA needs at least two cross-validation folds.")
            dist, _ = cKDTree(scaled[~in_fold]).query(scaled[in_fold], k=1)
            train_di[in_fold] = dist / mean_distance

    threshold = upper_whisker(train_di)
    logger.info(f"AOA threshold (DI): {threshold:.4f}; mean training distance: {mean_distance:.4f}")
    return AreaOfApplicability(features=features, mean=mean, scale=scale, weights=weights,
                               train_scaled=scaled, mean_distance=mean_distance,
                               train_di=train_di, threshold=threshold)


def map_aoa(aoa: AreaOfApplicability, stack_data: np.ndarray, valid_mask: np.ndarray,
            band_names: Sequence[str], chunk_size: int = 65536) -> Tuple[np.ndarray, np.ndarray]:
    """DI raster (float32, NaN outside the mask) and AOA raster (uint8 1/0, 255 = NoData)."""
    X = feature_matrix(stack_data, band_names, aoa.features, valid_mask)
    di = aoa.dissimilarity(X, chunk_size=chunk_size)

    di_map = np.full(valid_mask.shape, np.nan, dtype=np.float32)
    di_map[valid_mask] = di
    aoa_map = np.full(valid_mask.shape, AOA_NODATA, dtype=np.uint8)
    aoa_map[valid_mask] = (di <= aoa.threshold).astype(np.uint8)

    n_inside = int(aoa_map[valid_mask].sum())
    n_valid = int(valid_mask.sum())
    logger.info(f"Area of applicability covers {n_inside} of {n_valid} pixels "
                f"({100.0 * n_inside / max(n_valid, 1):.1f}%)")
    return di_map, aoa_map
