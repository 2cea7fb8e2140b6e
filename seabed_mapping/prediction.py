"""Class and probability surfaces predicted over the predictor stack."""
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd

from .exceptions import InputDataError
from .rasters import save_raster

logger = logging.getLogger(__name__)


@dataclass
class PredictionResult:
    classes: np.ndarray        # (rows, cols) int16 class ids, class_nodata outside the mask
    probabilities: np.ndarray  # (n_classes, rows, cols) float32, NaN outside the mask
    max_probability: np.ndarray
    valid_mask: np.ndarray
    class_nodata: int

    def class_areas(self, pixel_area: float, class_names: Sequence[str]) -> pd.DataFrame:
        """Predicted area and pixel count per class."""
        counts = np.bincount(self.classes[self.valid_mask].astype(int), minlength=len(class_names))
        return pd.DataFrame({
            'Class': list(class_names),
            'pixels': counts,
            'area': counts * pixel_area,
            'fraction': counts / max(counts.sum(), 1),
        })


def feature_matrix(stack_data: np.ndarray, band_names: Sequence[str], features: Sequence[str],
                   valid_mask: np.ndarray) -> pd.DataFrame:
    """Valid pixels as a (n_pixels, n_features) frame with the model's column order."""
    missing = [f for f in features if f not in band_names]
    if missing:
        raise InputDataError(f"Predictor stack lacks the bands {missing} required by the model.")
    index = [list(band_names).index(f) for f in features]
    return pd.DataFrame(np.vstack([stack_data[i][valid_mask] for i in index]).T, columns=list(features))


def iter_chunks(n: int, chunk_size: int):
    for start in range(0, n, chunk_size):
        yield slice(start, min(start + chunk_size, n))


def predict_stack(model, stack_data: np.ndarray, valid_mask: np.ndarray, band_names: Sequence[str],
                  features: Sequence[str], chunk_size: int = 65536, class_nodata: int = -99) -> PredictionResult:
    """
    Predicts class ids and per-class probabilities for every valid pixel.

    Pixels are processed in chunks of ``chunk_size`` to bound memory use.
    """
    raster_shape = valid_mask.shape
    data_for_prediction = feature_matrix(stack_data, band_names, features, valid_mask)
    if data_for_prediction.empty:
        raise InputDataError("No valid pixels found in the raster for prediction.")
    n_classes = len(model.classes_)
    logger.info(f"Predicting on {data_for_prediction.shape[0]} samples with {data_for_prediction.shape[1]} features...")

    labels = np.empty(len(data_for_prediction), dtype=np.int16)
    proba = np.empty((len(data_for_prediction), n_classes), dtype=np.float32)
    for chunk in iter_chunks(len(data_for_prediction), chunk_size):
        p = model.predict_proba(data_for_prediction.iloc[chunk])
        proba[chunk] = p
        labels[chunk] = model.classes_[np.argmax(p, axis=1)]

    classification_map = np.full(raster_shape, class_nodata, dtype=np.int16)
    classification_map[valid_mask] = labels

    probabilities = np.full((n_classes,) + raster_shape, np.nan, dtype=np.float32)
    for k in range(n_classes):
        probabilities[k][valid_mask] = proba[:, k]
    max_probability = np.full(raster_shape, np.nan, dtype=np.float32)
    max_probability[valid_mask] = proba.max(axis=1)

    return PredictionResult(classes=classification_map, probabilities=probabilities,
                            max_probability=max_probability, valid_mask=valid_mask, class_nodata=class_nodata)


def export_predictions(result: PredictionResult, profile: dict, output_dir: str,
                       class_names: Sequence[str]) -> Dict[str, str]:
    """Writes the class map, probability cube, max probability and class legend."""
    files = {
        'classification': os.path.join(output_dir, 'classification_rf.tif'),
        'probabilities': os.path.join(output_dir, 'class_probabilities.tif'),
        'max_probability': os.path.join(output_dir, 'max_probability.tif'),
        'legend': os.path.join(output_dir, 'class_legend.csv'),
    }
    save_raster(files['classification'], result.classes, profile, nodata_value=result.class_nodata,
                band_names=['class_id'])
    save_raster(files['probabilities'], result.probabilities, profile, nodata_value=np.nan,
                band_names=[f'P({name})' for name in class_names])
    save_raster(files['max_probability'], result.max_probability, profile, nodata_value=np.nan,
                band_names=['max_probability'])
    pd.DataFrame({'class_id': range(len(class_names)), 'Class': list(class_names)}).to_csv(files['legend'], index=False)
    logger.info(f"Class legend written: {files['legend']}")
    return files


def class_names_in_order(model, encoding_names: List[str]) -> List[str]:
    """Class names in the order of ``model.classes_`` (the probability band order)."""
    return [encoding_names[int(c)] for c in model.classes_]
