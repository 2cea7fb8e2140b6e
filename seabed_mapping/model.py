"""Random forest tuning, spatial cross-validated evaluation and persistence."""
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import dump
from sklearn.base import clone
from sklearn.ensemble import RandomForestClassifier
from sklearn.metrics import accuracy_score, classification_report, cohen_kappa_score, confusion_matrix
from sklearn.model_selection import GridSearchCV, cross_val_predict

from .config import DEFAULT_PARAM_GRID

logger = logging.getLogger(__name__)


@dataclass
class Evaluation:
    accuracy: float  # percent
    kappa: float
    confusion: pd.DataFrame
    report: str
    fold_accuracy: pd.Series
    predictions: np.ndarray

    def as_dict(self) -> dict:
        return {
            'overall_accuracy_pct': self.accuracy,
            'kappa': self.kappa,
            'fold_accuracy_pct': {int(k): float(v) for k, v in self.fold_accuracy.items()},
        }


def tune_random_forest(X: pd.DataFrame, y, cv, param_grid: Optional[dict] = None, scoring: str = 'accuracy',
                       random_state=None, n_jobs: Optional[int] = -1) -> GridSearchCV:
    """Grid search over ``param_grid`` on the spatial folds, refitted on all observations."""
    param_grid = param_grid if param_grid is not None else DEFAULT_PARAM_GRID
    rf = RandomForestClassifier(random_state=random_state)
    logger.info(f"Performing GridSearchCV for Random Forest ({cv.get_n_splits()} spatial folds)...")
    grid_search = GridSearchCV(estimator=rf, param_grid=param_grid, cv=cv, n_jobs=n_jobs,
                               scoring=scoring, refit=True)
    grid_search.fit(X, y)
    logger.info(f"GridSearchCV Best Parameters Found: {grid_search.best_params_}")
    logger.info(f"Best spatial CV {scoring}: {grid_search.best_score_:.4f}")
    return grid_search


def grid_search_table(grid_search: GridSearchCV) -> pd.DataFrame:
    results = pd.DataFrame(grid_search.cv_results_)
    cols = ['params', 'mean_test_score', 'std_test_score', 'rank_test_score']
    return results[cols].sort_values('rank_test_score').reset_index(drop=True)


def evaluate_cv(estimator, X: pd.DataFrame, y, cv, class_names: Sequence[str],
                n_jobs: Optional[int] = None) -> Evaluation:
    """
    Out-of-fold predictions of ``estimator`` on the spatial folds.

    Each observation is predicted by a model that never saw its block, so the
    scores estimate accuracy away from the training locations.
    """
    y = np.asarray(y)
    y_pred = cross_val_predict(clone(estimator), X, y, cv=cv, n_jobs=n_jobs)

    labels = list(range(len(class_names)))
    accuracy = accuracy_score(y, y_pred) * 100
    kappa = cohen_kappa_score(y, y_pred, labels=labels)
    cm = confusion_matrix(y, y_pred, labels=labels)
    confusion = pd.DataFrame(cm, index=pd.Index(class_names, name='observed'),
                             columns=pd.Index(class_names, name='predicted'))
    report = classification_report(y, y_pred, labels=labels, target_names=list(class_names), zero_division=0)

    fold_accuracy = {}
    for fold, (_, test_idx) in enumerate(cv.split(X, y)):
        fold_accuracy[fold] = accuracy_score(y[test_idx], y_pred[test_idx]) * 100

    logger.info(f"Overall Accuracy (spatial CV): {accuracy:.2f}%")
    logger.info(f"Kappa Coefficient: {kappa:.3f}")
    logger.info(f"Confusion Matrix (Rows: observed, Cols: predicted):\n{confusion.to_string()}")
    logger.info(f"Classification Report:\n{report}")
    return Evaluation(accuracy=float(accuracy), kappa=float(kappa), confusion=confusion, report=report,
                      fold_accuracy=pd.Series(fold_accuracy, name='accuracy_pct'), predictions=y_pred)


def feature_importance(model, feature_names: Sequence[str]) -> pd.DataFrame:
    importances = model.feature_importances_ * 100
    frame = pd.DataFrame({
        'Feature': list(feature_names),
        'Importance (%)': importances,
    }).sort_values(by='Importance (%)', ascending=False).reset_index(drop=True)
    logger.info(f"Feature Importances:\n{frame.to_string(index=False)}")
    return frame


def save_model(model, path: str, metadata: Optional[dict] = None) -> List[str]:
    """Writes the fitted model with joblib and its metadata as a JSON sidecar."""
    dump(model, path)
    written = [path]
    if metadata is not None:
        meta_path = path.rsplit('.', 1)[0] + '.json'
        with open(meta_path, 'w', encoding='utf-8') as fh:
            json.dump(metadata, fh, indent=2, default=str)
        written.append(meta_path)
    logger.info(f"Model saved: {path}")
    return written
