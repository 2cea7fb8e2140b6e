"""
Predictor selection on spatial folds.

Two stages: a search over correlation cut-offs that removes redundant
predictors, then forward feature selection starting from the best pair.
Every candidate set is scored with the same spatial cross-validation used
for tuning.
"""
import logging
from dataclasses import dataclass
from itertools import combinations
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.base import clone
from sklearn.ensemble import RandomForestClassifier
from sklearn.model_selection import cross_val_score

logger = logging.getLogger(__name__)


@dataclass
class SelectionResult:
    selected: List[str]
    score: float
    history: pd.DataFrame


@dataclass
class ThresholdSearchResult:
    threshold: float
    selected: List[str]
    score: float
    table: pd.DataFrame


def default_estimator(random_state=None, n_estimators: int = 100) -> RandomForestClassifier:
    return RandomForestClassifier(n_estimators=n_estimators, class_weight='balanced', random_state=random_state)


def find_correlated(frame: pd.DataFrame, threshold: float) -> List[str]:
    """
    Predictors to drop so that no remaining pair has |r| above ``threshold``.

    Walks the pairs from the most correlated down and, for each pair still
    above the threshold, drops the member with the larger mean absolute
    correlation to all other predictors.
    """
    names = list(frame.columns)
    corr = np.abs(frame.corr().to_numpy(dtype=float, copy=True))
    corr[np.isnan(corr)] = 0.0
    np.fill_diagonal(corr, 0.0)
    mean_corr = dict(zip(names, corr.mean(axis=0)))
    pairs = [(corr[i, j], names[i], names[j]) for i, j in combinations(range(len(names)), 2)]
    pairs.sort(key=lambda p: -p[0])

    dropped = []
    for r, a, b in pairs:
        if r <= threshold:
            break
        if a in dropped or b in dropped:
            continue
        dropped.append(a if mean_corr[a] >= mean_corr[b] else b)
    return dropped


def score_features(X: pd.DataFrame, y, features: Sequence[str], cv, estimator=None,
                   scoring: str = 'accuracy', n_jobs: Optional[int] = None) -> float:
    """Mean spatial CV score of ``estimator`` using only ``features``."""
    estimator = clone(estimator) if estimator is not None else default_estimator()
    scores = cross_val_score(estimator, X[list(features)], y, cv=cv, scoring=scoring, n_jobs=n_jobs)
    return float(np.mean(scores))


def search_correlation_threshold(X: pd.DataFrame, y, cv, thresholds: Sequence[float], estimator=None,
                                 scoring: str = 'accuracy', n_jobs: Optional[int] = None) -> ThresholdSearchResult:
    """
    Scores the predictor set left by each correlation cut-off.

    Returns the cut-off with the best mean score; ties go to the smaller
    predictor set, then to the lower cut-off. Cut-offs leaving an identical
    set are scored once.
    """
    rows = []
    scored = {}
    for threshold in sorted(thresholds):
        dropped = find_correlated(X, threshold)
        kept = [c for c in X.columns if c not in dropped]
        key = tuple(kept)
        if key not in scored:
            scored[key] = score_features(X, y, kept, cv, estimator=estimator, scoring=scoring, n_jobs=n_jobs)
        rows.append({'threshold': threshold, 'n_features': len(kept), 'score': scored[key],
                     'features': ','.join(kept), 'dropped': ','.join(dropped)})
        logger.info(f"Correlation cut-off {threshold:.2f}: {len(kept)} predictors, {scoring}={scored[key]:.4f}")

    table = pd.DataFrame(rows)
    best = table.sort_values(['score', 'n_features', 'threshold'], ascending=[False, True, True]).iloc[0]
    selected = best['features'].split(',')
    logger.info(f"Selected correlation cut-off {best['threshold']:.2f} keeping {selected}")
    return ThresholdSearchResult(threshold=float(best['threshold']), selected=selected,
                                 score=float(best['score']), table=table)


def forward_feature_selection(X: pd.DataFrame, y, cv, estimator=None, scoring: str = 'accuracy',
                              n_jobs: Optional[int] = -1, min_features: int = 2) -> SelectionResult:
    """
    Forward feature selection scored on spatial folds.

    All combinations of ``min_features`` predictors are scored in parallel,
    then the best set grows one predictor at a time while the score strictly
    improves.
    """
    features = list(X.columns)
    estimator = estimator if estimator is not None else default_estimator()
    if len(features) <= min_features:
        score = score_features(X, y, features, cv, estimator=estimator, scoring=scoring, n_jobs=n_jobs)
        history = pd.DataFrame([{'step': 0, 'features': ','.join(features), 'n_features': len(features),
                                 'score': score}])
        logger.info(f"Only {len(features)} predictors; forward selection keeps them all.")
        return SelectionResult(selected=features, score=score, history=history)

    candidates = [list(c) for c in combinations(features, min_features)]
    logger.info(f"Scoring {len(candidates)} initial predictor combinations...")
    scores = Parallel(n_jobs=n_jobs)(
        delayed(score_features)(X, y, c, cv, estimator, scoring) for c in candidates
    )
    history = [{'step': 0, 'features': ','.join(c), 'n_features': len(c), 'score': s}
               for c, s in zip(candidates, scores)]
    best_idx = int(np.argmax(scores))
    selected, best_score = candidates[best_idx], float(scores[best_idx])
    logger.info(f"Best initial combination: {selected} ({scoring}={best_score:.4f})")

    step = 0
    while len(selected) < len(features):
        step += 1
        remaining = [f for f in features if f not in selected]
        step_scores = Parallel(n_jobs=n_jobs)(
            delayed(score_features)(X, y, selected + [f], cv, estimator, scoring) for f in remaining
        )
        for f, s in zip(remaining, step_scores):
            history.append({'step': step, 'features': ','.join(selected + [f]),
                            'n_features': len(selected) + 1, 'score': s})
        i = int(np.argmax(step_scores))
        if step_scores[i] <= best_score:
            logger.info(f"No remaining predictor improves {scoring}; stopping at {len(selected)} predictors.")
            break
        selected = selected + [remaining[i]]
        best_score = float(step_scores[i])
        logger.info(f"Added {remaining[i]} ({scoring}={best_score:.4f})")

    return SelectionResult(selected=selected, score=best_score, history=pd.DataFrame(history))
