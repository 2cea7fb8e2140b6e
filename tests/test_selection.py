import numpy as np
import pandas as pd
import pytest
from sklearn.ensemble import RandomForestClassifier
from sklearn.model_selection import KFold

from seabed_mapping.selection import (find_correlated, forward_feature_selection, score_features,
                                      search_correlation_threshold)


@pytest.fixture
def informative():
    rng = np.random.default_rng(0)
    n = 120
    a = rng.uniform(0, 1, n)
    X = pd.DataFrame({
        'a': a,
        'a_copy': a * 2.0 + rng.normal(0, 1e-3, n),
        'noise1': rng.normal(size=n),
        'noise2': rng.normal(size=n),
    })
    y = (a > 0.5).astype(int)
    return X, y


@pytest.fixture
def estimator():
    return RandomForestClassifier(n_estimators=10, random_state=0)


@pytest.fixture
def cv():
    return KFold(n_splits=3, shuffle=True, random_state=0)


def test_find_correlated_drops_one_of_a_pair(informative):
    X, _ = informative
    dropped = find_correlated(X, 0.9)
    assert len(dropped) == 1
    assert dropped[0] in ('a', 'a_copy')
    assert find_correlated(X, 1.0) == []


def test_find_correlated_prefers_the_more_connected():
    rng = np.random.default_rng(1)
    base = rng.normal(size=200)
    X = pd.DataFrame({
        'hub': base,
        'left': base + rng.normal(0, 0.3, 200),
        'right': base + rng.normal(0, 0.3, 200),
    })
    dropped = find_correlated(X, 0.9)
    assert 'hub' in dropped


def test_score_features_in_unit_range(informative, cv, estimator):
    X, y = informative
    score = score_features(X, y, ['a'], cv, estimator=estimator)
    assert 0.9 <= score <= 1.0


def test_threshold_search_table(informative, cv, estimator):
    X, y = informative
    result = search_correlation_threshold(X, y, cv, [1.0, 0.8], estimator=estimator, n_jobs=1)
    assert list(result.table['threshold']) == [0.8, 1.0]
    assert list(result.table['n_features']) == [3, 4]
    assert result.threshold in (0.8, 1.0)
    assert set(result.selected) <= set(X.columns)
    assert result.score == result.table['score'].max()


def test_forward_selection_finds_informative_predictor(informative, cv, estimator):
    X, y = informative
    result = forward_feature_selection(X, y, cv, estimator=estimator, n_jobs=1)
    assert {'a', 'a_copy'} & set(result.selected)
    step0 = result.history[result.history['step'] == 0]
    assert len(step0) == 6
    assert result.score == pytest.approx(result.history['score'].max())


def test_forward_selection_with_two_predictors_keeps_both(informative, cv, estimator):
    X, y = informative
    result = forward_feature_selection(X[['a', 'noise1']], y, cv, estimator=estimator, n_jobs=1)
    assert result.selected == ['a', 'noise1']
    assert len(result.history) == 1


def test_threshold_search_ties_prefer_fewer_predictors_then_lower_cutoff(informative, cv, monkeypatch):
    from seabed_mapping import selection

    monkeypatch.setattr(selection, 'score_features', lambda *args, **kwargs: 0.5)
    X, y = informative
    result = search_correlation_threshold(X, y, cv, [1.0, 0.95, 0.9])
    assert result.threshold == 0.9
    assert len(result.selected) == 3
    assert list(result.table['n_features']) == [3, 3, 4]
