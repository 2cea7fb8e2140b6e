import numpy as np
import pandas as pd
import pytest

from seabed_mapping.aoa import AOA_NODATA, map_aoa, train_dissimilarity, upper_whisker
from seabed_mapping.exceptions import InsufficientDataError


@pytest.fixture
def train():
    rng = np.random.default_rng(0)
    return pd.DataFrame({'Depth': rng.uniform(-40, -20, 100), 'Backscatter': rng.uniform(-35, -15, 100)})


def test_upper_whisker_ignores_outliers():
    values = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 100.0])
    assert upper_whisker(values) == 5.0
    assert upper_whisker(np.array([1.0, 2.0, 3.0])) == 3.0


def test_training_point_is_applicable_and_far_point_is_not(train):
    aoa = train_dissimilarity(train)
    di = aoa.dissimilarity(pd.DataFrame({'Depth': [train['Depth'].iloc[0], 500.0],
                                         'Backscatter': [train['Backscatter'].iloc[0], 500.0]}))
    assert di[0] == pytest.approx(0.0)
    assert di[1] > aoa.threshold
    near_training = [train['Depth'].iloc[5] + 0.01, train['Backscatter'].iloc[5]]
    assert list(aoa.applicable(np.array([near_training, [500.0, 500.0]]))) == [True, False]


def test_fold_aware_training_di_is_not_smaller(train):
    folds = np.repeat([0, 1, 2, 3], 25)
    plain = train_dissimilarity(train)
    cv_aware = train_dissimilarity(train, folds=folds)
    assert (cv_aware.train_di >= plain.train_di - 1e-12).all()
    assert cv_aware.threshold == upper_whisker(cv_aware.train_di)


def test_weights_scale_predictors(train):
    aoa = train_dissimilarity(train, weights=[2.0, 0.0])
    assert list(aoa.weights) == [1.0, 0.0]
    # with zero weight, backscatter differences do not count
    near = aoa.dissimilarity(pd.DataFrame({'Depth': [train['Depth'].iloc[3]], 'Backscatter': [1e6]}))
    assert near[0] == pytest.approx(0.0)


def test_constant_predictor_is_tolerated(train):
    train = train.assign(Flat=1.0)
    aoa = train_dissimilarity(train)
    assert np.isfinite(aoa.train_di).all()
    assert aoa.scale[-1] == 1.0


def test_single_fold_and_tiny_samples_rejected(train):
    with pytest.raises(InsufficientDataError):
        train_dissimilarity(train, folds=np.zeros(len(train), dtype=int))
    with pytest.raises(InsufficientDataError):
        train_dissimilarity(train.iloc[:1])
    with pytest.raises(ValueError):
        train_dissimilarity(train, weights=[1.0])


def test_map_aoa(stack_arrays, training_table):
    data, valid, names = stack_arrays
    X, _, _ = training_table
    aoa = train_dissimilarity(X)
    di_map, aoa_map = map_aoa(aoa, data, valid, names, chunk_size=700)
    assert di_map.shape == valid.shape
    assert np.isnan(di_map[~valid]).all()
    assert (aoa_map[~valid] == AOA_NODATA).all()
    assert set(np.unique(aoa_map[valid])) <= {0, 1}
    np.testing.assert_array_equal(aoa_map[valid] == 1, di_map[valid] <= aoa.threshold)
    assert set(aoa.summary()) == {'threshold', 'mean_training_distance', 'training_di_max', 'weights'}
