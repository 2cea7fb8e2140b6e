import os

import pytest
from pydantic import ValidationError

from seabed_mapping.config import DEFAULT_PARAM_GRID, AnalysisConfig, config_from_dict, load_config
from seabed_mapping.exceptions import ConfigError


def test_defaults_follow_module_constants():
    cfg = AnalysisConfig()
    assert cfg.random_state == 42
    assert cfg.cv_folds == 5
    assert cfg.param_grid == DEFAULT_PARAM_GRID
    assert cfg.param_grid is not DEFAULT_PARAM_GRID
    assert 'Backscatter' in cfg.initial_features


def test_resolve_relative_and_absolute(tmp_path):
    cfg = AnalysisConfig(data_dir=str(tmp_path))
    assert cfg.resolve('bathy.tif') == os.path.join(str(tmp_path), 'bathy.tif')
    assert cfg.resolve('/abs/bathy.tif') == '/abs/bathy.tif'
    assert cfg.resolve(None) is None
    assert cfg.output_file('x.csv') == os.path.join(str(tmp_path), cfg.output_dir, 'x.csv')


def test_load_config_from_toml(tmp_path):
    path = tmp_path / 'survey.toml'
    path.write_text(
        'data_dir = "survey"\n'
        'backscatter_file = ""\n'
        'block_size = 250.0\n'
        'cv_folds = 4\n'
        '[param_grid]\n'
        'n_estimators = [10, 20]\n'
        'max_depth = ["none", 5]\n'
    )
    cfg = load_config(str(path), n_jobs=1, cv_folds=None)
    assert cfg.data_dir == os.path.join(str(tmp_path), 'survey')
    assert cfg.backscatter_file is None
    assert cfg.block_size == 250.0
    assert cfg.cv_folds == 4
    assert cfg.n_jobs == 1
    assert cfg.param_grid == {'n_estimators': [10, 20], 'max_depth': [None, 5]}


def test_unknown_key_rejected():
    with pytest.raises(ConfigError, match='bogus: unknown configuration key'):
        config_from_dict({'bogus': 1})


def test_wrongly_typed_value_is_a_config_error(tmp_path):
    path = tmp_path / 'survey.toml'
    path.write_text('block_size = "wide"\n')
    with pytest.raises(ConfigError, match='block_size'):
        load_config(str(path))


def test_numeric_strings_are_coerced():
    assert config_from_dict({'block_size': '500'}).block_size == 500.0


def test_overrides_on_top_of_base():
    base = config_from_dict({'cv_folds': 4, 'n_jobs': 2})
    cfg = config_from_dict({'n_jobs': 1}, base=base)
    assert (cfg.cv_folds, cfg.n_jobs) == (4, 1)


def test_assignment_is_validated():
    cfg = AnalysisConfig()
    with pytest.raises(ValidationError):
        cfg.cv_folds = 1


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError, match='not found'):
        load_config(str(tmp_path / 'missing.toml'))


@pytest.mark.parametrize('values', [
    {'cv_folds': 1},
    {'block_size': -5.0},
    {'correlation_thresholds': [0.0]},
    {'initial_features': []},
    {'min_class_count': 0},
    {'cv_folds': 'three'},
    {'correlation_thresholds': [0.8, 1.5]},
    {'prediction_chunk_size': 0},
])
def test_invalid_values(values):
    with pytest.raises(ConfigError):
        config_from_dict(values)
