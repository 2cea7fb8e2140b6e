"""
Configuration for a seabed substrate mapping run.

The defaults describe one study area: a filled bathymetry grid used as the
reference grid, an optional backscatter mosaic, and a table of ground truth
samples with a substrate class per point. Override them from a TOML file
(``load_config``) or from the command line.
"""
import os
import tomllib
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigError

# --- Input Files ---
BATHY_FILE = 'bathy_cube_10_filled_5x5.tiff'         # Reference grid source
BACKSCATTER_FILE = 'back_10_filled_5x5.tiff'         # Aligned to the bathymetry grid
GROUND_TRUTH_FILE = 'ground_truth_samples.csv'       # Ground truth points

# --- Output Directory ---
OUTPUT_DIR = 'Outputs_SubstrateMapping'

# --- Feature List ---
INITIAL_FEATURES = ['Depth', 'Backscatter', 'Slope', 'Aspect', 'TRI', 'TPI', 'Roughness']

# --- Random Forest grid (searched on spatial folds) ---
DEFAULT_PARAM_GRID = {
    'n_estimators': [50, 100, 200, 300],
    'max_depth': [None, 10, 20],
    'min_samples_split': [2, 5],
    'min_samples_leaf': [1, 3],
    'class_weight': ['balanced'],
}

# --- Correlation cut-offs tried during feature selection ---
CORRELATION_THRESHOLDS = [0.7, 0.75, 0.8, 0.85, 0.9, 0.95, 1.0]

NODATA = -9999.0
CLASS_NODATA = -99


def _none_value(value):
    # TOML has no null: "none" or an empty string stand in for None
    if isinstance(value, str) and value.strip().lower() in ('', 'none'):
        return None
    return value


class AnalysisConfig(BaseModel):
    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    data_dir: str = '.'
    bathy_file: str = BATHY_FILE
    backscatter_file: Optional[str] = BACKSCATTER_FILE
    extra_predictors: Dict[str, str] = Field(default_factory=dict)
    ground_truth_file: str = GROUND_TRUTH_FILE
    x_column: str = 'Longitude'
    y_column: str = 'Latitude'
    class_column: str = 'Class'
    ground_truth_crs: str = 'EPSG:4326'
    output_dir: str = OUTPUT_DIR

    initial_features: List[str] = Field(default_factory=lambda: list(INITIAL_FEATURES), min_length=1)
    fill_gaps: bool = False
    gap_fill_max_distance: int = Field(default=5, ge=1)  # pixels
    min_class_count: int = Field(default=5, ge=1)

    # Spatial cross-validation
    cv_folds: int = Field(default=5, ge=2)
    block_size: Optional[float] = Field(default=None, gt=0)  # map units; None = variogram range
    block_iterations: int = Field(default=100, ge=1)
    variogram_sample_size: int = Field(default=2000, ge=3)

    # Feature selection and tuning
    correlation_thresholds: List[float] = Field(default_factory=lambda: list(CORRELATION_THRESHOLDS), min_length=1)
    use_forward_selection: bool = True
    param_grid: Dict[str, list] = Field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_PARAM_GRID.items()})
    scoring: str = 'accuracy'
    random_state: int = 42
    n_jobs: int = -1  # -1 = all cores, set to 1 if issues arise

    # Outputs
    nodata: float = NODATA
    class_nodata: int = CLASS_NODATA
    prediction_chunk_size: int = Field(default=65536, ge=1)  # pixels per predict_proba call
    make_plots: bool = True
    cleanup_intermediate: bool = False

    @field_validator('backscatter_file', 'block_size', mode='before')
    @classmethod
    def _optional_from_toml(cls, value):
        return _none_value(value)

    @field_validator('param_grid', mode='before')
    @classmethod
    def _grid_from_toml(cls, value):
        if isinstance(value, dict):
            return {k: [_none_value(v) for v in values] if isinstance(values, list) else values
                    for k, values in value.items()}
        return value

    @field_validator('correlation_thresholds')
    @classmethod
    def _thresholds_in_range(cls, value):
        for t in value:
            if not 0 < t <= 1:
                raise ValueError(f"correlation threshold {t} outside (0, 1]")
        return value

    def resolve(self, path: Optional[str]) -> Optional[str]:
        """Returns ``path`` made absolute against ``data_dir`` (None passes through)."""
        if path is None:
            return None
        if os.path.isabs(path):
            return path
        return os.path.join(self.data_dir, path)

    @property
    def output_path(self) -> str:
        return self.resolve(self.output_dir)

    def output_file(self, name: str) -> str:
        return os.path.join(self.output_path, name)


def _describe(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        where = '.'.join(str(part) for part in err['loc']) or 'config'
        message = 'unknown configuration key' if err['type'] == 'extra_forbidden' else err['msg']
        lines.append(f"{where}: {message}")
    return '; '.join(lines)


def config_from_dict(values: dict, base: Optional[AnalysisConfig] = None) -> AnalysisConfig:
    """Builds a config from a flat mapping of field names on top of ``base`` (or the defaults)."""
    merged = base.model_dump() if base is not None else {}
    merged.update(values)
    try:
        return AnalysisConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_describe(e)}") from e


def load_config(path: Optional[str] = None, **overrides) -> AnalysisConfig:
    """
    Reads a TOML configuration file and applies keyword overrides on top.

    Overrides whose value is None are ignored so that unset CLI options keep
    the file (or default) value.
    """
    values = {}
    if path is not None:
        try:
            with open(path, 'rb') as fh:
                values = tomllib.load(fh)
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {path}") from None
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Could not parse configuration file {path}: {e}") from e
        # Relative data_dir in a config file is relative to the file itself
        data_dir = values.get('data_dir')
        if isinstance(data_dir, str) and not os.path.isabs(data_dir):
            values['data_dir'] = os.path.join(os.path.dirname(os.path.abspath(path)), data_dir)
    values.update({k: v for k, v in overrides.items() if v is not None})
    return config_from_dict(values)
