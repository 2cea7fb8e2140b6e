"""Seafloor substrate mapping with spatially cross-validated random forests."""
from .config import AnalysisConfig, load_config
from .exceptions import (ConfigError, InputDataError, InsufficientDataError, SeabedMappingError,
                         TerrainError)
from .pipeline import AnalysisResult, run_analysis

__version__ = '0.1.0'
