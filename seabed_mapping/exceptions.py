"""Exceptions raised by the seabed mapping workflow."""


class SeabedMappingError(Exception):
    """Base class for every error the analysis raises on purpose."""


class ConfigError(SeabedMappingError):
    """Invalid or unknown configuration values."""


class InputDataError(SeabedMappingError):
    """An input raster or ground truth table is missing, empty or malformed."""


class InsufficientDataError(SeabedMappingError):
    """Too few samples, classes or blocks left to continue the analysis."""


class TerrainError(SeabedMappingError):
    """A DEM derivative could not be calculated."""
