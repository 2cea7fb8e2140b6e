"""
Terrain derivatives of the bathymetry: slope, aspect, TRI, TPI and roughness
as predictors, and a hillshade for maps.

GDAL's DEM processing does the work; it is an optional dependency
(``pip install seabed-mapping[terrain]``) imported on first use.
"""
import logging
import os
from typing import Dict, Iterable

from .exceptions import TerrainError

logger = logging.getLogger(__name__)

# Derivatives that can be stacked as predictors
TERRAIN_FEATURES = ['Slope', 'Aspect', 'TRI', 'TPI', 'Roughness']
# Derived for figures only
DISPLAY_PRODUCTS = ['Hillshade']
TERRAIN_PRODUCTS = TERRAIN_FEATURES + DISPLAY_PRODUCTS

TERRAIN_OUTPUT_FILES = {
    'Slope': 'slope.tif',
    'Aspect': 'aspect.tif',
    'TRI': 'tri.tif',
    'TPI': 'tpi.tif',
    'Roughness': 'roughness.tif',
    'Hillshade': 'hillshade.tif',
}


def _gdal():
    try:
        from osgeo import gdal
    except ImportError as e:
        raise TerrainError("GDAL (osgeo) is required for terrain derivatives. "
                           "Install it with the 'terrain' extra.") from e
    gdal.UseExceptions()
    return gdal


def processing_options(feature_name: str) -> dict:
    """Keyword arguments for ``gdal.DEMProcessingOptions`` of one derivative."""
    options = {'computeEdges': True}
    if feature_name == 'Slope':
        options['alg'] = 'ZevenbergenThorne'
    elif feature_name == 'Aspect':
        options['zeroForFlat'] = True
    elif feature_name == 'Hillshade':
        options['zFactor'] = 2
    return options


def derive_feature(bathy_path: str, feature_name: str, output_file: str) -> str:
    """Calculates one derivative of ``bathy_path`` into ``output_file``."""
    if feature_name not in TERRAIN_PRODUCTS:
        raise TerrainError(f"Unknown terrain feature: {feature_name}")
    gdal = _gdal()
    logger.info(f"Calculating {feature_name}...")
    try:
        gdal_options = gdal.DEMProcessingOptions(**processing_options(feature_name))
        ds_out = gdal.DEMProcessing(output_file, bathy_path, feature_name.lower(), options=gdal_options)
    except RuntimeError as e:
        raise TerrainError(f"Error during {feature_name} analysis: {e}") from e
    if ds_out is None:
        raise TerrainError(f"gdal.DEMProcessing for {feature_name} returned None.")
    ds_out = None  # close the dataset so it is flushed to disk
    if not os.path.exists(output_file):
        raise TerrainError(f"{feature_name} output file not found after GDAL processing: {output_file}")
    logger.info(f"Saved: {output_file}")
    return output_file


def derive_terrain(bathy_path: str, output_dir: str, features: Iterable[str]) -> Dict[str, str]:
    """
    Calculates every requested terrain product.

    Returns a mapping of product name to GeoTIFF path for the products that
    were written. Failures are logged and the product left out; a name that
    is not a terrain product or a missing GDAL installation raises
    ``TerrainError`` straight away.
    """
    features = list(features)
    unknown = [f for f in features if f not in TERRAIN_PRODUCTS]
    if unknown:
        raise TerrainError(f"Unknown terrain feature(s): {', '.join(unknown)}")
    generated = {}
    if not features:
        return generated
    _gdal()
    for feature_name in [f for f in TERRAIN_PRODUCTS if f in features]:
        output_file = os.path.join(output_dir, TERRAIN_OUTPUT_FILES[feature_name])
        try:
            generated[feature_name] = derive_feature(bathy_path, feature_name, output_file)
        except TerrainError as e:
            logger.warning(f"{e}. Skipping.")
    logger.info("Terrain analysis stage complete.")
    return generated
