"""Reference grid, alignment, stacking and masking of predictor rasters."""
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.coords import BoundingBox
from rasterio.crs import CRS
from rasterio.warp import Resampling, reproject

from .exceptions import InputDataError

logger = logging.getLogger(__name__)

CREATION_OPTIONS = {'compress': 'lzw', 'tiled': True, 'blockxsize': 256, 'blockysize': 256}


@dataclass
class ReferenceGrid:
    """Grid every predictor is aligned to (taken from the bathymetry)."""
    profile: dict
    transform: rasterio.Affine
    crs: CRS
    width: int
    height: int
    bounds: BoundingBox
    nodata: Optional[float]

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def resolution(self) -> Tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))


def read_reference_grid(path: str) -> ReferenceGrid:
    """Reads the grid definition of ``path``; it must carry a CRS and a geotransform."""
    try:
        with rasterio.open(path) as src:
            profile = src.profile.copy()
            grid = ReferenceGrid(profile=profile, transform=src.transform, crs=src.crs,
                                 width=src.width, height=src.height, bounds=src.bounds,
                                 nodata=src.nodata)
    except rasterio.RasterioIOError as e:
        raise InputDataError(f"Could not open reference raster {path}: {e}") from e

    if grid.crs is None:
        raise InputDataError(f"Reference raster {path} has no CRS defined in its metadata.")
    if grid.transform.is_identity:
        raise InputDataError(f"Reference raster {path} has no GeoTransform defined.")

    logger.info(f"Reference NoData: {grid.nodata}")
    logger.info(f"Reference Grid: {grid.width}x{grid.height}, "
                f"Res=({grid.transform.a:.2f},{grid.transform.e:.2f})")
    logger.info(f"Reference Bounds (L,B,R,T): {tuple(grid.bounds)}")
    logger.info(f"Reference Projection: {grid.crs.to_string()[:80]}")
    return grid


def save_raster(filename: str, data_array: np.ndarray, profile: dict, nodata_value=None,
                band_names: Optional[Sequence[str]] = None) -> str:
    """Saves a 2-D (single band) or 3-D (bands, rows, cols) array as a GeoTIFF."""
    data = data_array[np.newaxis, ...] if data_array.ndim == 2 else data_array
    if band_names is not None and len(band_names) != data.shape[0]:
        raise ValueError(f"{len(band_names)} band names for {data.shape[0]} bands")

    out_profile = profile.copy()
    out_profile.update(driver='GTiff', dtype=data.dtype.name, count=data.shape[0],
                       height=data.shape[1], width=data.shape[2], nodata=nodata_value,
                       **CREATION_OPTIONS)
    # Tiled GeoTIFF blocks must not exceed the raster for tiny grids
    if data.shape[1] < 256 or data.shape[2] < 256:
        out_profile.update(tiled=False)
        out_profile.pop('blockxsize', None)
        out_profile.pop('blockysize', None)

    logger.debug(f"Saving raster: {filename}")
    with rasterio.open(filename, 'w', **out_profile) as dst:
        dst.write(data)
        if band_names is not None:
            for i, name in enumerate(band_names, start=1):
                dst.set_band_description(i, name)
    logger.info(f"Saved: {filename}")
    return filename


def align_to_grid(src_path: str, grid: ReferenceGrid, dst_path: str, resampling: str = 'bilinear',
                  nodata: float = -9999.0, band: int = 1) -> str:
    """Reprojects band ``band`` of ``src_path`` onto the reference grid."""
    try:
        resampling_alg = Resampling[resampling]
    except KeyError:
        raise ValueError(f"Unknown resampling method: {resampling}") from None

    destination = np.full(grid.shape, nodata, dtype=np.float32)
    try:
        with rasterio.open(src_path) as src:
            if src.crs is None:
                raise InputDataError(f"Raster {src_path} has no CRS; it cannot be aligned.")
            src_nodata = src.nodata if src.nodata is not None else nodata
            reproject(
                source=rasterio.band(src, band),
                destination=destination,
                src_transform=src.transform,
                src_crs=src.crs,
                src_nodata=src_nodata,
                dst_transform=grid.transform,
                dst_crs=grid.crs,
                dst_nodata=nodata,
                resampling=resampling_alg,
            )
    except rasterio.RasterioIOError as e:
        raise InputDataError(f"Could not open raster {src_path}: {e}") from e

    if not np.any(valid_pixel_mask(destination, nodata)):
        raise InputDataError(f"Raster {src_path} does not overlap the reference grid.")

    logger.info(f"Aligned '{os.path.basename(src_path)}' to reference grid ({grid.width}x{grid.height})")
    return save_raster(dst_path, destination, grid.profile, nodata_value=nodata)


def valid_pixel_mask(data: np.ndarray, nodata=None) -> np.ndarray:
    """
    True where a pixel is valid in every band.

    ``data`` is (rows, cols) or (bands, rows, cols). A pixel is invalid when it
    is NaN or equals ``nodata`` in any band; a NaN ``nodata`` only checks NaN.
    """
    bands = data[np.newaxis, ...] if data.ndim == 2 else data
    valid = np.ones(bands.shape[1:], dtype=bool)
    for band_data in bands:
        band_mask = ~np.isnan(band_data) if np.issubdtype(band_data.dtype, np.floating) \
            else np.ones(band_data.shape, dtype=bool)
        if nodata is not None and not np.isnan(nodata):
            band_mask &= band_data != nodata
        valid &= band_mask
    return valid


def stack_predictors(sources: Dict[str, str], grid: ReferenceGrid, dst_path: str,
                     nodata: float = -9999.0) -> List[str]:
    """
    Stacks single-band predictor rasters into one multi-band GeoTIFF.

    Every source must already be on the reference grid. Band order follows
    ``sources``; band descriptions carry the predictor names.
    """
    if not sources:
        raise InputDataError("No features successfully prepared for stacking.")

    band_names = list(sources)
    stack = np.full((len(band_names),) + grid.shape, nodata, dtype=np.float32)
    for i, (name, path) in enumerate(sources.items()):
        with rasterio.open(path) as src:
            if (src.height, src.width) != grid.shape:
                raise InputDataError(f"Feature '{name}' ({src.width}x{src.height}) is not on the "
                                     f"reference grid ({grid.width}x{grid.height}).")
            band = src.read(1).astype(np.float32)
            band_valid = valid_pixel_mask(band, src.nodata)
        stack[i][band_valid] = band[band_valid]
        logger.info(f" -> Added feature: {name} from {path}")

    save_raster(dst_path, stack, grid.profile, nodata_value=nodata, band_names=band_names)

    with rasterio.open(dst_path) as src:
        if src.count != len(band_names):
            raise InputDataError(f"Stacked raster band count mismatch ({src.count} vs {len(band_names)}).")
    logger.info(f"Final features stacked ({len(band_names)}): {band_names}")
    return band_names


def read_stack(path: str) -> Tuple[np.ndarray, np.ndarray, dict, List[str]]:
    """Returns (data, valid mask, profile, band names) for a predictor stack."""
    try:
        with rasterio.open(path) as src:
            data = src.read().astype(np.float32)
            profile = src.profile.copy()
            band_names = [d if d else f'band_{i + 1}' for i, d in enumerate(src.descriptions)]
            nodata = src.nodata
    except rasterio.RasterioIOError as e:
        raise InputDataError(f"Error opening stacked raster {path}: {e}") from e
    valid = valid_pixel_mask(data, nodata)
    logger.info(f"Number of valid pixels in stack: {int(valid.sum())}")
    return data, valid, profile, band_names


def pixel_centres(transform, rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
    """Map coordinates of the centres of the given pixels as an (n, 2) array."""
    xs, ys = rasterio.transform.xy(transform, rows, cols, offset='center')
    return np.column_stack([np.asarray(xs, dtype=float), np.asarray(ys, dtype=float)])
