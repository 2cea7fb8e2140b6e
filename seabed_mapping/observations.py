"""Loading, projecting, sampling and cleaning the ground truth observations."""
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio

from .exceptions import InputDataError, InsufficientDataError

logger = logging.getLogger(__name__)

VECTOR_SUFFIXES = ('.shp', '.gpkg', '.geojson', '.json', '.fgb', '.gml')


@dataclass
class ClassEncoding:
    """Mapping between substrate class labels and the integers the model sees."""
    to_int: Dict[str, int]
    to_label: Dict[int, str]

    @property
    def names(self) -> List[str]:
        return [self.to_label[i] for i in sorted(self.to_label)]

    def encode(self, labels) -> np.ndarray:
        labels = pd.Series(labels).astype(str)
        unknown = set(labels) - set(self.to_int)
        if unknown:
            raise KeyError(f"Unknown class labels: {sorted(unknown)}")
        return labels.map(self.to_int).to_numpy(dtype=int)

    def decode(self, values) -> List[str]:
        return [self.to_label[int(v)] for v in values]


@dataclass
class TrainingData:
    """Cleaned observations with their sampled predictor values."""
    frame: pd.DataFrame
    features: List[str]
    encoding: ClassEncoding

    @property
    def X(self) -> pd.DataFrame:
        return self.frame[self.features]

    @property
    def y(self) -> np.ndarray:
        return self.encoding.encode(self.frame['Class'])

    @property
    def coords(self) -> np.ndarray:
        return self.frame[['Easting', 'Northing']].to_numpy(dtype=float)

    def class_counts(self) -> pd.Series:
        return self.frame['Class'].astype(str).value_counts().sort_index()


def encode_classes(labels) -> ClassEncoding:
    """Sorted string labels mapped to consecutive integers starting at 0."""
    unique_classes = sorted(pd.Series(labels).astype(str).unique())
    class_to_int = {label: i for i, label in enumerate(unique_classes)}
    int_to_class = {i: label for label, i in class_to_int.items()}
    logger.info(f"Class Label Mapping (String -> Integer): {class_to_int}")
    return ClassEncoding(to_int=class_to_int, to_label=int_to_class)


def load_observations(path: str, x_column: str = 'Longitude', y_column: str = 'Latitude',
                      class_column: str = 'Class', crs: str = 'EPSG:4326') -> gpd.GeoDataFrame:
    """
    Reads ground truth points from a CSV table or a vector file.

    A CSV needs the coordinate and class columns and is assumed to be in
    ``crs``; a vector file keeps its own CRS (``crs`` is used only if it has
    none). The class column is renamed to ``Class``.
    """
    if not os.path.exists(path):
        raise InputDataError(f"Ground truth file not found: {path}")

    if path.lower().endswith(VECTOR_SUFFIXES):
        gdf = gpd.read_file(path)
        if gdf.crs is None:
            gdf = gdf.set_crs(crs)
        if class_column not in gdf.columns:
            raise InputDataError(f"Ground truth must contain column: {class_column}")
        gdf = gdf[gdf.geometry.notna() & ~gdf.geometry.is_empty]
        if not (gdf.geom_type == 'Point').all():
            raise InputDataError("Ground truth geometries must be points.")
    else:
        gt_df = pd.read_csv(path, encoding='latin-1')
        required_cols = [x_column, y_column, class_column]
        missing = [c for c in required_cols if c not in gt_df.columns]
        if missing:
            raise InputDataError(f"CSV must contain columns: {required_cols} (missing {missing})")
        gt_df = gt_df.dropna(subset=[x_column, y_column])
        gdf = gpd.GeoDataFrame(gt_df, geometry=gpd.points_from_xy(gt_df[x_column], gt_df[y_column]), crs=crs)

    gdf = gdf.rename(columns={class_column: 'Class'})
    n_before = len(gdf)
    gdf = gdf[gdf['Class'].notna()].reset_index(drop=True)
    if len(gdf) < n_before:
        logger.warning(f"Dropped {n_before - len(gdf)} observations without a class label.")
    if gdf.empty:
        raise InputDataError(f"No usable ground truth points in {path}")
    logger.info(f"Loaded {len(gdf)} ground truth points.")
    return gdf


def project_observations(gdf: gpd.GeoDataFrame, crs) -> gpd.GeoDataFrame:
    """Projects points to the raster CRS and adds Easting/Northing columns."""
    if gdf.crs != crs:
        logger.info(f"Projecting ground truth points to target CRS: {crs}...")
        gdf = gdf.to_crs(crs)
    else:
        logger.info("Ground truth CRS already matches raster CRS. No reprojection needed.")
    gdf = gdf.copy()
    gdf['Easting'] = gdf.geometry.x
    gdf['Northing'] = gdf.geometry.y
    return gdf


def sample_stack(gdf: gpd.GeoDataFrame, stack_path: str) -> pd.DataFrame:
    """
    Samples every band of the stack at each observation.

    Returns Easting, Northing and Class plus one column per band. Points
    outside the raster get the stack's NoData value (NaN when it has none).
    """
    coords = list(zip(gdf['Easting'], gdf['Northing']))
    try:
        with rasterio.open(stack_path) as src:
            band_names = [d if d else f'band_{i + 1}' for i, d in enumerate(src.descriptions)]
            fill = src.nodata if src.nodata is not None else np.nan
            logger.info(f"Sampling {src.count} raster bands at {len(coords)} locations: {', '.join(band_names)}")
            left, bottom, right, top = src.bounds
            inside = np.array([left <= x < right and bottom < y <= top for x, y in coords], dtype=bool)
            values = np.full((len(coords), src.count), fill, dtype=float)
            if inside.any():
                sampled = np.vstack(list(src.sample([c for c, ok in zip(coords, inside) if ok])))
                values[inside] = sampled
    except rasterio.RasterioIOError as e:
        raise InputDataError(f"Error opening stacked raster {stack_path} for sampling: {e}") from e

    n_outside = int((~inside).sum())
    if n_outside:
        logger.warning(f"{n_outside} ground truth points fall outside the raster bounds.")
    sampled_df = pd.DataFrame(values, columns=band_names)
    return pd.concat([
        gdf[['Easting', 'Northing', 'Class']].reset_index(drop=True),
        sampled_df,
    ], axis=1)


def _modal_class(classes: pd.Series) -> str:
    counts = classes.value_counts(sort=False)
    best = counts.max()
    # first observed among the most frequent
    return next(c for c in classes if counts[c] == best)


def collapse_duplicate_cells(frame: pd.DataFrame, transform) -> pd.DataFrame:
    """Keeps one observation per raster cell, labelled with the cell's modal class."""
    rows, cols = rasterio.transform.rowcol(transform, frame['Easting'].to_numpy(), frame['Northing'].to_numpy())
    cell = pd.Series(list(zip(np.asarray(rows), np.asarray(cols))), index=frame.index)
    if not cell.duplicated().any():
        return frame
    frame = frame.copy()
    frame['Class'] = frame['Class'].groupby(cell).transform(_modal_class)
    collapsed = frame[~cell.duplicated()]
    logger.info(f"Collapsed {len(frame) - len(collapsed)} observations sharing a raster cell with another one.")
    return collapsed


def clean_training_data(frame: pd.DataFrame, features: List[str], nodata=None,
                        min_class_count: int = 1, transform=None) -> TrainingData:
    """
    Drops unusable observations and encodes the classes.

    Rows with NoData or NaN in any feature are removed, observations sharing
    a raster cell are collapsed (when ``transform`` is given) and classes with
    fewer than ``min_class_count`` observations are dropped.
    """
    frame = frame.copy()
    frame['Class'] = frame['Class'].astype(str)
    initial_rows = len(frame)

    is_nan = frame[features].isnull()
    if nodata is not None and not np.isnan(nodata):
        is_nodata = frame[features] == nodata
    else:
        is_nodata = pd.DataFrame(False, index=frame.index, columns=features)
    rows_to_drop = (is_nodata | is_nan).any(axis=1)
    frame = frame[~rows_to_drop]
    logger.info(f"Removed {initial_rows - len(frame)} rows containing NoData ({nodata}) or NaN values.")
    if frame.empty:
        raise InsufficientDataError("No valid training data remaining after NoData/NaN removal.")

    if transform is not None:
        frame = collapse_duplicate_cells(frame, transform)

    counts = frame['Class'].value_counts()
    rare = sorted(counts[counts < min_class_count].index)
    if rare:
        logger.warning(f"Dropping classes with fewer than {min_class_count} observations: {rare}")
        frame = frame[~frame['Class'].isin(rare)]
    if frame['Class'].nunique() < 2:
        raise InsufficientDataError(f"At least two classes are needed; found {frame['Class'].nunique()}.")

    frame = frame.reset_index(drop=True)
    encoding = encode_classes(frame['Class'])
    training = TrainingData(frame=frame, features=list(features), encoding=encoding)
    logger.info(f"Final training data shape: {frame.shape}")
    logger.info(f"Class Counts in Training Data:\n{training.class_counts().to_string()}")
    return training
