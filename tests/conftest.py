import logging

import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin

CRS = 'EPSG:32633'
ORIGIN = (500000.0, 6000600.0)
RES = 10.0
SIZE = 60
NODATA = -9999.0


def write_tif(path, data, transform, nodata=NODATA, crs=CRS):
    data = np.asarray(data, dtype=np.float32)
    with rasterio.open(path, 'w', driver='GTiff', height=data.shape[0], width=data.shape[1], count=1,
                       dtype='float32', crs=crs, transform=transform, nodata=nodata) as dst:
        dst.write(data, 1)
    return str(path)


def depth_field(rows, cols):
    return -20.0 - 0.5 * cols + 2.0 * np.sin(rows / 8.0)


def backscatter_field(rows, cols):
    return -25.0 - 10.0 * np.sin(rows / 10.0)


def substrate_class(depth, bs):
    if depth > -30:
        return 'Sand'
    return 'Mud' if bs < -28 else 'Gravel'


@pytest.fixture
def transform():
    return from_origin(ORIGIN[0], ORIGIN[1], RES, RES)


@pytest.fixture
def bathy_tif(tmp_path, transform):
    rows, cols = np.mgrid[0:SIZE, 0:SIZE]
    depth = depth_field(rows, cols)
    depth[:2, :2] = NODATA
    return write_tif(tmp_path / 'bathy.tif', depth, transform)


@pytest.fixture
def backscatter_tif(tmp_path):
    # coarser grid than the bathymetry, same footprint
    rows, cols = np.mgrid[0:SIZE // 2, 0:SIZE // 2]
    bs = backscatter_field(rows * 2 + 0.5, cols * 2 + 0.5)
    return write_tif(tmp_path / 'backscatter.tif', bs, from_origin(ORIGIN[0], ORIGIN[1], 2 * RES, 2 * RES))


@pytest.fixture
def ground_truth(tmp_path):
    """Ground truth points (UTM) whose class follows depth and backscatter."""
    rng = np.random.default_rng(0)
    rows = rng.integers(3, SIZE, size=180)
    cols = rng.integers(3, SIZE, size=180)
    east = ORIGIN[0] + (cols + 0.5) * RES
    north = ORIGIN[1] - (rows + 0.5) * RES
    classes = [substrate_class(d, b) for d, b in zip(depth_field(rows, cols), backscatter_field(rows, cols))]
    frame = pd.DataFrame({'E': east, 'N': north, 'Substrate': classes})
    path = tmp_path / 'ground_truth.csv'
    frame.to_csv(path, index=False)
    return str(path), frame


@pytest.fixture
def stack_arrays():
    """Two-band stack (Depth, Backscatter) with a NoData corner."""
    rows, cols = np.mgrid[0:SIZE, 0:SIZE]
    data = np.stack([depth_field(rows, cols), backscatter_field(rows, cols)]).astype(np.float32)
    data[:, :2, :2] = NODATA
    valid = np.ones((SIZE, SIZE), dtype=bool)
    valid[:2, :2] = False
    return data, valid, ['Depth', 'Backscatter']


@pytest.fixture
def training_table(stack_arrays):
    data, valid, names = stack_arrays
    rng = np.random.default_rng(1)
    rows = rng.integers(3, SIZE, size=150)
    cols = rng.integers(3, SIZE, size=150)
    frame = pd.DataFrame({name: data[i][rows, cols] for i, name in enumerate(names)})
    y = np.array([0 if d > -30 else (1 if b < -28 else 2) for d, b in zip(frame['Depth'], frame['Backscatter'])])
    coords = np.column_stack([ORIGIN[0] + (cols + 0.5) * RES, ORIGIN[1] - (rows + 0.5) * RES])
    return frame, y, coords


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger('seabed_mapping')
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
