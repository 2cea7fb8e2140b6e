import numpy as np
import pytest
import rasterio

from seabed_mapping.exceptions import InputDataError
from seabed_mapping.rasters import (align_to_grid, read_reference_grid, read_stack, save_raster,
                                    stack_predictors, valid_pixel_mask)

from .conftest import NODATA, SIZE, write_tif


def test_read_reference_grid(bathy_tif):
    grid = read_reference_grid(bathy_tif)
    assert grid.shape == (SIZE, SIZE)
    assert grid.resolution == (10.0, 10.0)
    assert grid.nodata == NODATA
    assert grid.crs.to_epsg() == 32633


def test_reference_grid_without_crs(tmp_path, transform):
    path = write_tif(tmp_path / 'nocrs.tif', np.zeros((5, 5)), transform, crs=None)
    with pytest.raises(InputDataError, match='no CRS'):
        read_reference_grid(path)


def test_valid_pixel_mask_nodata_and_nan():
    data = np.array([[[1.0, NODATA], [np.nan, 4.0]],
                     [[1.0, 2.0], [3.0, NODATA]]], dtype=np.float32)
    mask = valid_pixel_mask(data, NODATA)
    assert mask.tolist() == [[True, False], [False, False]]
    assert valid_pixel_mask(data[0], np.nan).tolist() == [[True, True], [False, True]]
    assert valid_pixel_mask(np.array([[1, 2]], dtype=np.int16), None).all()


def test_save_raster_multiband_descriptions(tmp_path, bathy_tif):
    grid = read_reference_grid(bathy_tif)
    data = np.ones((2,) + grid.shape, dtype=np.float32)
    path = save_raster(str(tmp_path / 'two.tif'), data, grid.profile, nodata_value=NODATA, band_names=['a', 'b'])
    with rasterio.open(path) as src:
        assert src.count == 2
        assert src.descriptions == ('a', 'b')
        assert src.nodata == NODATA


def test_align_to_grid_matches_reference(tmp_path, bathy_tif, backscatter_tif):
    grid = read_reference_grid(bathy_tif)
    out = align_to_grid(backscatter_tif, grid, str(tmp_path / 'bs_aligned.tif'))
    with rasterio.open(out) as src:
        assert (src.height, src.width) == grid.shape
        assert src.transform == grid.transform
        data = src.read(1)
    assert valid_pixel_mask(data, NODATA).mean() > 0.9
    assert data[valid_pixel_mask(data, NODATA)].min() >= -36


def test_align_without_overlap_fails(tmp_path, bathy_tif):
    from rasterio.transform import from_origin
    far = write_tif(tmp_path / 'far.tif', np.ones((5, 5)), from_origin(100000.0, 100000.0, 10.0, 10.0))
    with pytest.raises(InputDataError, match='does not overlap'):
        align_to_grid(far, read_reference_grid(bathy_tif), str(tmp_path / 'far_aligned.tif'))


def test_stack_and_read(tmp_path, bathy_tif, backscatter_tif):
    grid = read_reference_grid(bathy_tif)
    bs = align_to_grid(backscatter_tif, grid, str(tmp_path / 'bs_aligned.tif'))
    stack_path = str(tmp_path / 'stack.tif')
    names = stack_predictors({'Depth': bathy_tif, 'Backscatter': bs}, grid, stack_path)
    assert names == ['Depth', 'Backscatter']

    data, valid, profile, band_names = read_stack(stack_path)
    assert band_names == ['Depth', 'Backscatter']
    assert data.shape == (2, SIZE, SIZE)
    assert not valid[0, 0]
    assert profile['count'] == 2


def test_stack_rejects_off_grid_source(tmp_path, bathy_tif, backscatter_tif):
    grid = read_reference_grid(bathy_tif)
    with pytest.raises(InputDataError, match='not on the reference grid'):
        stack_predictors({'Backscatter': backscatter_tif}, grid, str(tmp_path / 'stack.tif'))


def test_stack_requires_sources(tmp_path, bathy_tif):
    with pytest.raises(InputDataError):
        stack_predictors({}, read_reference_grid(bathy_tif), str(tmp_path / 'stack.tif'))
