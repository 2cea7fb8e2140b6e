"""
Variogram fitting and ordinary kriging.

Variograms serve two purposes in the workflow: the range of spatial
autocorrelation of the predictors sets the block size for spatial
cross-validation, and a fitted model drives the kriging used to fill small
NoData holes in predictor rasters.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
import rasterio
from scipy.optimize import curve_fit
from scipy.spatial import cKDTree
from scipy.spatial.distance import pdist
from scipy.ndimage import distance_transform_edt

from .exceptions import InsufficientDataError
from .rasters import pixel_centres, save_raster, valid_pixel_mask

logger = logging.getLogger(__name__)


# --- Variogram models (range is the practical range) ---
def spherical(h, nugget, psill, rng):
    h = np.asarray(h, dtype=float)
    r = h / rng
    gamma = nugget + psill * (1.5 * r - 0.5 * r ** 3)
    return np.where(h < rng, gamma, nugget + psill)


def exponential(h, nugget, psill, rng):
    h = np.asarray(h, dtype=float)
    return nugget + psill * (1.0 - np.exp(-3.0 * h / rng))


def gaussian(h, nugget, psill, rng):
    h = np.asarray(h, dtype=float)
    return nugget + psill * (1.0 - np.exp(-3.0 * (h / rng) ** 2))


VARIOGRAM_MODELS = {
    'spherical': spherical,
    'exponential': exponential,
    'gaussian': gaussian,
}


@dataclass
class VariogramModel:
    model: str
    nugget: float
    psill: float
    range: float

    @property
    def sill(self) -> float:
        return self.nugget + self.psill

    def semivariance(self, h) -> np.ndarray:
        """Model semivariance at lag distance(s) ``h``; zero at zero lag."""
        h = np.asarray(h, dtype=float)
        gamma = VARIOGRAM_MODELS[self.model](h, self.nugget, self.psill, self.range)
        return np.where(h == 0, 0.0, gamma)

    def covariance(self, h) -> np.ndarray:
        return self.sill - self.semivariance(h)


def empirical_variogram(coords: np.ndarray, values: np.ndarray, n_lags: int = 15,
                        max_distance: Optional[float] = None) -> pd.DataFrame:
    """
    Matheron estimator over equal-width lag bins.

    ``max_distance`` defaults to half the largest pair distance. Bins without
    pairs are dropped from the returned frame (columns lag, semivariance, n_pairs).
    """
    coords = np.asarray(coords, dtype=float)
    values = np.asarray(values, dtype=float)
    if len(values) < 3:
        raise InsufficientDataError("At least three points are needed for a variogram.")

    distances = pdist(coords)
    sq_diff = pdist(values[:, np.newaxis], metric='sqeuclidean')
    if max_distance is None:
        max_distance = distances.max() / 2.0
    if max_distance <= 0:
        raise InsufficientDataError("All variogram points share one location.")

    edges = np.linspace(0.0, max_distance, n_lags + 1)
    in_range = (distances > 0) & (distances <= max_distance)
    bins = np.digitize(distances[in_range], edges[1:-1])
    n_pairs = np.bincount(bins, minlength=n_lags)
    sum_dist = np.bincount(bins, weights=distances[in_range], minlength=n_lags)
    sum_sq = np.bincount(bins, weights=sq_diff[in_range], minlength=n_lags)

    has_pairs = n_pairs > 0
    return pd.DataFrame({
        'lag': sum_dist[has_pairs] / n_pairs[has_pairs],
        'semivariance': sum_sq[has_pairs] / (2.0 * n_pairs[has_pairs]),
        'n_pairs': n_pairs[has_pairs],
    })


def fit_variogram(empirical: pd.DataFrame, model: str = 'spherical') -> VariogramModel:
    """Weighted least-squares fit (weights n_pairs / lag^2) of a variogram model."""
    if model not in VARIOGRAM_MODELS:
        raise ValueError(f"Unknown variogram model: {model}")
    if len(empirical) < 3:
        raise InsufficientDataError(f"Only {len(empirical)} lag bins; at least 3 are needed for a fit.")

    lag = empirical['lag'].to_numpy(dtype=float)
    gamma = empirical['semivariance'].to_numpy(dtype=float)
    weights = empirical['n_pairs'].to_numpy(dtype=float) / lag ** 2
    sigma = 1.0 / np.sqrt(weights)

    max_gamma = max(gamma.max(), 1e-12)
    max_lag = lag.max()
    p0 = [min(gamma[0], max_gamma / 2), max_gamma, max_lag / 2]
    bounds = ([0.0, 0.0, max_lag * 1e-3], [max_gamma * 2, max_gamma * 4, max_lag * 10])
    try:
        params, _ = curve_fit(VARIOGRAM_MODELS[model], lag, gamma, p0=p0, sigma=sigma,
                              bounds=bounds, maxfev=10000)
    except RuntimeError as e:
        raise InsufficientDataError(f"Variogram fit did not converge: {e}") from e

    nugget, psill, rng = (float(p) for p in params)
    if rng >= bounds[1][2] * 0.999:
        logger.warning(f"Fitted {model} range {rng:.4g} sits on its upper bound ({bounds[1][2]:.4g}); "
                       f"the data show a trend rather than a sill.")
    logger.debug(f"Fitted {model} variogram: nugget={nugget:.4g}, psill={psill:.4g}, range={rng:.4g}")
    return VariogramModel(model=model, nugget=nugget, psill=psill, range=rng)


def sample_valid_pixels(valid_mask: np.ndarray, sample_size: int, random_state=None) -> Tuple[np.ndarray, np.ndarray]:
    """Random (rows, cols) of up to ``sample_size`` valid pixels."""
    rows, cols = np.nonzero(valid_mask)
    if len(rows) > sample_size:
        rng = np.random.default_rng(random_state)
        pick = rng.choice(len(rows), size=sample_size, replace=False)
        rows, cols = rows[pick], cols[pick]
    return rows, cols


def autocorrelation_range(stack_data: np.ndarray, valid_mask: np.ndarray, transform,
                          band_names, sample_size: int = 2000, model: str = 'spherical',
                          random_state=None) -> Tuple[float, Dict[str, VariogramModel]]:
    """
    Range of spatial autocorrelation of the predictors.

    A variogram is fitted to each standardised band on a random sample of
    valid pixels. Returns the median range and the per-band models; bands
    whose variogram cannot be fitted are skipped.
    """
    rows, cols = sample_valid_pixels(valid_mask, sample_size, random_state)
    if len(rows) < 3:
        raise InsufficientDataError("Too few valid pixels to estimate spatial autocorrelation.")
    coords = pixel_centres(transform, rows, cols)

    models = {}
    for i, name in enumerate(band_names):
        values = stack_data[i][rows, cols].astype(float)
        sd = values.std()
        if sd == 0:
            logger.warning(f"Predictor '{name}' is constant; no variogram fitted.")
            continue
        values = (values - values.mean()) / sd
        try:
            models[name] = fit_variogram(empirical_variogram(coords, values), model=model)
        except InsufficientDataError as e:
            logger.warning(f"Variogram for '{name}' skipped: {e}")
            continue
        logger.info(f"Autocorrelation range of {name}: {models[name].range:.1f}")

    if not models:
        raise InsufficientDataError("No predictor variogram could be fitted.")
    median_range = float(np.median([m.range for m in models.values()]))
    logger.info(f"Median autocorrelation range: {median_range:.1f}")
    return median_range, models


def ordinary_kriging(coords: np.ndarray, values: np.ndarray, targets: np.ndarray,
                     variogram: VariogramModel, n_neighbors: int = 16) -> Tuple[np.ndarray, np.ndarray]:
    """
    Local ordinary kriging.

    Each target is estimated from its ``n_neighbors`` nearest data points.
    Returns (estimates, kriging variances). A target that coincides with a
    data point takes that datum with zero variance.
    """
    coords = np.asarray(coords, dtype=float)
    values = np.asarray(values, dtype=float)
    targets = np.atleast_2d(np.asarray(targets, dtype=float))
    k = min(n_neighbors, len(values))
    if k < 1:
        raise InsufficientDataError("Kriging needs at least one data point.")

    tree = cKDTree(coords)
    dist, idx = tree.query(targets, k=k)
    if k == 1:
        dist, idx = dist[:, np.newaxis], idx[:, np.newaxis]

    estimates = np.empty(len(targets))
    variances = np.empty(len(targets))
    # Kriging system in semivariance form with a Lagrange multiplier row
    for t in range(len(targets)):
        if dist[t, 0] == 0:
            estimates[t] = values[idx[t, 0]]
            variances[t] = 0.0
            continue
        nb = coords[idx[t]]
        a = np.ones((k + 1, k + 1))
        a[:k, :k] = variogram.semivariance(np.linalg.norm(nb[:, np.newaxis] - nb[np.newaxis], axis=2))
        a[k, k] = 0.0
        b = np.ones(k + 1)
        b[:k] = variogram.semivariance(dist[t])
        try:
            w = np.linalg.solve(a, b)
        except np.linalg.LinAlgError:
            w = np.linalg.lstsq(a, b, rcond=None)[0]
        estimates[t] = w[:k] @ values[idx[t]]
        variances[t] = w[:k] @ b[:k] + w[k]
    return estimates, variances


def fill_raster_gaps(path: str, dst_path: str, max_distance: int = 5, n_neighbors: int = 16,
                     sample_size: int = 2000, model: str = 'spherical', random_state=None) -> Tuple[str, int]:
    """
    Fills NoData holes of a single-band raster by ordinary kriging.

    Only NoData cells within ``max_distance`` pixels of valid data are filled,
    so the outline of the survey is preserved. Returns the output path and the
    number of cells filled.
    """
    with rasterio.open(path) as src:
        band = src.read(1).astype(np.float32)
        profile = src.profile.copy()
        nodata = src.nodata
        transform = src.transform

    valid = valid_pixel_mask(band, nodata)
    if not valid.any():
        raise InsufficientDataError(f"Raster {path} has no valid cells to krige from.")
    gap_distance = distance_transform_edt(~valid)
    to_fill = (~valid) & (gap_distance <= max_distance)
    out_nodata = nodata if nodata is not None else -9999.0
    filled = np.where(valid, band, np.float32(out_nodata)).astype(np.float32)

    n_fill = int(to_fill.sum())
    if n_fill:
        rows, cols = sample_valid_pixels(valid, sample_size, random_state)
        sample_coords = pixel_centres(transform, rows, cols)
        variogram = fit_variogram(empirical_variogram(sample_coords, band[rows, cols]), model=model)

        v_rows, v_cols = np.nonzero(valid)
        data_coords = pixel_centres(transform, v_rows, v_cols)
        t_rows, t_cols = np.nonzero(to_fill)
        estimates, _ = ordinary_kriging(data_coords, band[v_rows, v_cols], pixel_centres(transform, t_rows, t_cols),
                                        variogram, n_neighbors=n_neighbors)
        filled[t_rows, t_cols] = estimates.astype(np.float32)
    logger.info(f"Kriged {n_fill} NoData cells of {path}")
    save_raster(dst_path, filled, profile, nodata_value=out_nodata)
    return dst_path, n_fill
