"""
Spatial blocking for cross-validation.

Observations are grouped into square blocks at least as large as the range
of spatial autocorrelation, and whole blocks are assigned to folds, so that
test points are never immediate neighbours of training points.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.model_selection import PredefinedSplit

from .exceptions import InsufficientDataError

logger = logging.getLogger(__name__)


@dataclass
class SpatialBlocks:
    block_ids: np.ndarray
    fold_ids: np.ndarray
    block_size: float
    n_folds: int
    y: np.ndarray

    @property
    def cv(self) -> PredefinedSplit:
        return PredefinedSplit(test_fold=self.fold_ids)

    def splits(self):
        return list(self.cv.split())

    def summary(self) -> pd.DataFrame:
        """Points, blocks and classes in the test set of each fold."""
        frame = pd.DataFrame({'fold': self.fold_ids, 'block': self.block_ids, 'y': self.y})
        summary = frame.groupby('fold').agg(
            test_points=('y', 'size'),
            blocks=('block', 'nunique'),
            test_classes=('y', 'nunique'),
        )
        summary['train_points'] = len(frame) - summary['test_points']
        summary['train_classes'] = [frame.loc[frame['fold'] != f, 'y'].nunique() for f in summary.index]
        return summary.reset_index()


def assign_blocks(coords: np.ndarray, block_size: float, origin: Optional[Tuple[float, float]] = None) -> np.ndarray:
    """
    Integer id of the square block containing each point.

    The grid is anchored at ``origin`` (default: the lower-left corner of the
    points). Ids are consecutive, in order of first appearance.
    """
    if block_size <= 0:
        raise ValueError(f"block_size must be positive, got {block_size}")
    coords = np.asarray(coords, dtype=float)
    if origin is None:
        origin = coords.min(axis=0)
    cells = np.floor((coords - np.asarray(origin, dtype=float)) / block_size).astype(np.int64)
    _, block_ids = np.unique(cells, axis=0, return_inverse=True)
    block_ids = np.asarray(block_ids).reshape(-1)
    # renumber by first appearance
    _, first = np.unique(block_ids, return_index=True)
    order = np.argsort(np.argsort(first))
    return order[block_ids]


def max_block_size(coords: np.ndarray, n_folds: int) -> float:
    """
    Largest block size that still cuts the observations into ``n_folds``
    blocks (at least two) along the longer side of their extent.
    """
    extent = np.ptp(np.asarray(coords, dtype=float), axis=0).max()
    if extent <= 0:
        raise InsufficientDataError("All observations share one location; spatial blocks are undefined.")
    return float(extent / max(n_folds, 2))


def _assignment_score(fold_of_block, block_ids, y, n_folds):
    folds = fold_of_block[block_ids]
    test_classes = sum(len(np.unique(y[folds == f])) for f in range(n_folds))
    sizes = np.bincount(folds, minlength=n_folds)
    if (sizes == 0).any():
        return (-1, -np.inf)
    return (test_classes, -float(np.std(sizes)))


def assign_block_folds(block_ids: np.ndarray, y: np.ndarray, n_folds: int = 5, iterations: int = 100,
                       random_state=None) -> Tuple[np.ndarray, int]:
    """
    Assigns whole blocks to folds.

    ``iterations`` random assignments are tried; the one whose test folds
    hold the most classes in total wins, ties broken by the most even fold
    sizes. Returns (fold id per point, number of folds).
    """
    block_ids = np.asarray(block_ids)
    y = np.asarray(y)
    n_blocks = len(np.unique(block_ids))
    if n_blocks < 2:
        raise InsufficientDataError(f"Only {n_blocks} spatial block(s); use a smaller block size.")
    if n_blocks < n_folds:
        logger.warning(f"Number of blocks ({n_blocks}) < CV folds ({n_folds}). Adjusting CV folds to {n_blocks}.")
        n_folds = n_blocks

    rng = np.random.default_rng(random_state)
    base = np.arange(n_blocks) % n_folds
    best, best_score = None, None
    for _ in range(max(1, iterations)):
        fold_of_block = rng.permutation(base)
        score = _assignment_score(fold_of_block, block_ids, y, n_folds)
        if best_score is None or score > best_score:
            best, best_score = fold_of_block, score
    return best[block_ids], n_folds


def spatial_block_cv(coords: np.ndarray, y: np.ndarray, block_size: float, n_folds: int = 5,
                     iterations: int = 100, random_state=None) -> SpatialBlocks:
    """Blocks the observations and assigns the blocks to ``n_folds`` folds."""
    block_ids = assign_blocks(coords, block_size)
    fold_ids, n_folds = assign_block_folds(block_ids, y, n_folds=n_folds, iterations=iterations,
                                           random_state=random_state)
    blocks = SpatialBlocks(block_ids=block_ids, fold_ids=fold_ids, block_size=float(block_size),
                           n_folds=n_folds, y=np.asarray(y))
    logger.info(f"Spatial blocks: {len(np.unique(block_ids))} blocks of {block_size:.1f} map units in {n_folds} folds")
    logger.info(f"Fold summary:\n{blocks.summary().to_string(index=False)}")
    return blocks
