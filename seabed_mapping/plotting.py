"""Figures written next to the analysis outputs."""
import logging

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import numpy as np
import rasterio
from matplotlib.colors import ListedColormap
from matplotlib.ticker import FormatStrFormatter
from rasterio.plot import show as rio_show

logger = logging.getLogger(__name__)


def _save(fig, path):
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    logger.info(f"Figure saved: {path}")
    return path


def discrete_cmap(n):
    return ListedColormap(plt.cm.tab10.colors[:n] if n <= 10 else plt.cm.tab20.colors[:n])


def plot_raster(raster_path, title, out_path, cmap='viridis', label='Value', band=1,
                figsize=(8, 8), vmin=None, vmax=None):
    """Map of one band of a GeoTIFF with a colorbar when the valid range is not zero."""
    with rasterio.open(raster_path) as src:
        data = src.read(band, masked=True)
        fig, ax = plt.subplots(figsize=figsize)
        formatter = FormatStrFormatter('%.0f')
        ax.xaxis.set_major_formatter(formatter)
        ax.yaxis.set_major_formatter(formatter)

        if vmin is not None and vmax is not None and vmin == vmax:
            vmax = vmin + 1e-6
        rio_show(data, transform=src.transform, ax=ax, cmap=cmap, title=title, vmin=vmin, vmax=vmax)

        valid = data.compressed()
        valid = valid[~np.isnan(valid)] if np.issubdtype(valid.dtype, np.floating) else valid
        if valid.size and np.ptp(valid) > 0:
            fig.colorbar(ax.get_images()[0], ax=ax, label=label)
        else:
            logger.debug(f"Skipping colorbar for {raster_path} (valid data range is zero or empty).")

        ax.set_xlabel("Easting")
        ax.set_ylabel("Northing")
        ax.ticklabel_format(style='plain', axis='both', useOffset=False)
        plt.setp(ax.get_xticklabels(), rotation=45, ha="right", rotation_mode="anchor")
    return _save(fig, out_path)


def plot_feature_importance(importance_df, out_path):
    fig, ax = plt.subplots(figsize=(10, 6))
    importance_df.plot(kind='bar', x='Feature', y='Importance (%)', ax=ax, legend=False)
    ax.set_title('Random Forest Feature Importance')
    ax.set_ylabel('Importance (%)')
    ax.tick_params(axis='x', rotation=45)
    return _save(fig, out_path)


def plot_variograms(empiricals, models, out_path):
    """Empirical semivariances (points) and fitted models (lines), one colour per predictor."""
    fig, ax = plt.subplots(figsize=(8, 6))
    for (name, emp), color in zip(empiricals.items(), plt.cm.tab10.colors * 3):
        ax.scatter(emp['lag'], emp['semivariance'], s=12, color=color, label=name)
        if name in models:
            h = np.linspace(0, emp['lag'].max(), 200)
            ax.plot(h, models[name].semivariance(h), color=color)
    ax.set_xlabel('Lag distance')
    ax.set_ylabel('Semivariance (standardised)')
    ax.set_title('Predictor variograms')
    ax.legend(fontsize='small')
    return _save(fig, out_path)


def plot_confusion_matrix(confusion, out_path):
    fig, ax = plt.subplots(figsize=(7, 6))
    im = ax.imshow(confusion.values, cmap='Blues')
    ax.set_xticks(range(len(confusion.columns)))
    ax.set_xticklabels(confusion.columns, rotation=45, ha='right')
    ax.set_yticks(range(len(confusion.index)))
    ax.set_yticklabels(confusion.index)
    for i in range(confusion.shape[0]):
        for j in range(confusion.shape[1]):
            ax.text(j, i, int(confusion.values[i, j]), ha='center', va='center', fontsize=8)
    ax.set_xlabel('Predicted')
    ax.set_ylabel('Observed')
    ax.set_title('Spatial CV confusion matrix')
    fig.colorbar(im, ax=ax)
    return _save(fig, out_path)


def plot_folds(coords, fold_ids, block_size, out_path):
    """Observation locations coloured by CV fold over the block grid."""
    fig, ax = plt.subplots(figsize=(8, 8))
    n_folds = int(np.max(fold_ids)) + 1
    sc = ax.scatter(coords[:, 0], coords[:, 1], c=fold_ids, cmap=discrete_cmap(n_folds), s=10)
    x0, y0 = coords.min(axis=0)
    x1, y1 = coords.max(axis=0)
    for x in np.arange(x0, x1 + block_size, block_size):
        ax.axvline(x, color='grey', lw=0.5)
    for y in np.arange(y0, y1 + block_size, block_size):
        ax.axhline(y, color='grey', lw=0.5)
    fig.colorbar(sc, ax=ax, label='Fold')
    ax.set_title(f'Spatial blocks ({block_size:.0f} m) and CV folds')
    ax.set_xlabel("Easting")
    ax.set_ylabel("Northing")
    ax.ticklabel_format(style='plain', axis='both', useOffset=False)
    return _save(fig, out_path)


def plot_threshold_search(table, out_path):
    fig, ax = plt.subplots(figsize=(7, 5))
    ax.plot(table['threshold'], table['score'], marker='o')
    for _, row in table.iterrows():
        ax.annotate(str(row['n_features']), (row['threshold'], row['score']),
                    textcoords='offset points', xytext=(0, 6), ha='center', fontsize=8)
    ax.set_xlabel('Correlation cut-off')
    ax.set_ylabel('Spatial CV score')
    ax.set_title('Correlation threshold search (labels: predictors kept)')
    return _save(fig, out_path)
