"""
Seabed substrate mapping: the analysis from inputs to exported maps.

Aligns backscatter and other predictors to the bathymetry grid, derives
terrain features, samples the stack at the ground truth points, selects
predictors and tunes a random forest on spatially blocked folds, predicts
classes and class probabilities over the grid and maps the model's area of
applicability.
"""
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from . import plotting
from .aoa import AOA_NODATA, AreaOfApplicability, map_aoa, train_dissimilarity
from .blocking import SpatialBlocks, max_block_size, spatial_block_cv
from .config import AnalysisConfig
from .exceptions import InputDataError, SeabedMappingError, TerrainError
from .geostats import autocorrelation_range, empirical_variogram, fill_raster_gaps, sample_valid_pixels
from .model import Evaluation, evaluate_cv, feature_importance, grid_search_table, save_model, tune_random_forest
from .observations import TrainingData, clean_training_data, load_observations, project_observations, sample_stack
from .prediction import PredictionResult, class_names_in_order, export_predictions, predict_stack
from .rasters import align_to_grid, pixel_centres, read_reference_grid, read_stack, save_raster, stack_predictors, valid_pixel_mask
from .selection import SelectionResult, ThresholdSearchResult, default_estimator, forward_feature_selection, search_correlation_threshold
from .terrain import DISPLAY_PRODUCTS, TERRAIN_FEATURES, derive_terrain

logger = logging.getLogger(__name__)

STACK_FILE = 'stacked_features_for_classification.tif'


@dataclass
class AnalysisResult:
    config: AnalysisConfig
    band_names: List[str]
    training: TrainingData
    blocks: SpatialBlocks
    threshold_search: ThresholdSearchResult
    forward_selection: Optional[SelectionResult]
    selected_features: List[str]
    best_params: dict
    evaluation: Evaluation
    importance: pd.DataFrame
    prediction: PredictionResult
    aoa: AreaOfApplicability
    class_names: List[str]
    files: Dict[str, str] = field(default_factory=dict)


def remove_feature(fname, feature_list):
    """Removes a feature name from a list if present and logs it."""
    if fname in feature_list:
        feature_list.remove(fname)
        logger.info(f"-> Feature '{fname}' removed from processing list.")
    return feature_list


def _step(number, title):
    logger.info(f"--- {number}. {title} ---")


def _optional_input(path: Optional[str], name: str) -> Optional[str]:
    if path is None:
        return None
    if not os.path.exists(path):
        logger.warning(f"{name} file not found: {path}. Removing '{name}' from feature list.")
        return None
    if os.path.getsize(path) == 0:
        logger.warning(f"{name} file found but is empty: {path}. Removing '{name}'.")
        return None
    logger.info(f"Found {name} file: {path}")
    return path


def _try_plot(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except (ValueError, RuntimeError, OSError) as plot_e:
        logger.warning(f"Failed to create figure with {func.__name__}: {plot_e}")
        return None


def check_inputs(config: AnalysisConfig, features: List[str]):
    """Returns (bathymetry, ground truth, backscatter or None, extra predictors) paths."""
    bathy_path = config.resolve(config.bathy_file)
    if not os.path.exists(bathy_path):
        raise InputDataError(f"Bathymetry file not found: {bathy_path}")
    gt_path = config.resolve(config.ground_truth_file)
    if not os.path.exists(gt_path):
        raise InputDataError(f"Ground truth file not found: {gt_path}")

    backscatter_path = None
    if 'Backscatter' in features:
        backscatter_path = _optional_input(config.resolve(config.backscatter_file), 'Backscatter')
        if backscatter_path is None:
            remove_feature('Backscatter', features)

    extra = {}
    for name, path in config.extra_predictors.items():
        found = _optional_input(config.resolve(path), name)
        if found is not None:
            extra[name] = found
            if name not in features:
                features.append(name)
        else:
            remove_feature(name, features)
    logger.info(f"Attempting classification with features: {features}")
    return bathy_path, gt_path, backscatter_path, extra


def run_analysis(config: AnalysisConfig) -> AnalysisResult:
    start_time = time.time()
    out = config.output_path
    os.makedirs(out, exist_ok=True)
    files = {}
    intermediates = []
    features = list(config.initial_features)
    logger.info("--- Starting Seabed Substrate Mapping ---")

    _step(1, "Checking Input Files")
    bathy_path, gt_path, backscatter_path, extra_paths = check_inputs(config, features)

    _step(2, "Defining Reference Grid")
    grid = read_reference_grid(bathy_path)
    depth_path = bathy_path
    if config.fill_gaps:
        depth_path, _ = fill_raster_gaps(bathy_path, config.output_file('bathy_gapfilled.tif'),
                                         max_distance=config.gap_fill_max_distance,
                                         sample_size=config.variogram_sample_size,
                                         random_state=config.random_state)
        intermediates.append(depth_path)

    _step(3, "Performing Terrain Analysis")
    for name in [f for f in features if f in DISPLAY_PRODUCTS]:
        logger.warning(f"'{name}' is a display product, not a predictor.")
        remove_feature(name, features)
    requested_terrain = [f for f in features if f in TERRAIN_FEATURES]
    products = requested_terrain + (list(DISPLAY_PRODUCTS) if config.make_plots else [])
    terrain_files = {}
    if products:
        try:
            terrain_files = derive_terrain(depth_path, out, products)
        except TerrainError as e:
            logger.warning(f"{e} Terrain products are skipped.")
    hillshade_path = terrain_files.pop('Hillshade', None)
    for name in requested_terrain:
        if name not in terrain_files:
            remove_feature(name, features)

    _step(4, "Aligning Predictors to the Reference Grid")
    aligned = {}
    to_align = dict(extra_paths)
    if backscatter_path and 'Backscatter' in features:
        to_align = {'Backscatter': backscatter_path, **to_align}
    for name, path in to_align.items():
        dst = config.output_file(f'{name.lower()}_aligned.tif')
        try:
            aligned[name] = align_to_grid(path, grid, dst, nodata=config.nodata)
            intermediates.append(dst)
            if config.fill_gaps:
                aligned[name], _ = fill_raster_gaps(aligned[name], config.output_file(f'{name.lower()}_gapfilled.tif'),
                                                    max_distance=config.gap_fill_max_distance,
                                                    sample_size=config.variogram_sample_size,
                                                    random_state=config.random_state)
                intermediates.append(aligned[name])
        except SeabedMappingError as e:
            logger.warning(f"Error during {name} alignment: {e}. Skipping.")
            remove_feature(name, features)

    _step(5, "Stacking Final Features")
    available = {'Depth': depth_path, **aligned, **terrain_files}
    sources = {name: available[name] for name in features if name in available}
    for name in [f for f in features if f not in sources]:
        logger.warning(f"Skipping {name} (file missing or not generated successfully).")
        remove_feature(name, features)
    if config.backscatter_file and 'Backscatter' in config.initial_features and 'Backscatter' not in sources:
        logger.warning("IMPORTANT: 'Backscatter' was requested but failed to be included. Proceeding without it.")
    stack_path = config.output_file(STACK_FILE)
    stack_predictors(sources, grid, stack_path, nodata=config.nodata)
    stack_data, stack_valid, profile, band_names = read_stack(stack_path)
    files['stack'] = stack_path

    _step(6, "Loading Ground Truth Data")
    gdf = load_observations(gt_path, x_column=config.x_column, y_column=config.y_column,
                            class_column=config.class_column, crs=config.ground_truth_crs)
    gdf = project_observations(gdf, grid.crs)

    _step(7, "Extracting Training Data")
    sampled = sample_stack(gdf, stack_path)
    training = clean_training_data(sampled, band_names, nodata=config.nodata,
                                   min_class_count=config.min_class_count, transform=grid.transform)
    files['training_data'] = config.output_file('training_data.csv')
    training.frame.to_csv(files['training_data'], index=False)
    X, y, class_names = training.X, training.y, training.encoding.names

    _step(8, "Spatial Blocking")
    block_size = config.block_size
    if block_size is None:
        block_size, variograms = autocorrelation_range(stack_data, stack_valid, grid.transform, band_names,
                                                       sample_size=config.variogram_sample_size,
                                                       random_state=config.random_state)
        files['variogram_ranges'] = config.output_file('variogram_ranges.csv')
        pd.DataFrame([{'Feature': k, 'model': v.model, 'nugget': v.nugget, 'psill': v.psill, 'range': v.range}
                      for k, v in variograms.items()]).to_csv(files['variogram_ranges'], index=False)
        if config.make_plots:
            rows, cols = sample_valid_pixels(stack_valid, config.variogram_sample_size, config.random_state)
            coords = pixel_centres(grid.transform, rows, cols)
            empiricals = {}
            for i, name in enumerate(band_names):
                values = stack_data[i][rows, cols].astype(float)
                if name in variograms:
                    empiricals[name] = empirical_variogram(coords, (values - values.mean()) / values.std())
            _try_plot(plotting.plot_variograms, empiricals, variograms, config.output_file('variograms.png'))
        limit = max_block_size(training.coords, config.cv_folds)
        if block_size > limit:
            logger.warning(f"Autocorrelation range {block_size:.1f} exceeds what the training extent can hold "
                           f"for {config.cv_folds} folds; block size limited to {limit:.1f}.")
            block_size = limit
    blocks = spatial_block_cv(training.coords, y, block_size, n_folds=config.cv_folds,
                              iterations=config.block_iterations, random_state=config.random_state)
    files['fold_summary'] = config.output_file('fold_summary.csv')
    blocks.summary().to_csv(files['fold_summary'], index=False)
    if config.make_plots:
        _try_plot(plotting.plot_folds, training.coords, blocks.fold_ids, block_size,
                  config.output_file('spatial_folds.png'))
    cv = blocks.cv

    _step(9, "Feature Selection")
    estimator = default_estimator(random_state=config.random_state)
    search = search_correlation_threshold(X, y, cv, config.correlation_thresholds, estimator=estimator,
                                          scoring=config.scoring, n_jobs=config.n_jobs)
    files['threshold_search'] = config.output_file('threshold_search.csv')
    search.table.to_csv(files['threshold_search'], index=False)
    if config.make_plots:
        _try_plot(plotting.plot_threshold_search, search.table, config.output_file('threshold_search.png'))
    selected = search.selected
    ffs = None
    if config.use_forward_selection:
        ffs = forward_feature_selection(X[selected], y, cv, estimator=estimator, scoring=config.scoring,
                                        n_jobs=config.n_jobs)
        files['forward_selection'] = config.output_file('forward_selection.csv')
        ffs.history.to_csv(files['forward_selection'], index=False)
        selected = ffs.selected
    logger.info(f"Selected predictors: {selected}")

    _step(10, "Random Forest Tuning")
    grid_search = tune_random_forest(X[selected], y, cv, param_grid=config.param_grid, scoring=config.scoring,
                                     random_state=config.random_state, n_jobs=config.n_jobs)
    files['grid_search'] = config.output_file('grid_search.csv')
    grid_search_table(grid_search).to_csv(files['grid_search'], index=False)
    best_rf = grid_search.best_estimator_

    _step(11, "Spatial Cross-Validation")
    evaluation = evaluate_cv(best_rf, X[selected], y, cv, class_names, n_jobs=config.n_jobs)
    files['confusion_matrix'] = config.output_file('cv_confusion_matrix.csv')
    evaluation.confusion.to_csv(files['confusion_matrix'])
    files['cv_report'] = config.output_file('cv_report.txt')
    with open(files['cv_report'], 'w', encoding='utf-8') as fh:
        fh.write(f"Overall Accuracy: {evaluation.accuracy:.2f}%\n")
        fh.write(f"Kappa Coefficient: {evaluation.kappa:.3f}\n\n")
        fh.write(evaluation.report)
    importance = feature_importance(best_rf, selected)
    files['feature_importance'] = config.output_file('feature_importance.csv')
    importance.to_csv(files['feature_importance'], index=False)
    if config.make_plots:
        _try_plot(plotting.plot_confusion_matrix, evaluation.confusion, config.output_file('cv_confusion_matrix.png'))
        _try_plot(plotting.plot_feature_importance, importance, config.output_file('feature_importance.png'))

    _step(12, "Predicting Substrate Classes")
    selected_idx = [band_names.index(f) for f in selected]
    predict_mask = valid_pixel_mask(stack_data[selected_idx], config.nodata)
    prediction = predict_stack(best_rf, stack_data, predict_mask, band_names, selected,
                               chunk_size=config.prediction_chunk_size, class_nodata=config.class_nodata)
    files.update(export_predictions(prediction, profile, out, class_names_in_order(best_rf, class_names)))
    files['class_areas'] = config.output_file('class_areas.csv')
    pixel_area = grid.resolution[0] * grid.resolution[1]
    prediction.class_areas(pixel_area, class_names).to_csv(files['class_areas'], index=False)

    _step(13, "Area of Applicability")
    aoa = train_dissimilarity(X[selected], weights=best_rf.feature_importances_, folds=blocks.fold_ids)
    di_map, aoa_map = map_aoa(aoa, stack_data, predict_mask, band_names, chunk_size=config.prediction_chunk_size)
    files['dissimilarity_index'] = save_raster(config.output_file('dissimilarity_index.tif'), di_map, profile,
                                               nodata_value=np.nan, band_names=['DI'])
    files['aoa'] = save_raster(config.output_file('aoa.tif'), aoa_map, profile, nodata_value=AOA_NODATA,
                               band_names=['AOA'])
    if config.make_plots:
        _try_plot(plotting.plot_raster, files['classification'], "Random Forest Classification",
                  config.output_file('classification_rf.png'), cmap=plotting.discrete_cmap(len(class_names)),
                  label='Class ID')
        _try_plot(plotting.plot_raster, files['max_probability'], "Maximum class probability",
                  config.output_file('max_probability.png'), label='Probability')
        _try_plot(plotting.plot_raster, files['dissimilarity_index'], "Dissimilarity index",
                  config.output_file('dissimilarity_index.png'), cmap='magma', label='DI')
        _try_plot(plotting.plot_raster, files['aoa'], "Area of applicability",
                  config.output_file('aoa.png'), cmap=plotting.discrete_cmap(2), label='Inside AOA')
        if hillshade_path:
            files['hillshade'] = hillshade_path
            _try_plot(plotting.plot_raster, hillshade_path, "Bathymetry hillshade",
                      config.output_file('hillshade.png'), cmap='gray', label='Illumination')

    _step(14, "Exporting Model and Summary")
    metadata = {
        'features': selected,
        'classes': class_names,
        'best_params': grid_search.best_params_,
        'block_size': block_size,
        'aoa_threshold': aoa.threshold,
    }
    written = save_model(best_rf, config.output_file('random_forest.joblib'), metadata=metadata)
    files['model'] = written[0]
    summary = {
        'stack_features': band_names,
        'selected_features': selected,
        'correlation_threshold': search.threshold,
        'n_observations': len(training.frame),
        'class_counts': {k: int(v) for k, v in training.class_counts().items()},
        'block_size': block_size,
        'n_folds': blocks.n_folds,
        'best_params': grid_search.best_params_,
        'spatial_cv': evaluation.as_dict(),
        'aoa': aoa.summary(),
        'elapsed_seconds': round(time.time() - start_time, 1),
    }
    files['summary'] = config.output_file('summary.json')
    with open(files['summary'], 'w', encoding='utf-8') as fh:
        json.dump(summary, fh, indent=2, default=str)

    if config.cleanup_intermediate:
        logger.info("Cleaning up intermediate files")
        for f in intermediates:
            if os.path.exists(f):
                os.remove(f)
                logger.info(f"Removed: {f}")

    logger.info(f"--- Finished in {time.time() - start_time:.1f} s. Outputs in {out} ---")
    return AnalysisResult(config=config, band_names=band_names, training=training, blocks=blocks,
                          threshold_search=search, forward_selection=ffs, selected_features=selected,
                          best_params=grid_search.best_params_, evaluation=evaluation, importance=importance,
                          prediction=prediction, aoa=aoa, class_names=class_names, files=files)
