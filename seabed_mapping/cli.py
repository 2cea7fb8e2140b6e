"""Command line entry point: ``seabed-mapping`` / ``python -m seabed_mapping``."""
import argparse
import logging
import os
import sys

from .config import load_config
from .exceptions import SeabedMappingError
from .logging_config import setup_logging
from .pipeline import run_analysis

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='seabed-mapping',
        description='Predict seafloor substrate classes from ground truth points and raster predictors '
                    'with a spatially cross-validated random forest.')
    parser.add_argument('--config', help='TOML file with analysis settings')
    parser.add_argument('--data-dir', help='Directory holding the input rasters and ground truth')
    parser.add_argument('--output-dir', help='Directory for outputs (relative to the data directory)')
    parser.add_argument('--bathymetry', dest='bathy_file', help='Bathymetry GeoTIFF (reference grid)')
    parser.add_argument('--backscatter', dest='backscatter_file', help='Backscatter GeoTIFF')
    parser.add_argument('--ground-truth', dest='ground_truth_file', help='Ground truth CSV or vector file')
    parser.add_argument('--class-column', help='Column holding the substrate class')
    parser.add_argument('--block-size', type=float,
                        help='Spatial block size in map units (default: predictor autocorrelation range)')
    parser.add_argument('--cv-folds', type=int, help='Number of spatial CV folds')
    parser.add_argument('--n-jobs', type=int, help='Parallel jobs for scikit-learn (-1 = all cores)')
    parser.add_argument('--fill-gaps', action='store_const', const=True, default=None,
                        help='Fill small NoData holes in the predictors by kriging')
    parser.add_argument('--no-forward-selection', dest='use_forward_selection', action='store_const',
                        const=False, default=None, help='Skip forward feature selection')
    parser.add_argument('--no-plots', dest='make_plots', action='store_const', const=False, default=None,
                        help='Do not write figures')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    overrides = vars(args).copy()
    config_path = overrides.pop('config')
    verbose = overrides.pop('verbose')

    level = logging.DEBUG if verbose else logging.INFO
    try:
        config = load_config(config_path, **overrides)
        os.makedirs(config.output_path, exist_ok=True)
        setup_logging(level, log_file=config.output_file('analysis.log'))
        run_analysis(config)
    except SeabedMappingError as e:
        if not logging.getLogger('seabed_mapping').handlers:
            setup_logging(level)
        logger.error(str(e))
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
