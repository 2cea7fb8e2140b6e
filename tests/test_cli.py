import os

from seabed_mapping.cli import build_parser, main

from .conftest import CRS


def test_parser_leaves_unset_options_empty():
    args = vars(build_parser().parse_args(['--block-size', '250', '--no-plots']))
    assert args['block_size'] == 250.0
    assert args['make_plots'] is False
    assert args['use_forward_selection'] is None
    assert args['fill_gaps'] is None
    assert args['n_jobs'] is None


def test_missing_inputs_exit_code(tmp_path):
    assert main(['--data-dir', str(tmp_path), '--output-dir', 'out']) == 1
    assert os.path.exists(tmp_path / 'out' / 'analysis.log')


def test_bad_config_exit_code(tmp_path):
    path = tmp_path / 'bad.toml'
    path.write_text('not_a_field = 1\n')
    assert main(['--config', str(path)]) == 1


def test_cli_run(tmp_path, bathy_tif, backscatter_tif, ground_truth):
    gt_path, _ = ground_truth
    config = tmp_path / 'survey.toml'
    config.write_text(
        'data_dir = "."\n'
        'bathy_file = "bathy.tif"\n'
        'backscatter_file = "backscatter.tif"\n'
        'x_column = "E"\n'
        'y_column = "N"\n'
        'class_column = "Substrate"\n'
        f'ground_truth_crs = "{CRS}"\n'
        'initial_features = ["Depth", "Backscatter"]\n'
        'cv_folds = 3\n'
        'block_iterations = 5\n'
        'correlation_thresholds = [1.0]\n'
        '[param_grid]\n'
        'n_estimators = [10]\n'
    )
    code = main(['--config', str(config), '--ground-truth', os.path.basename(gt_path),
                 '--block-size', '150', '--n-jobs', '1', '--no-plots', '--no-forward-selection'])
    assert code == 0
    assert os.path.exists(tmp_path / 'Outputs_SubstrateMapping' / 'summary.json')


def test_wrongly_typed_config_exit_code(tmp_path):
    path = tmp_path / 'survey.toml'
    path.write_text('block_size = "500 m"\ncv_folds = 3\n')
    assert main(['--config', str(path)]) == 1
