import logging

from seabed_mapping.logging_config import setup_logging


def test_run_log_records_debug_while_console_stays_at_info(tmp_path):
    log_file = tmp_path / 'analysis.log'
    logger = setup_logging(logging.INFO, log_file=str(log_file))
    logging.getLogger('seabed_mapping.geostats').debug('Fitted spherical variogram')
    logger.info('--- 1. Checking Input Files ---')
    for handler in logger.handlers:
        handler.flush()

    text = log_file.read_text(encoding='utf-8')
    assert 'seabed_mapping.geostats - DEBUG - Fitted spherical variogram' in text
    assert '--- 1. Checking Input Files ---' in text
    console = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
    assert [h.level for h in console] == [logging.INFO]


def test_repeated_setup_does_not_duplicate_handlers(tmp_path):
    setup_logging(log_file=str(tmp_path / 'first.log'))
    logger = setup_logging(log_file=str(tmp_path / 'second.log'))
    assert len(logger.handlers) == 2
    assert logging.getLogger('rasterio').level == logging.WARNING
