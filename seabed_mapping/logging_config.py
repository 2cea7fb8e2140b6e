"""
Logging Configuration
Sets up the 'seabed_mapping' logger for an analysis run: step messages on
stdout and, when the CLI passes one, a full record in the run's
``analysis.log`` next to the outputs.
"""
import logging
import sys
from typing import Optional

# Libraries that log per-file or per-tile chatter at INFO
NOISY_LOGGERS = ('rasterio', 'fiona', 'pyogrio', 'matplotlib', 'PIL')


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configures the logger for the 'seabed_mapping' namespace.

    Args:
        level: Level of the console handler (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional run log, usually ``<output_dir>/analysis.log``.
            It is rewritten on every run and always records at DEBUG level,
            so variogram fits and fold assignments can be checked afterwards.
    """
    logger = logging.getLogger("seabed_mapping")
    logger.setLevel(logging.DEBUG if log_file else level)

    # Running the analysis twice in one session must not duplicate output
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s', datefmt='%H:%M:%S'))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(f"Logging initialized (console level {logging.getLevelName(level)}, log file {log_file}).")
    return logger
