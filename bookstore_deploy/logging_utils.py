"""
Logging setup for the deployment pipeline.

Every record is rendered as ``[yyyy-MM-dd HH:mm:ss] [SEVERITY] message`` with
severities INFO, WARN, ERROR, SUCCESS, DEBUG and AWS CLI.
"""

import logging
from typing import Optional

from .config import CONFIG

SUCCESS = 25
AWS_CLI = 15

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

logging.addLevelName(SUCCESS, 'SUCCESS')
logging.addLevelName(AWS_CLI, 'AWS CLI')
logging.addLevelName(logging.WARNING, 'WARN')


def log_success(logger: logging.Logger, message: str, *args) -> None:
    """Log a message at SUCCESS level."""
    logger.log(SUCCESS, message, *args)


def log_aws_cli(logger: logging.Logger, output: str) -> None:
    """Log captured AWS CLI output line by line at AWS CLI level."""
    for line in output.splitlines():
        if line.strip():
            logger.log(AWS_CLI, line.rstrip())


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Set up logging configuration.

    Args:
        verbose: Enable verbose logging. Otherwise the LOG_LEVEL setting applies.
        log_file: Optional log file path.
    """
    if verbose:
        log_level = logging.DEBUG
    else:
        log_level = logging.getLevelName(CONFIG['log_level'].upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(log_level)

    # Replace handlers left by a previous call so reruns in one process do not duplicate lines
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Reduce noise from boto3/botocore
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('s3transfer').setLevel(logging.WARNING)
