import os
import logging
from logging.handlers import RotatingFileHandler

from pvebackup.utils.logfmt import CategoryFilter


__version__ = '2.0.0'


def configure_logging(config):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = config.app_log_dir
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if config.debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: [%(category)s] %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    console_handler.addFilter(CategoryFilter())

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'pvebackup.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] [%(category)s] %(message)s'
    )
    file_handler.setFormatter(file_formatter)
    file_handler.addFilter(CategoryFilter())

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    # Quiet chatty libraries
    for name in ('botocore', 'boto3', 's3transfer', 'urllib3', 'apscheduler.executors'):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger('pvebackup')
    logger.setLevel(log_level)
    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
