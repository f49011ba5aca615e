import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
METRICS_LOGGER_NAME = "metrics"

# Third-party loggers that log every connection or signed request
NOISY_LOGGERS = (
    "botocore",
    "boto3",
    "urllib3",
    "httpx",
    "httpcore",
)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure root logging for the app.

    Console output always, plus an optional file handler. Metric lines get
    their own logger with a bare formatter so each record is exactly one
    EMF JSON document.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    metrics_logger = logging.getLogger(METRICS_LOGGER_NAME)
    metrics_logger.setLevel(logging.INFO)
    metrics_logger.propagate = False
    for handler in list(metrics_logger.handlers):
        metrics_logger.removeHandler(handler)
    metrics_handler = logging.StreamHandler(sys.stdout)
    metrics_handler.setFormatter(logging.Formatter("%(message)s"))
    metrics_logger.addHandler(metrics_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging configured: level={logging.getLevelName(level)}, file={log_file}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
