import os

import uvicorn

from logging_config import get_logger, setup_logging

# Setup logging before building the app
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from app import create_app
from config import load_settings

logger = get_logger(__name__)


def main():
    # ConfigError propagates: the process must not start on a bad environment
    settings = load_settings()
    app = create_app(settings)
    logger.info(f"Starting EphemeralChat server on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
