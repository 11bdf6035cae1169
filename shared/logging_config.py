"""Logging setup shared by the API server, CLI and demos."""

import logging
import logging.handlers

from shared.config import LoggingConfig

LOG_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s"
DATE_FORMAT = "%H:%M:%S"


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure the root logger: console output plus an optional rotating file.

    Existing root handlers are replaced so calling this twice does not
    duplicate output.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
