from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "exitbot"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(log_dir: Optional[Path] = None, level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Attach file + stream handlers to the exitbot and infra loggers.

    Modules log through logging.getLogger(__name__), so everything under the
    exitbot.* and infra.* namespaces ends up here.
    """
    fmt = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = []

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "exitbot.log", encoding="utf-8")
        file_handler.setFormatter(fmt)
        handlers.append(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    handlers.append(stream_handler)

    for name in (LOGGER_NAME, "infra"):
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.handlers.clear()
        for handler in handlers:
            logger.addHandler(handler)
        logger.propagate = False

    return logging.getLogger(LOGGER_NAME)


def set_level(level: Union[int, str]) -> None:
    for name in (LOGGER_NAME, "infra"):
        logging.getLogger(name).setLevel(level)
