import logging

from dmchat import config


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach a single stream handler to the package logger."""
    logger = logging.getLogger("dmchat")
    logger.setLevel((level or config.LOG_LEVEL).upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    return logger
