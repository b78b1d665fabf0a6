import logging
import os

from pythonjsonlogger import json as jsonlogger

_FORMAT = '%(asctime)s %(name)s %(levelname)s %(message)s'


def get_logger(name: str) -> logging.Logger:
    """Return a logger emitting JSON lines on stderr.

    Handlers are attached once per logger name so re-imported service
    modules (tests load them by path) don't duplicate output.
    """
    logger = logging.getLogger(name)
    if not any(getattr(h, "_gateway_json", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(jsonlogger.JsonFormatter(_FORMAT))
        handler._gateway_json = True
        logger.addHandler(handler)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))
    return logger
