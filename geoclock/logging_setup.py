import logging

from geoclock import config

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging() -> logging.Logger:
    level = getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(format=LOG_FORMAT, level=level)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("geoclock")
