import logging
from config.default import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name: str, level: str = None) -> logging.Logger:
    """Return a stream logger for a pipeline component."""
    logger = logging.getLogger(f'url_risk.{name}')
    level_name = (level or Config.LOG_LEVEL).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger
