import logging

_LOG_FORMAT = "%(asctime)s [%(levelname)s] vbus2homie: %(message)s"


def configure_logger(name: str = "vbus2homie", level: str | int = logging.INFO) -> logging.Logger:
    """
    Central logger setup; repeated calls return the already configured
    instance (only the level is updated) instead of stacking handlers.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    if logger.handlers:
        return logger               # already configured
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logger.addHandler(handler)
    return logger
