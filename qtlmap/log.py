import logging


# Configure logging
def setup_logger(log_file: str = "qtlmap.log"):
    """Setup logger with both file and stream handlers"""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)
    # turn off propagation to parent logger
    logger.propagate = False

    # create formatter
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s',
                                datefmt='%Y-%m-%d %H:%M:%S')

    # add file handler
    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    # add console handler
    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger


def set_verbosity(level: str):
    """Change the level of the package logger, e.g. "DEBUG" or "WARNING"."""
    value = getattr(logging, str(level).upper(), None)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    logger.setLevel(value)

# create logger instance
logger = setup_logger()
