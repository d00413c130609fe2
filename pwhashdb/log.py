import logging

LOG_DATE_FORMAT = "%m/%d/%Y %I:%M:%S %p"
LOG_FORMAT = "%(asctime)s - %(name)s.%(funcName)-10s - %(levelname)-8s :: %(message)s"


def simple_log(level=logging.WARNING, name: str = "pwhashdb") -> logging.Logger:
    """
    Configure root logging once and hand back the package logger.

    :param level: logging level (int or name, e.g. "DEBUG")
    :param name: logger to return; module loggers live underneath it
    """
    logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, level=level)
    log = logging.getLogger(name)
    log.setLevel(level)
    return log
