import logging
import sys


def init_logger():
    logger = logging.getLogger("iforward")
    logger.setLevel(logging.INFO)
    hd = logging.StreamHandler(sys.stdout)
    formatter_str = (
        "%(levelname)-5s %(asctime)s [%(name)s] %(filename)s(%(lineno)s): %(message)s"
    )
    formatter = logging.Formatter(formatter_str, datefmt="%Y-%m-%d %H:%M:%S")
    hd.setLevel(logging.DEBUG)
    hd.setFormatter(formatter)
    logger.addHandler(hd)
    return logger


logger = init_logger()
