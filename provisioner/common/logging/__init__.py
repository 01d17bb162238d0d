from provisioner.common.logging.logconfig import logger
from provisioner.common.logging.timing import timeit

__all__ = ["logger", "timeit"]
