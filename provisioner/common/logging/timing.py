import time

from loguru import logger

class timeit:
    """Logs the start of a phase and how long it took.

    Usage:
        with timeit("Installing requirements", package="ComfyUI"):
            ...
    """

    def __init__(
        self,
        message: str,
        min_duration: float = 0.0,
        **extra
    ):
        self.message = message
        self.min_duration = min_duration
        self.log = logger.bind(**extra)
        self.interval = 0.0

    def __enter__(self):
        self.log.info(self.message)
        self.start = time.monotonic()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.interval = time.monotonic() - self.start
        if exc_type is not None:
            self.log.warning(f"{self.message} failed after {self.interval:.2f} seconds")
        elif self.interval >= self.min_duration:
            self.log.debug(f"Finished {self.message}... Elapsed time: {self.interval:.4f} seconds")
