import subprocess

import psutil
from loguru import logger

def terminate_tree(proc: subprocess.Popen, timeout: float = 5.0) -> None:
    """
    Terminate a process and all of its descendants, killing whatever is still
    alive after timeout seconds.

    The root is waited on through its Popen object so its exit code stays
    available to whoever else is waiting on it.
    """
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    for child in children:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot terminate process {child.pid}: {e}")

    if proc.poll() is None:
        proc.terminate()

    _, alive = psutil.wait_procs(children, timeout=timeout)
    for child in alive:
        logger.warning("Process did not stop in time, killing it", extra={"pid": child.pid})
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass

    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("Process did not stop in time, killing it", extra={"pid": proc.pid})
        proc.kill()
