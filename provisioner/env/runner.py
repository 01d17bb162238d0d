from collections import deque
from dataclasses import dataclass
import os
import shutil
import subprocess
import sys
import threading
import time
from typing import Callable

from loguru import logger

from provisioner.common.errors import InstallCancelled, ProcessLaunchFailed, StepFailed
from provisioner.common.progress import OutputSink
from provisioner.deps.model import DependencyPlan, InstallStep
from provisioner.process.tree import terminate_tree

logger = logger.bind(name="Environment Runner")

@dataclass
class Environment:
    # directory holding the virtual environment
    root: str
    # working directory for commands run inside it
    install_root: str

    @property
    def python(self) -> str:
        if os.name == "nt":
            return os.path.join(self.root, "Scripts", "python.exe")
        return os.path.join(self.root, "bin", "python")

    def exists(self) -> bool:
        return os.path.isfile(self.python)

@dataclass
class InstallResult:
    steps_run: int
    elapsed: float

class EnvironmentRunner:
    """
    Creates virtual environments and runs install steps inside them, one at a time.

    Steps are never run concurrently: pip mutating one environment from two processes
    corrupts it.
    """

    def __init__(
        self,
        venv_dir_name: str = "venv",
        tail_lines: int = 50,
        base_python: str | None = None,
        stop_timeout: float = 5.0
    ):
        self.venv_dir_name = venv_dir_name
        self.tail_lines = tail_lines
        self.base_python = base_python or sys.executable
        self.stop_timeout = stop_timeout

        self._current: subprocess.Popen | None = None
        self._current_lock = threading.Lock()

    def setup(self, install_root: str, recreate: bool = False, sink: OutputSink | None = None) -> Environment:
        """
        Returns the environment for an install root, creating it if needed.

        If recreate is set an existing environment is destroyed first. Otherwise an existing
        one is reused as is.
        """
        env = Environment(
            root=os.path.join(install_root, self.venv_dir_name),
            install_root=install_root
        )

        if recreate and os.path.exists(env.root):
            logger.info("Removing existing environment", extra={"path": env.root})
            shutil.rmtree(env.root)

        if env.exists():
            logger.debug("Reusing environment", extra={"path": env.root})
            return env

        os.makedirs(install_root, exist_ok=True)
        logger.info("Creating environment", extra={"path": env.root})
        code, tail = self._stream([self.base_python, "-m", "venv", env.root], install_root, sink)
        if code != 0:
            raise StepFailed("Failed to create virtual environment", step_index=-1, output_tail=tail, path=env.root)
        return env

    def install(
        self,
        env: Environment,
        plan: DependencyPlan,
        sink: OutputSink | None = None,
        cancel: threading.Event | None = None,
        on_step: Callable[[int, InstallStep], None] | None = None
    ) -> InstallResult:
        """
        Runs every step of the plan in order.

        Raises:
            StepFailed: a step exited non-zero. Steps before it are not rolled back.
            InstallCancelled: cancel was set before a step or while it ran.
        """
        start = time.time()
        for idx, step in enumerate(plan):
            if cancel is not None and cancel.is_set():
                raise InstallCancelled("Install cancelled", step_index=idx)

            if on_step is not None:
                on_step(idx, step)

            cmd = [env.python, "-m", "pip", "install", *step.pip_args()]
            logger.info(f"Running install step {idx + 1}/{len(plan)}", extra={"step": step.describe()})
            code, tail = self._stream(cmd, env.install_root, sink)

            if cancel is not None and cancel.is_set():
                raise InstallCancelled("Install cancelled", step_index=idx)
            if code != 0:
                raise StepFailed(
                    f"Install step exited with code {code}",
                    step_index=idx,
                    output_tail=tail,
                    step=step.describe()
                )

        return InstallResult(steps_run=len(plan), elapsed=time.time() - start)

    def run(self, args: list[str], cwd: str, sink: OutputSink | None = None) -> int:
        """Runs an arbitrary command with streamed output and returns its exit code."""
        code, _ = self._stream(args, cwd, sink)
        return code

    def terminate(self) -> None:
        """Forcefully stops the step that is currently running, if any."""
        with self._current_lock:
            proc = self._current
        if proc is not None and proc.poll() is None:
            logger.warning("Terminating running install step", extra={"pid": proc.pid})
            terminate_tree(proc, timeout=self.stop_timeout)

    def _stream(self, args: list[str], cwd: str, sink: OutputSink | None) -> tuple[int, list[str]]:
        tail: deque[str] = deque(maxlen=self.tail_lines)
        try:
            proc = subprocess.Popen(
                args,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=_unbuffered_env()
            )
        except OSError as e:
            raise ProcessLaunchFailed(f"Failed to start {args[0]}: {e}", cwd=cwd) from e

        with self._current_lock:
            self._current = proc
        try:
            assert proc.stdout is not None
            for raw in proc.stdout:
                line = raw.rstrip("\r\n")
                tail.append(line)
                if sink is not None:
                    sink(line)
            code = proc.wait()
        finally:
            # sink raised, reap the child
            if proc.poll() is None:
                terminate_tree(proc, timeout=self.stop_timeout)
            with self._current_lock:
                self._current = None

        return code, list(tail)

def _unbuffered_env() -> dict[str, str]:
    env = os.environ.copy()
    env["PYTHONUNBUFFERED"] = "1"
    # host PYTHONPATH would leak packages into the environment
    env.pop("PYTHONPATH", None)
    return env
