import os
import subprocess
import sys
import threading
from typing import Callable, Iterable

from loguru import logger

from provisioner.common.errors import ProcessLaunchFailed
from provisioner.common.progress import OutputSink
from provisioner.process.matchers import ReadyMatcher, never
from provisioner.process.tree import terminate_tree

logger = logger.bind(name="Process Supervisor")

ExitCallback = Callable[[int], None]
ReadyCallback = Callable[[str], None]

class ProcessHandle:
    """
    A launched service. Output, ready and exit notifications are all delivered from a
    single pump thread, so they never interleave or repeat.
    """

    def __init__(
        self,
        output_sink: OutputSink,
        on_exit: ExitCallback | None = None,
        ready_matcher: ReadyMatcher = never,
        on_ready: ReadyCallback | None = None,
        proc: subprocess.Popen | None = None,
        name: str = ""
    ):
        self.output_sink = output_sink
        self.on_exit = on_exit
        self.ready_matcher = ready_matcher
        self.on_ready = on_ready
        self.proc = proc
        self.name = name

        self.ready = threading.Event()
        self.exited = threading.Event()
        self.exit_code: int | None = None
        self._url: str | None = None
        self._lock = threading.Lock()
        self._pump_thread: threading.Thread | None = None

    @property
    def pid(self) -> int | None:
        return self.proc.pid if self.proc is not None else None

    @property
    def url(self) -> str | None:
        return self._url

    def outcome(self) -> str:
        """One of "starting", "ready", "exited_without_ready", "exited_after_ready"."""
        if self.exited.is_set():
            return "exited_after_ready" if self.ready.is_set() else "exited_without_ready"
        return "ready" if self.ready.is_set() else "starting"

    def is_running(self) -> bool:
        return not self.exited.is_set()

    def feed(self, line: str) -> None:
        """Handles one line of process output."""
        try:
            self.output_sink(line)
        except Exception as e:
            logger.opt(exception=e).error("Output sink failed", extra={"handle": self.name})

        if self.ready.is_set():
            return
        try:
            endpoint = self.ready_matcher(line)
        except Exception as e:
            logger.opt(exception=e).error("Ready matcher failed", extra={"handle": self.name})
            return
        if endpoint:
            self._mark_ready(endpoint)

    def finish(self, exit_code: int) -> None:
        with self._lock:
            if self.exited.is_set():
                return
            self.exit_code = exit_code
            self.exited.set()

        logger.info("Process exited", extra={"handle": self.name, "exit_code": exit_code, "was_ready": self.ready.is_set()})
        if self.on_exit is not None:
            try:
                self.on_exit(exit_code)
            except Exception as e:
                logger.opt(exception=e).error("Exit callback failed", extra={"handle": self.name})

    def pump(self, lines: Iterable[str], wait: Callable[[], int]) -> None:
        """Feeds every line, then reports the exit code returned by wait."""
        code = -1
        try:
            for raw in lines:
                self.feed(raw.rstrip("\r\n"))
        except Exception as e:
            logger.opt(exception=e).error("Error reading process output", extra={"handle": self.name})
        finally:
            try:
                code = wait()
            finally:
                self.finish(code)

    def wait(self, timeout: float | None = None) -> int | None:
        self.exited.wait(timeout)
        return self.exit_code

    def stop(self, timeout: float = 5.0) -> None:
        if self.proc is None or self.exited.is_set():
            return
        logger.info("Stopping process", extra={"handle": self.name, "pid": self.proc.pid})
        terminate_tree(self.proc, timeout=timeout)

    def _mark_ready(self, endpoint: str) -> None:
        with self._lock:
            if self._url is not None:
                return
            self._url = endpoint
            self.ready.set()

        logger.info("Service is ready", extra={"handle": self.name, "url": endpoint})
        if self.on_ready is not None:
            try:
                self.on_ready(endpoint)
            except Exception as e:
                logger.opt(exception=e).error("Ready callback failed", extra={"handle": self.name})

    def _start_pump(self) -> None:
        assert self.proc is not None and self.proc.stdout is not None
        self._pump_thread = threading.Thread(
            target=self.pump,
            args=(self.proc.stdout, self.proc.wait),
            name=f"pump-{self.name}",
            daemon=True
        )
        self._pump_thread.start()

class ProcessSupervisor:
    """
    Launches package entrypoints as detached processes and keeps track of them.
    """

    def __init__(self, stop_timeout: float = 5.0):
        self.stop_timeout = stop_timeout
        self.handles: list[ProcessHandle] = []
        self._lock = threading.Lock()

    def launch(
        self,
        entrypoint: str,
        args: list[str],
        install_root: str,
        output_sink: OutputSink,
        on_exit: ExitCallback | None = None,
        ready_matcher: ReadyMatcher = never,
        on_ready: ReadyCallback | None = None,
        python: str | None = None,
        name: str = ""
    ) -> ProcessHandle:
        """
        Runs `python <install_root>/<entrypoint> <args...>` with the install root as cwd.

        Raises:
            ProcessLaunchFailed: entrypoint is missing or the process could not be spawned
        """
        script = os.path.join(install_root, entrypoint)
        if not os.path.isfile(script):
            raise ProcessLaunchFailed("Entrypoint not found", path=script)

        cmd = [python or sys.executable, "-u", script, *args]
        logger.info("Launching process", extra={"handle": name, "cmd": cmd})

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=install_root,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env={**os.environ, "PYTHONUNBUFFERED": "1"},
                **_detached_kwargs()
            )
        except OSError as e:
            raise ProcessLaunchFailed(f"Failed to spawn process: {e}", path=script) from e

        handle = ProcessHandle(
            output_sink=output_sink,
            on_exit=on_exit,
            ready_matcher=ready_matcher,
            on_ready=on_ready,
            proc=proc,
            name=name or os.path.basename(install_root)
        )
        with self._lock:
            self.handles = [h for h in self.handles if h.is_running()]
            self.handles.append(handle)
        handle._start_pump()
        return handle

    def shutdown(self) -> None:
        """Stops every process that is still running."""
        with self._lock:
            running = [h for h in self.handles if h.is_running()]
        for handle in running:
            handle.stop(self.stop_timeout)

def _detached_kwargs() -> dict:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}
