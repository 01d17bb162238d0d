from dataclasses import dataclass, field
from typing import Callable
import threading

@dataclass(frozen=True)
class ProgressReport:
    # None means indeterminate
    fraction: float | None
    message: str

    def __post_init__(self):
        if self.fraction is not None and not 0.0 <= self.fraction <= 1.0:
            raise ValueError(f"Progress fraction must be in [0, 1], got {self.fraction}")

    @property
    def is_indeterminate(self) -> bool:
        return self.fraction is None

OutputSink = Callable[[str], None]
ProgressSink = Callable[[ProgressReport], None]

def _discard(_) -> None:
    return None

@dataclass
class InstallContext:
    """
    Everything an install/launch operation needs from its caller. Passed explicitly
    into every operation instead of living in module state.
    """
    library_dir: str
    models_dir: str
    # console lines, forwarded verbatim
    output: OutputSink = _discard
    progress: ProgressSink = _discard
    cancel: threading.Event = field(default_factory=threading.Event)

    def report(self, fraction: float | None, message: str) -> None:
        self.progress(ProgressReport(fraction, message))

    def cancelled(self) -> bool:
        return self.cancel.is_set()
