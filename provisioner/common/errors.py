class MissingResourceError(Exception):
    """Exception raised when a requested resource is not found.

    e.g. a package name that is not in the registry.
    """

    def __init__(self, message):
        super().__init__(message)
        self.message = message

class ProvisionerError(Exception):
    """Base exception with context"""
    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self):
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{super().__str__()} ({context_str})"
        return super().__str__()

class UnsupportedBackend(ProvisionerError):
    """The requested compute backend is not valid for this package."""

class StepFailed(ProvisionerError):
    """An install step exited non-zero. Remaining steps were not run."""

    def __init__(self, message: str, step_index: int, output_tail: list[str], **context):
        super().__init__(message, step_index=step_index, **context)
        self.step_index = step_index
        self.output_tail = output_tail

class InstallCancelled(ProvisionerError):
    """Install was cancelled before or during a step."""

class InvalidExternalConfig(ProvisionerError):
    """The package's native config has content we refuse to overwrite."""

class ConfigIOFailure(ProvisionerError):
    """The package's native config could not be read or written."""

class ProcessLaunchFailed(ProvisionerError):
    """Entrypoint is missing or the OS refused to spawn the process."""
