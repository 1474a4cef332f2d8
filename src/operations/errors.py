"""Error taxonomy for the operation engine."""


class OrchestratorError(Exception):
    """Base class for operation engine errors."""


class InputError(OrchestratorError):
    """Rejected request: unknown type, app, environment or resume step.

    Raised synchronously; no operation is created.
    """


class PreflightError(OrchestratorError):
    """Setup before spawning failed (secrets, checkout, build step)."""


class ExecutionError(OrchestratorError):
    """The operation's process failed to spawn or exited non-zero."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class ProcessTimeout(ExecutionError):
    """The operation's process exceeded its timeout and was killed."""


class OperationCancelled(OrchestratorError):
    """A cancel was requested while the operation was running."""
