"""Exception hierarchy for the ralph worker CLI.

Every error carries an optional ``hint``: a single remediation line the CLI
prints after the error message.
"""

from __future__ import annotations


class RalphError(Exception):
    """Base class for all errors surfaced to the user."""

    hint: str | None = None

    def __init__(self, message: str, *, hint: str | None = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint


# ---------------------------------------------------------------------------
# Container runtime
# ---------------------------------------------------------------------------


class ContainerRuntimeError(RalphError):
    """A ``docker`` invocation failed.

    Args:
        message: Human-readable summary.
        command: The argument vector that failed, if any.
        stderr: Raw engine output.
    """

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        stderr: str = '',
        hint: str | None = None,
    ):
        super().__init__(message, hint=hint)
        self.command = command or []
        self.stderr = stderr


class RuntimeNotFound(ContainerRuntimeError):
    """Image or container does not exist."""


class EngineUnavailable(ContainerRuntimeError):
    """The container engine cannot be reached."""

    hint = 'Is the Docker daemon running?'


class RuntimeConflict(ContainerRuntimeError):
    """The engine rejected the operation because of the current container state."""


# ---------------------------------------------------------------------------
# Project / task selection
# ---------------------------------------------------------------------------


class ProjectNotFound(RalphError):
    hint = "Run 'ralph init' first."


class ProjectConfigError(RalphError):
    """``.ralph/config.json`` exists but cannot be parsed."""


class TaskSelectionError(RalphError):
    """Task selector arguments are missing, malformed, or ambiguous."""


class DockerfileMissing(RalphError):
    """A build was requested but its Dockerfile does not exist."""

    def __init__(self, path: str, *, hint: str):
        super().__init__(f'Dockerfile not found: {path}', hint=hint)
        self.path = path


# ---------------------------------------------------------------------------
# Worker lifecycle
# ---------------------------------------------------------------------------


class LifecycleError(RalphError):
    pass


class AlreadyRunning(LifecycleError):
    def __init__(self, name: str):
        super().__init__(
            f'Container {name} is already running',
            hint='Stop it first, or use restart.',
        )
        self.name = name


class ImageMissing(LifecycleError):
    def __init__(self, image: str):
        super().__init__(f'Image not found: {image}', hint="Run 'ralph build' first.")
        self.image = image


class CredentialMissing(LifecycleError):
    def __init__(self, variable: str):
        super().__init__(f'{variable} environment variable is required')
        self.variable = variable


class WorkerNotFound(LifecycleError):
    def __init__(self, task_id: str):
        super().__init__(f'Container not found for task: {task_id}', hint="See 'ralph list'.")
        self.task_id = task_id


class WorkerNotRunning(LifecycleError):
    def __init__(self, name: str):
        super().__init__(f'Container is not running: {name}', hint='Check its output with ralph logs.')
        self.name = name


class TaskNotRecoverable(LifecycleError):
    """Restart could not rebuild the task a worker was started with."""
