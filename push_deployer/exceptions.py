"""
Error taxonomy for the deployment pipeline.

Each error carries the process exit code the CLI reports for it and a short
category name recorded on the pipeline run.
"""

from typing import Optional

EXIT_SUCCESS = 0
EXIT_ABORTED = 1
EXIT_ROLLED_BACK = 2
EXIT_FATAL = 3
EXIT_RUN_IN_PROGRESS = 4
EXIT_INPUT_ERROR = 64


class DeployerError(Exception):
    """Base class for deployment errors."""

    exit_code: int = EXIT_ABORTED
    category: str = "error"

    def __init__(self, message: str, exit_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        # Exit status of the external command that failed, if any
        self.exit_status = exit_status


class InputError(DeployerError):
    """Missing or malformed revision identifier or configuration."""

    exit_code: int = EXIT_INPUT_ERROR
    category: str = "input_error"


class LocalFailure(DeployerError):
    """Sync, build or verification failed before shared state changed."""

    exit_code: int = EXIT_ABORTED
    category: str = "local_failure"


class PublishFailure(DeployerError):
    """Registry push failed after a successful build."""

    exit_code: int = EXIT_ABORTED
    category: str = "publish_failure"


class HealthFailure(DeployerError):
    """The rollout did not become healthy in time."""

    exit_code: int = EXIT_ROLLED_BACK
    category: str = "health_failure"


class FatalError(DeployerError):
    """Rollback cannot proceed; an operator has to intervene."""

    exit_code: int = EXIT_FATAL
    category: str = "fatal"


class RunInProgressError(DeployerError):
    """Another run currently holds the workload lock."""

    exit_code: int = EXIT_RUN_IN_PROGRESS
    category: str = "run_in_progress"


class CommandTimeout(DeployerError):
    """An external call exceeded its time bound."""

    category: str = "timeout"

    def __init__(self, command: str, timeout: float):
        super().__init__(f"{command} timed out after {timeout:g}s")
        self.command = command
        self.timeout = timeout


class OrchestratorError(DeployerError):
    """The cluster control plane rejected or failed a request."""

    exit_code: int = EXIT_ABORTED
    category: str = "orchestrator_failure"
