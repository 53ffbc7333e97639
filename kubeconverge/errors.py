"""Exception hierarchy and process exit codes.

Fatal errors abort the whole operation and are never retried. Executor
errors stay inside the cache layer, which folds them into "absent" results;
only callers that explicitly ask for it see :class:`ResourceNotFoundError`.
"""

from __future__ import annotations

SUCCESS_EXIT_CODE: int = 0
FAILURE_EXIT_CODE: int = 1
TIMEOUT_EXIT_CODE: int = 70


class KubeConvergeError(Exception):
    """Base class for every error raised by kubeconverge."""


class FatalDeploymentError(KubeConvergeError):
    """A configuration, validation or rollout failure that ends the run."""


class DeploymentTimeoutError(FatalDeploymentError):
    """One or more resources did not reach a verdict before their deadline.

    Timeouts are inconclusive: the resources may still converge after the
    process exits, so callers map this to :data:`TIMEOUT_EXIT_CODE`.
    """


class InvalidTemplateError(FatalDeploymentError):
    """A manifest is missing fields required to build a resource."""

    def __init__(self, message: str, *, content: str | None = None, filename: str | None = None) -> None:
        super().__init__(message)
        self.content = content
        self.filename = filename


class KubectlError(KubeConvergeError):
    """A kubectl invocation failed in a way the caller must handle."""


class ResourceNotFoundError(KubectlError):
    """kubectl reported that the requested object does not exist."""


class RolloutConditionsError(FatalDeploymentError):
    """Custom rollout conditions could not be parsed."""


class DurationParseError(ValueError):
    """A duration string could not be parsed."""


def exit_code_for(error: BaseException | None) -> int:
    """Map the outcome of a run to the process exit code."""
    if error is None:
        return SUCCESS_EXIT_CODE
    if isinstance(error, DeploymentTimeoutError):
        return TIMEOUT_EXIT_CODE
    return FAILURE_EXIT_CODE
