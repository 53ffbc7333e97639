"""Watch state and report data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from kubeconverge.errors import FAILURE_EXIT_CODE, SUCCESS_EXIT_CODE, TIMEOUT_EXIT_CODE


class ResourceState(StrEnum):
    """Lifecycle of a watched resource. Terminal states are absorbing."""

    UNKNOWN = "unknown"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (ResourceState.SUCCEEDED, ResourceState.FAILED, ResourceState.TIMED_OUT)


@dataclass(frozen=True)
class ResourceOutcome:
    """Verdict for a single resource."""

    resource_id: str
    state: ResourceState
    elapsed_seconds: float
    debug_message: str = ""
    status: str = ""


@dataclass
class WatchReport:
    """Aggregate outcome of one watch loop run.

    Any failure selects the failure exit code, even when other resources
    timed out.
    """

    operation: str = "deploy"
    succeeded: list[ResourceOutcome] = field(default_factory=list)
    failed: list[ResourceOutcome] = field(default_factory=list)
    timed_out: list[ResourceOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed and not self.timed_out

    @property
    def exit_code(self) -> int:
        if self.failed:
            return FAILURE_EXIT_CODE
        if self.timed_out:
            return TIMEOUT_EXIT_CODE
        return SUCCESS_EXIT_CODE

    def ids(self, state: ResourceState) -> list[str]:
        bucket = {
            ResourceState.SUCCEEDED: self.succeeded,
            ResourceState.FAILED: self.failed,
            ResourceState.TIMED_OUT: self.timed_out,
        }.get(state, [])
        return [outcome.resource_id for outcome in bucket]

    @property
    def debug_messages(self) -> list[str]:
        return [o.debug_message for o in (*self.failed, *self.timed_out) if o.debug_message]

    def summary_lines(self) -> list[str]:
        """Human-readable summary, one entry per non-empty bucket."""
        lines: list[str] = []
        if self.succeeded:
            lines.append(f"{len(self.succeeded)} resource(s) succeeded")
        if self.failed:
            lines.append(f"{len(self.failed)} resource(s) failed to {self.operation}")
        if self.timed_out:
            lines.append(f"{len(self.timed_out)} resource(s) timed out")
        return lines
