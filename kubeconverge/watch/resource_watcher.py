"""Polling loop that drives resources to a terminal state.

One iteration syncs every pending resource through the
:class:`~kubeconverge.cache.SyncMediator`, evaluates ``failed`` then
``succeeded`` then ``timed_out`` on each, and retires those with a
verdict. The loop is single-threaded; parallelism lives inside
``sync_all``. It suspends only at the inter-poll sleep.

When given a :class:`~kubeconverge.cluster.kubectl.Kubectl`, the watcher
fetches recent events and container logs for every failed or timed-out
resource and folds them into its debug message.

Usage::

    watcher = ResourceWatcher(resources, mediator, timeout=600, kubectl=kubectl)
    report = watcher.run(delay_sync=3.0, reminder_interval=30.0)
    sys.exit(report.exit_code)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence

from structlog.typing import FilteringBoundLogger

from kubeconverge.cache.sync_mediator import SyncMediator
from kubeconverge.cluster.kubectl import Kubectl
from kubeconverge.errors import DeploymentTimeoutError, FatalDeploymentError
from kubeconverge.models.watch import ResourceOutcome, ResourceState, WatchReport
from kubeconverge.observability.logging import get_logger
from kubeconverge.observability.metrics import resource_duration_seconds, resources_pending
from kubeconverge.resources.base import GAVE_UP, KubernetesResource

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_DELAY_SYNC_S: float = 3.0
DEFAULT_REMINDER_INTERVAL_S: float = 30.0


class WatchState:
    """Disjoint buckets of watched resources.

    A resource is in exactly one bucket. Only pending resources can move,
    so terminal buckets are absorbing.
    """

    def __init__(self, resources: Sequence[KubernetesResource]) -> None:
        self.pending: list[KubernetesResource] = list(resources)
        self.buckets: dict[ResourceState, list[KubernetesResource]] = {
            ResourceState.SUCCEEDED: [],
            ResourceState.FAILED: [],
            ResourceState.TIMED_OUT: [],
        }

    def retire(self, resource: KubernetesResource, state: ResourceState) -> None:
        if not state.terminal:
            raise ValueError(f"Cannot retire {resource.id} into non-terminal state {state}")
        if not any(r is resource for r in self.pending):
            raise ValueError(f"{resource.id} is not pending")
        self.pending = [r for r in self.pending if r is not resource]
        self.buckets[state].append(resource)

    @property
    def done(self) -> bool:
        return not self.pending


class ResourceWatcher:
    """Watch a batch of resources until each succeeds, fails or times out."""

    def __init__(
        self,
        resources: Sequence[KubernetesResource],
        mediator: SyncMediator,
        *,
        operation_name: str = "deploy",
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        kubectl: Kubectl | None = None,
        fetch_events: bool = True,
        fetch_logs: bool = True,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self._resources = list(resources)
        self._mediator = mediator
        self._operation_name = operation_name
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._kubectl = kubectl
        self._fetch_events = fetch_events
        self._fetch_logs = fetch_logs
        self._log = logger or get_logger("watch.resource_watcher")
        self._last_sync: float | None = None

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def run(
        self,
        delay_sync: float = DEFAULT_DELAY_SYNC_S,
        reminder_interval: float = DEFAULT_REMINDER_INTERVAL_S,
        record_summary: bool = True,
        raise_on_failure: bool = False,
    ) -> WatchReport:
        """Poll until no resource is pending and return the report.

        Raises:
            FatalDeploymentError: if *raise_on_failure* and any resource failed.
            DeploymentTimeoutError: if *raise_on_failure* and any resource
                timed out while none failed.
        """
        started = self._clock()
        self._last_sync = None
        for resource in self._resources:
            resource.mark_started(at=started, clock=self._clock)

        state = WatchState(self._resources)
        report = WatchReport(operation=self._operation_name)
        last_reminder = started
        resources_pending.set(len(state.pending))

        while not state.done:
            if self._global_timeout_exceeded(started):
                self._give_up(state, report)
                break

            self._sleep_until_next_sync(delay_sync)
            self._mediator.sync_all(state.pending)

            retired = self._evaluate(state, report)
            resources_pending.set(len(state.pending))

            now = self._clock()
            if retired:
                self._report_retired(retired)
                if state.pending:
                    self._log.info("continuing_to_wait", pending=[r.id for r in state.pending])
                last_reminder = now
            elif state.pending and now - last_reminder >= reminder_interval:
                self._log.info("still_waiting", pending=[r.id for r in state.pending])
                last_reminder = now

        report.duration_seconds = self._clock() - started
        if record_summary:
            self._record_summary(report)
        if raise_on_failure:
            self._raise_for(report)
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _global_timeout_exceeded(self, started: float) -> bool:
        return self._timeout is not None and self._clock() - started >= self._timeout

    def _sleep_until_next_sync(self, delay_sync: float) -> None:
        now = self._clock()
        if self._last_sync is not None:
            remaining = delay_sync - (now - self._last_sync)
            if remaining > 0:
                self._sleep(remaining)
                now = self._clock()
        self._last_sync = now

    def _evaluate(
        self, state: WatchState, report: WatchReport
    ) -> list[tuple[KubernetesResource, ResourceState]]:
        """Retire every pending resource with a verdict, failed taking priority."""
        retired: list[tuple[KubernetesResource, ResourceState]] = []
        for resource in list(state.pending):
            if resource.failed():
                verdict = ResourceState.FAILED
            elif resource.succeeded():
                verdict = ResourceState.SUCCEEDED
            elif resource.timed_out():
                verdict = ResourceState.TIMED_OUT
            else:
                continue
            message = "" if verdict == ResourceState.SUCCEEDED else self._debug_message(resource)
            self._retire(state, report, resource, verdict, message)
            retired.append((resource, verdict))
        return retired

    def _give_up(self, state: WatchState, report: WatchReport) -> None:
        remaining = list(state.pending)
        for resource in remaining:
            resource.global_timeout_exceeded = True
            message = self._debug_message(resource, GAVE_UP)
            self._retire(state, report, resource, ResourceState.TIMED_OUT, message)
        resources_pending.set(0)
        self._log.warning(
            "global_timeout_exceeded",
            timeout_seconds=self._timeout,
            resources=[r.id for r in remaining],
        )

    def _debug_message(self, resource: KubernetesResource, cause: str | None = None) -> str:
        if self._kubectl is not None:
            resource.sync_debug_info(self._kubectl, events=self._fetch_events, logs=self._fetch_logs)
        return resource.debug_message(cause, self._timeout)

    def _retire(
        self,
        state: WatchState,
        report: WatchReport,
        resource: KubernetesResource,
        verdict: ResourceState,
        message: str,
    ) -> None:
        state.retire(resource, verdict)
        elapsed = resource.elapsed()
        outcome = ResourceOutcome(resource.id, verdict, elapsed, message, resource.pretty_status)
        {
            ResourceState.SUCCEEDED: report.succeeded,
            ResourceState.FAILED: report.failed,
            ResourceState.TIMED_OUT: report.timed_out,
        }[verdict].append(outcome)
        resource_duration_seconds.labels(kind=resource.kind, status=verdict.value).observe(elapsed)

    def _report_retired(self, retired: list[tuple[KubernetesResource, ResourceState]]) -> None:
        succeeded = [r.id for r, verdict in retired if verdict == ResourceState.SUCCEEDED]
        if succeeded:
            self._log.info("resources_succeeded", operation=self._operation_name, resources=succeeded)
        for resource, verdict in retired:
            if verdict == ResourceState.FAILED:
                self._log.error("resource_failed", resource=resource.id, status=resource.status)
            elif verdict == ResourceState.TIMED_OUT:
                self._log.warning("resource_timed_out", resource=resource.id, status=resource.status)

    def _record_summary(self, report: WatchReport) -> None:
        self._log.info(
            "watch_summary",
            operation=self._operation_name,
            success=report.success,
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            timed_out=len(report.timed_out),
            duration_seconds=round(report.duration_seconds, 1),
        )
        for outcome in report.failed:
            self._log.error("resource_failure_detail", resource=outcome.resource_id, detail=outcome.debug_message)
        for outcome in report.timed_out:
            self._log.warning("resource_timeout_detail", resource=outcome.resource_id, detail=outcome.debug_message)

    def _raise_for(self, report: WatchReport) -> None:
        if report.failed:
            ids = ", ".join(report.ids(ResourceState.FAILED))
            raise FatalDeploymentError(f"Failed to {self._operation_name} {len(report.failed)} resource(s): {ids}")
        if report.timed_out:
            ids = ", ".join(report.ids(ResourceState.TIMED_OUT))
            raise DeploymentTimeoutError(f"Timed out waiting for {len(report.timed_out)} resource(s): {ids}")
