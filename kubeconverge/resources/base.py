"""Resource base class and kind registry.

Every Kubernetes kind the watch loop understands is a subclass of
:class:`KubernetesResource` registered with :func:`register_kind`. A
subclass MUST define:

    KIND               -- the ``kind`` string it handles, e.g. "Deployment"
    TIMEOUT            -- default seconds before the rollout is timed out

and MAY define:

    KUBECTL_RESOURCE_TYPE      -- name passed to ``kubectl get`` when it
                                  differs from KIND
    SYNC_DEPENDENCIES          -- kinds pre-fetched before a sync pass
    SENSITIVE_TEMPLATE_CONTENT -- never log fetched output or templates
    GLOBAL                     -- cluster-scoped, fetched without a namespace

Subclasses implement the three rollout predicates over ``instance_data``:

    deploy_succeeded() -- the resource converged
    deploy_failed()    -- the resource will not converge without intervention
    deploy_timed_out() -- neither, and its deadline has passed

The public :meth:`succeeded`, :meth:`failed` and :meth:`timed_out` wrap them
and return False until the resource has been synced at least once.
Unregistered kinds resolve to :class:`KubernetesResource` itself, which
succeeds once the object is observed to exist and never fails.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar, Protocol, TypeVar, runtime_checkable

from structlog.typing import FilteringBoundLogger

from kubeconverge.cluster.kubectl import Kubectl
from kubeconverge.errors import DurationParseError, InvalidTemplateError, ResourceNotFoundError
from kubeconverge.models.watch import ResourceState
from kubeconverge.observability.logging import SUPPRESSED_OUTPUT, get_logger, redact_output
from kubeconverge.resources.events import go_template_for, parse_events
from kubeconverge.utils.data import dig
from kubeconverge.utils.duration import parse_duration

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ANNOTATION_PREFIX: str = "kubeconverge.io"


def annotation_key(suffix: str) -> str:
    """Return the fully-qualified annotation name for *suffix*."""
    return f"{ANNOTATION_PREFIX}/{suffix}"


TIMEOUT_OVERRIDE_ANNOTATION: str = annotation_key("timeout-override")
_MAX_TIMEOUT_OVERRIDE_S: int = 24 * 60 * 60
_PRETTY_ID_WIDTH: int = 50

STANDARD_TIMEOUT_MESSAGE: str = (
    "Kubernetes will keep trying to roll this resource out, but it is now considered unlikely to succeed.\n"
    "If you believe it will succeed, run the command again to keep monitoring the rollout."
)

UNUSUAL_FAILURE_MESSAGE: str = (
    "It is very unusual for this resource type to fail to deploy. Please try the deploy again.\n"
    "If that subsequent deploy also fails, contact your cluster administrator."
)

GAVE_UP: str = "gave_up"

# Events older than the rollout start minus this margin are not reported.
EVENT_LOOKBACK_S: int = 5
LOG_LINE_COUNT: int = 250
DEBUG_INFO_NOT_FOUND_MESSAGE: str = "None found. Please check your usual logging service."
DEBUG_INFO_DISABLED_MESSAGE: str = "collection is disabled."


@runtime_checkable
class ObservationCache(Protocol):
    """Minimal interface a resource needs from the observation cache."""

    def list_all(self, kind: str, selector: Mapping[str, str] | None = None) -> list[dict[str, Any]]: ...

    def get_instance(self, kind: str, name: str, *, raise_if_not_found: bool = False) -> dict[str, Any]: ...

    def clear(self) -> None: ...


# ---------------------------------------------------------------------------
# Base resource
# ---------------------------------------------------------------------------


class KubernetesResource:
    """One desired manifest paired with its most recently observed state."""

    KIND: ClassVar[str] = ""
    KUBECTL_RESOURCE_TYPE: ClassVar[str] = ""
    TIMEOUT: ClassVar[int] = 5 * 60
    SYNC_DEPENDENCIES: ClassVar[tuple[str, ...]] = ()
    SENSITIVE_TEMPLATE_CONTENT: ClassVar[bool] = False
    GLOBAL: ClassVar[bool] = False

    def __init__(
        self,
        namespace: str,
        context: str,
        definition: dict[str, Any],
        logger: FilteringBoundLogger | None = None,
        *,
        timeout_override: int | None = None,
        parent: str | None = None,
        deploy_started_at: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.definition = definition
        self.kind: str = str(definition.get("kind") or self.KIND)
        metadata = definition.get("metadata") or {}
        self.name: str = str(metadata.get("name") or metadata.get("generateName") or "")
        self.namespace = "" if self.GLOBAL else namespace
        self.context = context
        self.parent = parent
        self.deploy_started_at = deploy_started_at
        self.disappeared = False
        self.global_timeout_exceeded = False
        self.validation_errors: list[str] = []
        self._clock = clock
        self._explicit_timeout_override = timeout_override
        self._instance_data: dict[str, Any] = {}
        self._synced = False
        self._unknown_kind_warned = False
        self.debug_events: dict[str, list[str]] | None = None
        self.debug_logs: dict[str, list[str]] | None = None
        self._debug_info_synced = False
        self._log = (logger or get_logger("resources")).bind(resource=self.id)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return f"{self.kind}/{self.name}"

    @property
    def kubectl_resource_type(self) -> str:
        return self.KUBECTL_RESOURCE_TYPE or self.kind

    @property
    def annotations(self) -> dict[str, str]:
        return dict(dig(self.definition, "metadata", "annotations", default={}))

    def annotation_value(self, suffix: str) -> str | None:
        value = self.annotations.get(annotation_key(suffix))
        return None if value is None else str(value)

    @property
    def sensitive_template_content(self) -> bool:
        return self.SENSITIVE_TEMPLATE_CONTENT

    # ------------------------------------------------------------------
    # Observed state
    # ------------------------------------------------------------------

    @property
    def instance_data(self) -> dict[str, Any]:
        return self._instance_data

    @property
    def synced(self) -> bool:
        return self._synced

    @property
    def exists(self) -> bool:
        return bool(self._instance_data)

    def sync(self, cache: ObservationCache) -> None:
        """Refresh ``instance_data`` from *cache* and re-derive child state."""
        try:
            data = cache.get_instance(self.kubectl_resource_type, self.name, raise_if_not_found=True)
        except ResourceNotFoundError:
            self.disappeared = self.deploy_started and self.exists
            data = {}
        self.sync_with(data, cache)

    def sync_with(self, instance_data: dict[str, Any], cache: ObservationCache) -> None:
        """Replace ``instance_data`` wholesale with an already-fetched instance."""
        self._instance_data = instance_data or {}
        self._synced = True
        self.after_sync(cache)

    def after_sync(self, cache: ObservationCache) -> None:
        """Hook for kinds that derive child resources from the cache."""

    @property
    def current_generation(self) -> Any:
        if not self.exists:
            return -1
        return dig(self._instance_data, "metadata", "generation")

    @property
    def observed_generation(self) -> Any:
        if not self.exists:
            return -2
        return dig(self._instance_data, "status", "observedGeneration")

    def stale_status(self) -> bool:
        """True while the controller has not reacted to the latest spec."""
        return bool(self.observed_generation != self.current_generation)

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    @property
    def deploy_started(self) -> bool:
        return self.deploy_started_at is not None

    def mark_started(self, at: float | None = None, clock: Callable[[], float] | None = None) -> None:
        if clock is not None:
            self._clock = clock
        self.deploy_started_at = self._clock() if at is None else at

    def elapsed(self) -> float:
        if self.deploy_started_at is None:
            return 0.0
        return self._clock() - self.deploy_started_at

    @property
    def timeout_override(self) -> int | None:
        if self._explicit_timeout_override is not None:
            return self._explicit_timeout_override
        raw = self.annotations.get(TIMEOUT_OVERRIDE_ANNOTATION)
        if raw is None:
            return None
        try:
            seconds = parse_duration(raw)
        except DurationParseError:
            return None
        return seconds if 0 < seconds <= _MAX_TIMEOUT_OVERRIDE_S else None

    @property
    def timeout(self) -> int:
        override = self.timeout_override
        return override if override is not None else self.TIMEOUT

    @property
    def pretty_timeout_type(self) -> str:
        if self.timeout_override is not None:
            return f"timeout override: {self.timeout}s"
        return f"timeout: {self.timeout}s"

    # ------------------------------------------------------------------
    # Rollout predicates
    # ------------------------------------------------------------------

    def deploy_succeeded(self) -> bool:
        if not self._unknown_kind_warned:
            self._log.warning(
                "unknown_kind_assumed_deployed",
                kind=self.kind,
                detail=f"Don't know how to monitor resources of type {self.kind}. "
                f"Assuming {self.id} deployed successfully.",
            )
            self._unknown_kind_warned = True
        return self.exists

    def deploy_failed(self) -> bool:
        return False

    def deploy_timed_out(self) -> bool:
        if not self.deploy_started:
            return False
        return not self.deploy_succeeded() and not self.deploy_failed() and self.elapsed() > self.timeout

    def succeeded(self) -> bool:
        return self._synced and self.deploy_succeeded()

    def failed(self) -> bool:
        return self._synced and self.deploy_failed()

    def timed_out(self) -> bool:
        return self._synced and self.deploy_timed_out()

    @property
    def state(self) -> ResourceState:
        if not self._synced:
            return ResourceState.UNKNOWN
        if self.deploy_failed():
            return ResourceState.FAILED
        if self.deploy_succeeded():
            return ResourceState.SUCCEEDED
        if self.global_timeout_exceeded or self.deploy_timed_out():
            return ResourceState.TIMED_OUT
        return ResourceState.PENDING

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @property
    def status(self) -> str:
        return "Exists" if self.exists else "Not Found"

    @property
    def failure_message(self) -> str:
        return ""

    @property
    def timeout_message(self) -> str:
        return STANDARD_TIMEOUT_MESSAGE

    @property
    def pretty_status(self) -> str:
        padding = " " * max(_PRETTY_ID_WIDTH - len(self.id), 1)
        return f"{self.id}{padding}{self.status}"

    def debug_message(self, cause: str | None = None, global_timeout: float | None = None) -> str:
        """Summarise why the resource did not succeed."""
        if cause == GAVE_UP:
            limit = f"{global_timeout:.0f}s" if global_timeout is not None else "the global deadline"
            header = f"{self.id}: GLOBAL WATCH TIMEOUT ({limit})"
            detail = f"If you expected it to take longer than {limit}, increase the global timeout."
        elif self.failed():
            header = f"{self.id}: FAILED"
            detail = self.failure_message
        elif self.timed_out():
            header = f"{self.id}: TIMED OUT ({self.pretty_timeout_type})"
            detail = self.timeout_message
        else:
            header = f"{self.id}: MONITORING ERROR"
            detail = f"Asked for debug information while the resource was {self.state.value}."

        lines = [header]
        lines.extend(f"  {line}" for line in detail.strip().splitlines() if line.strip())
        lines.append(f"  - Final status: {self.status}")
        if self._debug_info_synced:
            lines.extend(self._event_lines())
            lines.extend(self._log_lines())
        return "\n".join(lines)

    def _event_lines(self) -> list[str]:
        if self.debug_events is None:
            return [f"  - Events: {DEBUG_INFO_DISABLED_MESSAGE}"]
        if not self.debug_events:
            return [f"  - Events: {DEBUG_INFO_NOT_FOUND_MESSAGE}"]
        lines = ["  - Events (common success events excluded):"]
        for identifier, events in self.debug_events.items():
            lines.extend(
                f"      [{identifier}]\t{redact_output(event, self.sensitive_template_content)}" for event in events
            )
        return lines

    def _log_lines(self) -> list[str]:
        if not self.print_debug_logs:
            return []
        if self.debug_logs is None:
            return [f"  - Logs: {DEBUG_INFO_DISABLED_MESSAGE}"]
        if not any(self.debug_logs.values()):
            return [f"  - Logs: {DEBUG_INFO_NOT_FOUND_MESSAGE}"]
        lines: list[str] = []
        for container, log_lines in sorted(self.debug_logs.items(), key=lambda item: len(item[1])):
            if not log_lines:
                lines.append(f"  - Logs from container '{container}': {DEBUG_INFO_NOT_FOUND_MESSAGE}")
                continue
            truncated = f" (last {LOG_LINE_COUNT} lines shown)" if len(log_lines) >= LOG_LINE_COUNT else ""
            lines.append(f"  - Logs from container '{container}'{truncated}:")
            if self.sensitive_template_content:
                lines.append(f"      {SUPPRESSED_OUTPUT}")
            else:
                lines.extend(f"      {line}" for line in log_lines)
        return lines

    # ------------------------------------------------------------------
    # Debug info
    # ------------------------------------------------------------------

    @property
    def print_debug_logs(self) -> bool:
        """True for kinds whose containers can explain a bad rollout."""
        return False

    def sync_debug_info(self, kubectl: Kubectl, *, events: bool = True, logs: bool = True) -> None:
        """Fetch recent events and container logs for :meth:`debug_message`.

        Disabled collectors leave their attribute as None so the message
        can say so instead of claiming nothing was found.
        """
        self.debug_events = self.fetch_events(kubectl) if events else None
        self.debug_logs = self.fetch_debug_logs(kubectl) if logs and self.print_debug_logs else None
        self._debug_info_synced = True

    def started_wall_time(self) -> datetime:
        return datetime.now(UTC) - timedelta(seconds=self.elapsed())

    def fetch_events(self, kubectl: Kubectl) -> dict[str, list[str]]:
        """Return ``{id: ["Reason: message (N events)", ...]}`` for events seen during the rollout."""
        if not self.exists:
            return {}
        out, _err, ok = kubectl.run(
            "get",
            "events",
            output=f"go-template={go_template_for(self.kind, self.name)}",
            log_failure=False,
            use_namespace=not self.GLOBAL,
            output_is_sensitive=self.sensitive_template_content,
        )
        if not ok:
            return {}
        cutoff = self.started_wall_time() - timedelta(seconds=EVENT_LOOKBACK_S)
        recent = [str(event) for event in parse_events(out) if event.seen_since(cutoff)]
        return {self.id: recent} if recent else {}

    def fetch_debug_logs(self, kubectl: Kubectl) -> dict[str, list[str]]:
        return {}

    def fetch_container_logs(self, kubectl: Kubectl, containers: Iterable[str]) -> dict[str, list[str]]:
        """Return the last ``LOG_LINE_COUNT`` lines each container wrote since the rollout started."""
        target = f"{self.kubectl_resource_type.lower()}/{self.name}"
        since = self.started_wall_time().strftime("%Y-%m-%dT%H:%M:%SZ")
        logs: dict[str, list[str]] = {}
        for container in dict.fromkeys(containers):
            out, _err, ok = kubectl.run(
                "logs",
                target,
                f"--container={container}",
                f"--since-time={since}",
                f"--tail={LOG_LINE_COUNT}",
                log_failure=False,
                output_is_sensitive=self.sensitive_template_content,
            )
            logs[container] = out.splitlines() if ok else []
        return logs

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_definition(self) -> list[str]:
        """Check the manifest for errors that would make the rollout unwatchable."""
        errors: list[str] = []
        raw = self.annotations.get(TIMEOUT_OVERRIDE_ANNOTATION)
        if raw is not None:
            try:
                seconds = parse_duration(raw)
            except DurationParseError as exc:
                errors.append(f"{TIMEOUT_OVERRIDE_ANNOTATION} annotation is invalid: {exc}")
            else:
                if seconds <= 0:
                    errors.append(f"{TIMEOUT_OVERRIDE_ANNOTATION} annotation is invalid: value must be greater than 0")
                elif seconds > _MAX_TIMEOUT_OVERRIDE_S:
                    errors.append(f"{TIMEOUT_OVERRIDE_ANNOTATION} annotation is invalid: value must be less than 24h")
        self.validation_errors = errors
        return errors

    @property
    def validation_failed(self) -> bool:
        return bool(self.validation_errors)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_KIND_REGISTRY: dict[str, type[KubernetesResource]] = {}

R = TypeVar("R", bound=type[KubernetesResource])


def register_kind(cls: R) -> R:
    """Class decorator mapping ``cls.KIND`` (and its kubectl type) to *cls*."""
    if not cls.KIND:
        raise ValueError(f"{cls.__name__} must define KIND")
    _KIND_REGISTRY[cls.KIND] = cls
    if cls.KUBECTL_RESOURCE_TYPE:
        _KIND_REGISTRY[cls.KUBECTL_RESOURCE_TYPE] = cls
    return cls


def class_for_kind(kind: str) -> type[KubernetesResource]:
    """Return the registered class for *kind*, or the generic fallback."""
    return _KIND_REGISTRY.get(kind, KubernetesResource)


def registered_kinds() -> list[str]:
    return sorted({cls.KIND for cls in _KIND_REGISTRY.values()})


def validate_essentials(definition: Any, filename: str | None = None) -> None:
    """Raise :class:`InvalidTemplateError` if *definition* lacks kind or name."""
    if not isinstance(definition, dict):
        raise InvalidTemplateError("Template is not a mapping", filename=filename)

    kind = definition.get("kind")
    sensitive = class_for_kind(str(kind)).SENSITIVE_TEMPLATE_CONTENT if kind else False
    content = None if sensitive else json.dumps(definition, indent=2, sort_keys=True, default=str)

    if not kind:
        raise InvalidTemplateError("Template is missing required field 'kind'", content=content, filename=filename)
    metadata = definition.get("metadata") or {}
    if not (metadata.get("name") or metadata.get("generateName")):
        raise InvalidTemplateError(
            "Template is missing required field 'metadata.name' or 'metadata.generateName'",
            content=content,
            filename=filename,
        )
