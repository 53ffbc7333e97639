"""CustomResourceDefinitions and instances of the kinds they define."""

from __future__ import annotations

from typing import Any

from kubeconverge.errors import DurationParseError, RolloutConditionsError
from kubeconverge.resources.base import KubernetesResource, annotation_key, register_kind
from kubeconverge.resources.rollout_conditions import RolloutConditions
from kubeconverge.utils.data import dig, find_condition
from kubeconverge.utils.duration import parse_duration

ROLLOUT_CONDITIONS_SUFFIX: str = "instance-rollout-conditions"
ROLLOUT_CONDITIONS_ANNOTATION: str = annotation_key(ROLLOUT_CONDITIONS_SUFFIX)
INSTANCE_TIMEOUT_SUFFIX: str = "instance-timeout"

TIMEOUT_MESSAGE_DIFFERENT_GENERATIONS: str = (
    "This resource's status could not be used to determine rollout success because it is not up-to-date\n"
    "(.metadata.generation != .status.observedGeneration)."
)


@register_kind
class CustomResourceDefinition(KubernetesResource):
    """CRD: succeeds once the API server accepted the names it registers."""

    KIND = "CustomResourceDefinition"
    TIMEOUT = 2 * 60
    GLOBAL = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._rollout_conditions: RolloutConditions | None = None
        self._rollout_conditions_loaded = False

    @property
    def instance_kind(self) -> str:
        return str(dig(self.definition, "spec", "names", "kind", default=""))

    @property
    def group(self) -> str:
        return str(dig(self.definition, "spec", "group", default=""))

    @property
    def group_kind(self) -> str:
        return f"{self.group}/{self.instance_kind}"

    @property
    def timeout_for_instance(self) -> int | None:
        raw = self.annotation_value(INSTANCE_TIMEOUT_SUFFIX)
        if raw is None:
            return None
        try:
            return parse_duration(raw)
        except DurationParseError:
            return None

    @property
    def rollout_conditions(self) -> RolloutConditions | None:
        """Parsed conditions, or None when absent or unparseable."""
        if not self._rollout_conditions_loaded:
            self._rollout_conditions_loaded = True
            raw = self.annotation_value(ROLLOUT_CONDITIONS_SUFFIX)
            if raw is not None:
                try:
                    self._rollout_conditions = RolloutConditions.from_annotation(raw)
                except RolloutConditionsError:
                    self._rollout_conditions = None
        return self._rollout_conditions

    def validate_rollout_conditions(self) -> None:
        """Raise :class:`RolloutConditionsError` if the annotation is malformed."""
        raw = self.annotation_value(ROLLOUT_CONDITIONS_SUFFIX)
        if raw is not None:
            RolloutConditions.from_annotation(raw).validate()

    def _names_accepted(self) -> dict[str, Any]:
        return find_condition(self.instance_data, "NamesAccepted") or {}

    def deploy_succeeded(self) -> bool:
        return self._names_accepted().get("status") == "True"

    def deploy_failed(self) -> bool:
        return self._names_accepted().get("status") == "False"

    @property
    def status(self) -> str:
        if not self.exists:
            return super().status
        if self.deploy_succeeded():
            return "Names accepted"
        condition = self._names_accepted()
        return f"{condition.get('reason')} ({condition.get('message')})"

    @property
    def timeout_message(self) -> str:
        return "The names this CRD is attempting to register were neither accepted nor rejected in time"

    def validate_definition(self) -> list[str]:
        errors = super().validate_definition()
        try:
            self.validate_rollout_conditions()
        except RolloutConditionsError as exc:
            errors.append(f"Annotation {ROLLOUT_CONDITIONS_ANNOTATION} on {self.name} is invalid: {exc}")
        self.validation_errors = errors
        return errors


class CustomResource(KubernetesResource):
    """An instance of a kind defined by a known CRD.

    Without rollout conditions on the CRD it behaves like any unknown kind.
    Not registered: built explicitly when a matching CRD is supplied.
    """

    def __init__(self, *args: Any, crd: CustomResourceDefinition, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.crd = crd

    @property
    def kubectl_resource_type(self) -> str:
        return f"{self.kind}.{self.crd.group}" if self.crd.group else self.kind

    @property
    def rollout_conditions(self) -> RolloutConditions | None:
        return self.crd.rollout_conditions

    @property
    def timeout(self) -> int:
        override = self.timeout_override
        if override is not None:
            return override
        instance_timeout = self.crd.timeout_for_instance
        return instance_timeout if instance_timeout is not None else self.TIMEOUT

    def deploy_succeeded(self) -> bool:
        conditions = self.rollout_conditions
        if conditions is None:
            return super().deploy_succeeded()
        if self.stale_status():
            return False
        return conditions.rollout_successful(self.instance_data)

    def deploy_failed(self) -> bool:
        conditions = self.rollout_conditions
        if conditions is None:
            return super().deploy_failed()
        if self.stale_status():
            return False
        return conditions.rollout_failed(self.instance_data)

    @property
    def failure_message(self) -> str:
        conditions = self.rollout_conditions
        if conditions is None:
            return super().failure_message
        return "\n".join(conditions.failure_messages(self.instance_data))

    @property
    def timeout_message(self) -> str:
        if self.rollout_conditions is not None and self.stale_status():
            return TIMEOUT_MESSAGE_DIFFERENT_GENERATIONS
        return super().timeout_message

    @property
    def status(self) -> str:
        if not self.exists or self.rollout_conditions is None:
            return super().status
        if self.deploy_succeeded():
            return "Healthy"
        if self.deploy_failed():
            return "Unhealthy"
        return "Unknown"

    def validate_definition(self) -> list[str]:
        errors = super().validate_definition()
        try:
            self.crd.validate_rollout_conditions()
        except RolloutConditionsError as exc:
            errors.append(
                "The CRD that specifies this resource is using invalid rollout conditions. "
                "Watching cannot continue until those rollout conditions are fixed.\n"
                f"Rollout conditions can be found on the CRD that defines this resource ({self.crd.name}), "
                f"under the annotation {ROLLOUT_CONDITIONS_ANNOTATION}.\n"
                f"Validation failed with: {exc}"
            )
        self.validation_errors = errors
        return errors
