from __future__ import annotations

from typing import Any

from kubeconverge.resources.base import KubernetesResource, register_kind
from kubeconverge.utils.data import find_condition

_RECOVERABLE_CONDITION_PREFIX: str = "FailedGet"


@register_kind
class HorizontalPodAutoscaler(KubernetesResource):
    """HPA: ScalingActive True (or scaling deliberately disabled).

    A False ScalingActive condition is a failure unless its reason starts
    with ``FailedGet``, which the autoscaler recovers from once metrics
    become available.
    """

    KIND = "HorizontalPodAutoscaler"
    KUBECTL_RESOURCE_TYPE = "hpa.v2.autoscaling"
    TIMEOUT = 3 * 60

    def _scaling_active(self) -> dict[str, Any]:
        return find_condition(self.instance_data, "ScalingActive") or {}

    def _able_to_scale(self) -> dict[str, Any]:
        return find_condition(self.instance_data, "AbleToScale") or {}

    def _scaling_disabled(self) -> bool:
        condition = self._scaling_active()
        return condition.get("status") == "False" and condition.get("reason") == "ScalingDisabled"

    def deploy_succeeded(self) -> bool:
        return self._scaling_active().get("status") == "True" or self._scaling_disabled()

    def deploy_failed(self) -> bool:
        if not self.exists or self._scaling_disabled():
            return False
        condition = self._scaling_active()
        return condition.get("status") == "False" and not str(condition.get("reason", "")).startswith(
            _RECOVERABLE_CONDITION_PREFIX
        )

    @property
    def status(self) -> str:
        if not self.exists:
            return super().status
        if self._scaling_disabled():
            return "ScalingDisabled"
        if self.deploy_succeeded():
            return "Configured"
        condition = self._scaling_active() or self._able_to_scale()
        return str(condition.get("reason", "Unknown")) if condition else "Unknown"

    @property
    def failure_message(self) -> str:
        condition = self._scaling_active() or self._able_to_scale()
        return str(condition.get("message", ""))

    @property
    def timeout_message(self) -> str:
        return self.failure_message or super().timeout_message
