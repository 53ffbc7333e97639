"""Kinds whose only health signal is that the object exists."""

from __future__ import annotations

from kubeconverge.resources.base import UNUSUAL_FAILURE_MESSAGE, KubernetesResource, register_kind


class ExistenceResource(KubernetesResource):
    """Succeeds once the object is observed; never fails."""

    TIMEOUT = 30

    def deploy_succeeded(self) -> bool:
        return self.exists

    def deploy_failed(self) -> bool:
        return False

    @property
    def timeout_message(self) -> str:
        return UNUSUAL_FAILURE_MESSAGE


@register_kind
class ConfigMap(ExistenceResource):
    KIND = "ConfigMap"

    @property
    def status(self) -> str:
        return "Available" if self.exists else "Not Found"


@register_kind
class Secret(ExistenceResource):
    KIND = "Secret"
    SENSITIVE_TEMPLATE_CONTENT = True

    @property
    def status(self) -> str:
        return "Available" if self.exists else "Not Found"


@register_kind
class Ingress(ExistenceResource):
    KIND = "Ingress"

    @property
    def status(self) -> str:
        return "Created" if self.exists else "Not Found"


@register_kind
class NetworkPolicy(ExistenceResource):
    KIND = "NetworkPolicy"

    @property
    def status(self) -> str:
        return "Created" if self.exists else "Not Found"


@register_kind
class CronJob(ExistenceResource):
    KIND = "CronJob"


@register_kind
class Node(ExistenceResource):
    KIND = "Node"
    GLOBAL = True
