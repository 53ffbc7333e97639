"""Per-kind rollout models and resource construction.

Importing this package registers every known kind. Build resources from
parsed manifests with :func:`build_resource`::

    from kubeconverge.resources import build_resource

    resource = build_resource("my-app", "prod-east", manifest)
"""

from __future__ import annotations

from typing import Any

from structlog.typing import FilteringBoundLogger

from kubeconverge.resources.base import (
    KubernetesResource,
    ObservationCache,
    class_for_kind,
    register_kind,
    registered_kinds,
    validate_essentials,
)
from kubeconverge.resources.custom_resource import CustomResource, CustomResourceDefinition
from kubeconverge.resources.daemon_set import DaemonSet
from kubeconverge.resources.deployment import Deployment
from kubeconverge.resources.hpa import HorizontalPodAutoscaler
from kubeconverge.resources.job import Job
from kubeconverge.resources.pod import Pod
from kubeconverge.resources.policy import PodDisruptionBudget, ResourceQuota
from kubeconverge.resources.replica_set import ReplicaSet
from kubeconverge.resources.service import Service
from kubeconverge.resources.simple import ConfigMap, CronJob, Ingress, NetworkPolicy, Node, Secret
from kubeconverge.resources.stateful_set import StatefulSet
from kubeconverge.resources.storage import PersistentVolumeClaim, StorageClass

__all__ = [
    "ConfigMap",
    "CronJob",
    "CustomResource",
    "CustomResourceDefinition",
    "DaemonSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "Ingress",
    "Job",
    "KubernetesResource",
    "NetworkPolicy",
    "Node",
    "ObservationCache",
    "PersistentVolumeClaim",
    "Pod",
    "PodDisruptionBudget",
    "ReplicaSet",
    "ResourceQuota",
    "Secret",
    "Service",
    "StatefulSet",
    "StorageClass",
    "build_resource",
    "class_for_kind",
    "crds_by_kind",
    "register_kind",
    "registered_kinds",
]


def crds_by_kind(crds: list[CustomResourceDefinition]) -> dict[str, CustomResourceDefinition]:
    """Index CRDs by the instance kind they define."""
    return {crd.instance_kind: crd for crd in crds if crd.instance_kind}


def build_resource(
    namespace: str,
    context: str,
    definition: dict[str, Any],
    logger: FilteringBoundLogger | None = None,
    timeout_override: int | None = None,
    crd: CustomResourceDefinition | None = None,
) -> KubernetesResource:
    """Construct the resource model for one manifest.

    Registered kinds get their own class. An unregistered kind becomes a
    :class:`CustomResource` when *crd* describes it, and the generic
    :class:`KubernetesResource` otherwise.

    Raises:
        InvalidTemplateError: if *definition* lacks ``kind`` or a name.
    """
    validate_essentials(definition)
    cls = class_for_kind(str(definition["kind"]))
    if cls is KubernetesResource and crd is not None:
        return CustomResource(namespace, context, definition, logger, timeout_override=timeout_override, crd=crd)
    return cls(namespace, context, definition, logger, timeout_override=timeout_override)
