"""Shared behaviour for workloads that own pods."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from kubeconverge.cluster.kubectl import Kubectl
from kubeconverge.resources.base import KubernetesResource, ObservationCache
from kubeconverge.resources.pod import Pod
from kubeconverge.utils.data import dig


def owned_by(child: dict[str, Any], owner_uid: str | None) -> bool:
    """Return True if *child* carries an owner reference to *owner_uid*."""
    if not owner_uid:
        return False
    refs = dig(child, "metadata", "ownerReferences", default=[])
    return any(ref.get("uid") == owner_uid for ref in refs)


class PodSetBase(KubernetesResource, ABC):
    """A resource whose health is partly read from the pods it owns.

    Subclasses decide which pods belong to the current revision via
    :meth:`parent_of_pod`.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.pods: list[Pod] = []

    @property
    def uid(self) -> str | None:
        return dig(self.instance_data, "metadata", "uid")

    @property
    def selector(self) -> dict[str, str]:
        return dict(dig(self.instance_data, "spec", "selector", "matchLabels", default={}))

    @abstractmethod
    def parent_of_pod(self, pod_data: dict[str, Any]) -> bool:
        """Return True if *pod_data* belongs to this workload's current revision."""

    def after_sync(self, cache: ObservationCache) -> None:
        self.pods = self.find_pods(cache) if self.exists else []

    def find_pods(self, cache: ObservationCache) -> list[Pod]:
        pods: list[Pod] = []
        for pod_data in cache.list_all(Pod.KIND, self.selector):
            if not self.parent_of_pod(pod_data):
                continue
            pod = Pod(
                self.namespace,
                self.context,
                pod_data,
                self._log,
                parent=f"{self.name.capitalize()} {self.kind.lower()}",
                deploy_started_at=self.deploy_started_at,
                clock=self._clock,
            )
            pod.sync_with(pod_data, cache)
            pods.append(pod)
        return pods

    @property
    def failure_message(self) -> str:
        return "\n".join(dict.fromkeys(p.failure_message for p in self.pods if p.failure_message))

    @property
    def timeout_message(self) -> str:
        messages = dict.fromkeys(p.timeout_message for p in self.pods if p.timeout_message)
        return "\n".join(messages) or super().timeout_message

    # ------------------------------------------------------------------
    # Debug info
    # ------------------------------------------------------------------

    @property
    def container_names(self) -> list[str]:
        spec = dig(self.definition, "spec", "template", "spec", default={})
        containers = (spec.get("containers") or []) + (spec.get("initContainers") or [])
        return [str(c.get("name", "")) for c in containers]

    @property
    def most_useful_pod(self) -> Pod | None:
        """The pod most likely to explain the rollout: a failed one, then a timed-out one, then any."""
        for predicate in (Pod.deploy_failed, Pod.deploy_timed_out):
            pod = next((p for p in self.pods if predicate(p)), None)
            if pod is not None:
                return pod
        return self.pods[0] if self.pods else None

    @property
    def print_debug_logs(self) -> bool:
        # kubectl logs blocks until its request timeout when no pod exists
        return bool(self.pods)

    def fetch_events(self, kubectl: Kubectl) -> dict[str, list[str]]:
        events = super().fetch_events(kubectl)
        pod = self.most_useful_pod
        if pod is not None:
            events.update(pod.fetch_events(kubectl))
        return events

    def fetch_debug_logs(self, kubectl: Kubectl) -> dict[str, list[str]]:
        return self.fetch_container_logs(kubectl, self.container_names)
