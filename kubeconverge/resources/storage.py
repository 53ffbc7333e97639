"""StorageClass and PersistentVolumeClaim rollout status."""

from __future__ import annotations

from typing import Any

from kubeconverge.resources.base import (
    STANDARD_TIMEOUT_MESSAGE,
    KubernetesResource,
    ObservationCache,
    register_kind,
)
from kubeconverge.resources.simple import ExistenceResource
from kubeconverge.utils.data import dig

_DEFAULT_CLASS_ANNOTATIONS: tuple[str, ...] = (
    "storageclass.kubernetes.io/is-default-class",
    "storageclass.beta.kubernetes.io/is-default-class",
)


@register_kind
class StorageClass(ExistenceResource):
    KIND = "StorageClass"
    GLOBAL = True

    @property
    def volume_binding_mode(self) -> str | None:
        return dig(self.definition, "volumeBindingMode")

    @property
    def is_default(self) -> bool:
        annotations = dig(self.definition, "metadata", "annotations", default={})
        return any(annotations.get(key) == "true" for key in _DEFAULT_CLASS_ANNOTATIONS)


@register_kind
class PersistentVolumeClaim(KubernetesResource):
    """PVC: Bound, or Pending under a WaitForFirstConsumer StorageClass.

    Fails when Lost, or when no class is named and the cluster has more than
    one default StorageClass.
    """

    KIND = "PersistentVolumeClaim"
    TIMEOUT = 5 * 60
    SYNC_DEPENDENCIES = ("StorageClass",)

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.storage_classes: list[StorageClass] = []

    def after_sync(self, cache: ObservationCache) -> None:
        self.storage_classes = [
            StorageClass("", self.context, data, self._log) for data in cache.list_all(StorageClass.KIND)
        ]

    @property
    def storage_class_name(self) -> str | None:
        return dig(self.definition, "spec", "storageClassName")

    @property
    def storage_class(self) -> StorageClass | None:
        name = self.storage_class_name
        if name:
            return next((sc for sc in self.storage_classes if sc.name == name), None)
        if name != "":
            return next((sc for sc in self.storage_classes if sc.is_default), None)
        return None

    @property
    def status(self) -> str:
        if not self.exists:
            return "Not Found"
        return str(dig(self.instance_data, "status", "phase", default="Unknown"))

    def deploy_succeeded(self) -> bool:
        if self.status == "Bound":
            return True
        storage_class = self.storage_class
        if storage_class is not None and storage_class.volume_binding_mode == "WaitForFirstConsumer":
            return self.status == "Pending"
        return False

    def deploy_failed(self) -> bool:
        return self.status == "Lost" or bool(self.failure_message)

    @property
    def failure_message(self) -> str:
        if self.storage_class_name is None and sum(sc.is_default for sc in self.storage_classes) > 1:
            return (
                "PVC has no StorageClass specified and there are multiple StorageClasses "
                "annotated as default. This is an invalid cluster configuration."
            )
        return ""

    @property
    def timeout_message(self) -> str:
        if self.storage_class_name and self.storage_class is None:
            return f"PVC specified a StorageClass of {self.storage_class_name} but the resource does not exist"
        return STANDARD_TIMEOUT_MESSAGE
