"""Tests for non-workload kinds, the base resource and resource construction."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import pytest

from kubeconverge.cache.sync_mediator import matches_selector
from kubeconverge.errors import InvalidTemplateError
from kubeconverge.models.watch import ResourceState
from kubeconverge.resources import (
    ConfigMap,
    CronJob,
    CustomResource,
    CustomResourceDefinition,
    HorizontalPodAutoscaler,
    Job,
    KubernetesResource,
    Node,
    PersistentVolumeClaim,
    PodDisruptionBudget,
    ResourceQuota,
    Secret,
    Service,
    StorageClass,
    build_resource,
    class_for_kind,
    crds_by_kind,
    registered_kinds,
)
from kubeconverge.resources.base import GAVE_UP, TIMEOUT_OVERRIDE_ANNOTATION, validate_essentials
from kubeconverge.resources.custom_resource import (
    ROLLOUT_CONDITIONS_ANNOTATION,
    TIMEOUT_MESSAGE_DIFFERENT_GENERATIONS,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _DictCache:
    def __init__(self, objects: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.objects = objects or {}

    def list_all(self, kind: str, selector: dict[str, str] | None = None) -> list[dict[str, Any]]:
        return [o for o in self.objects.get(kind, []) if matches_selector(o, selector)]

    def get_instance(self, kind: str, name: str, *, raise_if_not_found: bool = False) -> dict[str, Any]:
        return next((o for o in self.objects.get(kind, []) if o["metadata"]["name"] == name), {})

    def clear(self) -> None:
        self.objects = {}


def _definition(kind: str, name: str = "thing", **fields: Any) -> dict[str, Any]:
    return {"kind": kind, "metadata": {"name": name}, **fields}


def _with_timeout_override(value: str) -> dict[str, Any]:
    return {"kind": "ConfigMap", "metadata": {"name": "c", "annotations": {TIMEOUT_OVERRIDE_ANNOTATION: value}}}


def _sync(resource: KubernetesResource, instance: dict[str, Any] | None, **extra: list[dict[str, Any]]) -> None:
    objects: dict[str, list[dict[str, Any]]] = dict(extra)
    if instance is not None:
        objects[resource.kubectl_resource_type] = [instance]
    resource.sync(_DictCache(objects))


# ---------------------------------------------------------------------------
# Base resource
# ---------------------------------------------------------------------------


class TestBaseResource:
    def test_unknown_kind_falls_back_to_generic(self) -> None:
        assert class_for_kind("Gizmo") is KubernetesResource

    def test_unknown_kind_succeeds_once_it_exists(self) -> None:
        resource = build_resource("my-app", "prod", _definition("Gizmo"))
        _sync(resource, None)
        assert not resource.succeeded()
        _sync(resource, _definition("Gizmo"))
        assert resource.succeeded()
        assert not resource.failed()

    def test_unknown_kind_warns_once(self) -> None:
        resource = build_resource("my-app", "prod", _definition("Gizmo"))
        _sync(resource, _definition("Gizmo"))
        resource.succeeded()
        resource.succeeded()
        assert resource._unknown_kind_warned is True

    def test_state_is_unknown_before_sync(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap"))
        assert resource.state == ResourceState.UNKNOWN
        _sync(resource, _definition("ConfigMap"))
        assert resource.state == ResourceState.SUCCEEDED

    def test_instance_data_replaced_wholesale(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap"))
        _sync(resource, {**_definition("ConfigMap"), "data": {"a": "1"}})
        _sync(resource, _definition("ConfigMap"))
        assert "data" not in resource.instance_data

    def test_global_kind_has_no_namespace(self) -> None:
        assert Node("my-app", "prod", _definition("Node")).namespace == ""
        assert ConfigMap("my-app", "prod", _definition("ConfigMap")).namespace == "my-app"

    def test_timeout_override_annotation(self) -> None:
        resource = ConfigMap("my-app", "prod", _with_timeout_override("2m"))
        assert resource.timeout == 120
        assert resource.pretty_timeout_type == "timeout override: 120s"

    def test_timeout_override_out_of_range_ignored_and_invalid(self) -> None:
        resource = ConfigMap("my-app", "prod", _with_timeout_override("25h"))
        assert resource.timeout == ConfigMap.TIMEOUT
        assert any("less than 24h" in e for e in resource.validate_definition())

    def test_unparseable_timeout_override_is_a_validation_error(self) -> None:
        resource = ConfigMap("my-app", "prod", _with_timeout_override("soon"))
        assert resource.validate_definition()
        assert resource.validation_failed

    def test_explicit_timeout_override_wins(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap"), timeout_override=5)
        assert resource.timeout == 5

    def test_times_out_after_kind_timeout(self) -> None:
        now = [0.0]
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap"), clock=lambda: now[0])
        resource.mark_started()
        _sync(resource, None)
        assert not resource.timed_out()
        now[0] = ConfigMap.TIMEOUT + 1
        assert resource.timed_out()
        assert resource.state == ResourceState.TIMED_OUT

    def test_not_timed_out_before_start(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap"))
        _sync(resource, None)
        assert not resource.timed_out()

    def test_stale_status_defaults(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap"))
        assert resource.current_generation == -1
        assert resource.observed_generation == -2

    def test_pretty_status_padding(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap", "cfg"))
        _sync(resource, _definition("ConfigMap", "cfg"))
        assert resource.pretty_status.startswith("ConfigMap/cfg ")
        assert resource.pretty_status.endswith("Available")
        assert len(resource.pretty_status) == 50 + len("Available")

    def test_debug_message_for_global_timeout(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap", "cfg"))
        _sync(resource, None)
        message = resource.debug_message(GAVE_UP, 300)
        assert message.startswith("ConfigMap/cfg: GLOBAL WATCH TIMEOUT (300s)")
        assert message.endswith("  - Final status: Not Found")

    def test_debug_message_for_timeout(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap", "cfg"), clock=lambda: 1_000.0)
        resource.mark_started(at=0.0)
        _sync(resource, None)
        message = resource.debug_message()
        assert "TIMED OUT (timeout: 30s)" in message
        assert "very unusual" in message

    def test_debug_message_while_pending(self) -> None:
        resource = ConfigMap("my-app", "prod", _definition("ConfigMap", "cfg"))
        assert "MONITORING ERROR" in resource.debug_message()


class TestRegistryAndConstruction:
    def test_registered_kinds_cover_builtin_workloads(self) -> None:
        kinds = registered_kinds()
        for kind in ("Deployment", "DaemonSet", "StatefulSet", "ReplicaSet", "Pod", "Service", "Job"):
            assert kind in kinds

    def test_kubectl_type_resolves_to_class(self) -> None:
        assert class_for_kind("hpa.v2.autoscaling") is HorizontalPodAutoscaler

    def test_build_resource_uses_registered_class(self) -> None:
        assert isinstance(build_resource("my-app", "prod", _definition("Service")), Service)

    def test_missing_kind(self) -> None:
        with pytest.raises(InvalidTemplateError, match="kind"):
            validate_essentials({"metadata": {"name": "x"}}, filename="app.yml")

    def test_missing_name(self) -> None:
        with pytest.raises(InvalidTemplateError, match="metadata.name") as excinfo:
            validate_essentials({"kind": "ConfigMap", "metadata": {}})
        assert excinfo.value.content is not None

    def test_sensitive_template_content_withheld(self) -> None:
        with pytest.raises(InvalidTemplateError) as excinfo:
            validate_essentials({"kind": "Secret", "metadata": {}, "data": {"password": "aHVudGVyMg=="}})
        assert excinfo.value.content is None

    def test_generate_name_accepted(self) -> None:
        validate_essentials({"kind": "Job", "metadata": {"generateName": "migrate-"}})

    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(InvalidTemplateError):
            validate_essentials(["not", "a", "mapping"])


# ---------------------------------------------------------------------------
# Existence kinds and policies
# ---------------------------------------------------------------------------


class TestExistenceKinds:
    @pytest.mark.parametrize("cls", [ConfigMap, Secret, CronJob, StorageClass])
    def test_succeeds_when_present_never_fails(self, cls: type[KubernetesResource]) -> None:
        resource = cls("my-app", "prod", _definition(cls.KIND))
        _sync(resource, None)
        assert not resource.succeeded()
        assert not resource.failed()
        _sync(resource, _definition(cls.KIND))
        assert resource.succeeded()

    def test_secret_is_sensitive(self) -> None:
        assert Secret.SENSITIVE_TEMPLATE_CONTENT is True

    def test_pdb_requires_current_generation(self) -> None:
        pdb = PodDisruptionBudget("my-app", "prod", _definition("PodDisruptionBudget"))
        stale = {**_definition("PodDisruptionBudget"), "metadata": {"name": "thing", "generation": 2}}
        stale["status"] = {"observedGeneration": 1}
        _sync(pdb, stale)
        assert not pdb.succeeded()
        stale["status"] = {"observedGeneration": 2}
        _sync(pdb, stale)
        assert pdb.succeeded()

    def test_resource_quota_mirrors_hard_limits(self) -> None:
        quota = ResourceQuota("my-app", "prod", _definition("ResourceQuota"))
        instance = _definition("ResourceQuota", spec={"hard": {"pods": "10"}}, status={})
        _sync(quota, instance)
        assert not quota.succeeded()
        instance["status"] = {"hard": {"pods": "10"}}
        _sync(quota, instance)
        assert quota.succeeded()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


def _service(spec: dict[str, Any]) -> Service:
    return Service("my-app", "prod", _definition("Service", "web", spec=spec))


def _workload(kind: str, replicas: int) -> dict[str, Any]:
    return {
        "kind": kind,
        "metadata": {"name": "web"},
        "spec": {"replicas": replicas, "template": {"metadata": {"labels": {"app": "web"}}}},
    }


class TestService:
    def test_succeeds_when_selecting_pods(self) -> None:
        service = _service({"selector": {"app": "web"}})
        pod = {"kind": "Pod", "metadata": {"name": "web-1", "labels": {"app": "web"}}}
        _sync(service, _definition("Service", "web"), Pod=[pod], Deployment=[_workload("Deployment", 2)])
        assert service.succeeded()
        assert service.status == "Selects at least 1 pod"

    def test_pending_when_selecting_no_pods(self) -> None:
        service = _service({"selector": {"app": "web"}})
        _sync(service, _definition("Service", "web"), Deployment=[_workload("Deployment", 2)])
        assert not service.succeeded()
        assert service.status == "Selects 0 pods"

    def test_zero_replica_workload_needs_no_endpoints(self) -> None:
        service = _service({"selector": {"app": "web"}})
        _sync(service, _definition("Service", "web"), StatefulSet=[_workload("StatefulSet", 0)])
        assert service.succeeded()

    def test_load_balancer_waits_for_ingress(self) -> None:
        service = _service({"type": "LoadBalancer", "selector": {"app": "web"}})
        instance = _definition("Service", "web", status={"loadBalancer": {}})
        _sync(service, instance)
        assert not service.succeeded()
        assert service.status == "LoadBalancer IP address is not provisioned yet"
        instance["status"] = {"loadBalancer": {"ingress": [{"ip": "10.0.0.1"}]}}
        _sync(service, instance)
        assert service.succeeded()

    def test_external_name_only_needs_to_exist(self) -> None:
        service = _service({"type": "ExternalName", "externalName": "db.example.com"})
        _sync(service, _definition("Service", "web"))
        assert service.succeeded()

    def test_never_fails(self) -> None:
        service = _service({"selector": {"app": "web"}})
        _sync(service, None)
        assert not service.failed()


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


def _job(instance: dict[str, Any] | None) -> Job:
    job = Job("my-app", "prod", _definition("Job", "migrate"), now=lambda: _NOW)
    job.mark_started(at=0.0)
    _sync(job, instance)
    return job


class TestJob:
    def test_done_when_completions_reached(self) -> None:
        job = _job(_definition("Job", "migrate", spec={"completions": 1}, status={"succeeded": 1}))
        assert job.succeeded()
        assert job.status == "Succeeded"

    def test_running_after_grace_period(self) -> None:
        status = {"startTime": "2024-06-01T11:59:00Z", "active": 1}
        job = _job(_definition("Job", "migrate", spec={"completions": 1}, status=status))
        assert job.succeeded()
        assert job.status == "Started"

    def test_just_started_is_pending(self) -> None:
        status = {"startTime": "2024-06-01T11:59:58Z", "active": 1}
        job = _job(_definition("Job", "migrate", spec={"completions": 1}, status=status))
        assert not job.succeeded()

    def test_failed_condition(self) -> None:
        status = {"conditions": [{"type": "Failed", "status": "True", "reason": "DeadlineExceeded", "message": "late"}]}
        job = _job(_definition("Job", "migrate", status=status))
        assert job.failed()
        assert job.failure_message == "DeadlineExceeded (late)"

    def test_backoff_limit_reached(self) -> None:
        job = _job(_definition("Job", "migrate", spec={"backoffLimit": 2}, status={"failed": 2}))
        assert job.failed()

    def test_missing_job(self) -> None:
        job = _job(None)
        assert not job.succeeded()
        assert not job.failed()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def _storage_class(name: str, *, default: bool = False, mode: str = "Immediate") -> dict[str, Any]:
    annotations = {"storageclass.kubernetes.io/is-default-class": "true"} if default else {}
    return {"kind": "StorageClass", "metadata": {"name": name, "annotations": annotations}, "volumeBindingMode": mode}


def _pvc(spec: dict[str, Any], phase: str, classes: list[dict[str, Any]]) -> PersistentVolumeClaim:
    pvc = PersistentVolumeClaim("my-app", "prod", _definition("PersistentVolumeClaim", "data", spec=spec))
    _sync(pvc, _definition("PersistentVolumeClaim", "data", status={"phase": phase}), StorageClass=classes)
    return pvc


class TestPersistentVolumeClaim:
    def test_bound_succeeds(self) -> None:
        assert _pvc({}, "Bound", []).succeeded()

    def test_pending_with_wait_for_first_consumer_succeeds(self) -> None:
        pvc = _pvc({"storageClassName": "lazy"}, "Pending", [_storage_class("lazy", mode="WaitForFirstConsumer")])
        assert pvc.succeeded()

    def test_default_class_used_when_unnamed(self) -> None:
        pvc = _pvc({}, "Pending", [_storage_class("std", default=True, mode="WaitForFirstConsumer")])
        assert pvc.succeeded()

    def test_lost_fails(self) -> None:
        assert _pvc({}, "Lost", []).failed()

    def test_multiple_defaults_fail(self) -> None:
        pvc = _pvc({}, "Pending", [_storage_class("a", default=True), _storage_class("b", default=True)])
        assert pvc.failed()
        assert "multiple StorageClasses" in pvc.failure_message

    def test_missing_named_class_timeout_message(self) -> None:
        pvc = _pvc({"storageClassName": "ghost"}, "Pending", [])
        assert "StorageClass of ghost" in pvc.timeout_message


# ---------------------------------------------------------------------------
# HorizontalPodAutoscaler
# ---------------------------------------------------------------------------


def _hpa(conditions: list[dict[str, Any]]) -> HorizontalPodAutoscaler:
    hpa = HorizontalPodAutoscaler("my-app", "prod", _definition("HorizontalPodAutoscaler", "web"))
    _sync(hpa, _definition("HorizontalPodAutoscaler", "web", status={"conditions": conditions}))
    return hpa


class TestHorizontalPodAutoscaler:
    def test_scaling_active(self) -> None:
        hpa = _hpa([{"type": "ScalingActive", "status": "True"}])
        assert hpa.succeeded()
        assert hpa.status == "Configured"

    def test_scaling_disabled_is_success(self) -> None:
        hpa = _hpa([{"type": "ScalingActive", "status": "False", "reason": "ScalingDisabled"}])
        assert hpa.succeeded()
        assert not hpa.failed()

    def test_failed_get_is_recoverable(self) -> None:
        hpa = _hpa([{"type": "ScalingActive", "status": "False", "reason": "FailedGetResourceMetric"}])
        assert not hpa.failed()
        assert not hpa.succeeded()

    def test_other_inactive_reason_fails(self) -> None:
        hpa = _hpa(
            [{"type": "ScalingActive", "status": "False", "reason": "InvalidSelector", "message": "bad selector"}]
        )
        assert hpa.failed()
        assert hpa.failure_message == "bad selector"

    def test_fetched_by_versioned_type(self) -> None:
        assert _hpa([]).kubectl_resource_type == "hpa.v2.autoscaling"


# ---------------------------------------------------------------------------
# CustomResourceDefinition and CustomResource
# ---------------------------------------------------------------------------


def _crd(annotations: dict[str, str] | None = None) -> CustomResourceDefinition:
    return CustomResourceDefinition(
        "my-app",
        "prod",
        {
            "kind": "CustomResourceDefinition",
            "metadata": {"name": "widgets.example.com", "annotations": annotations or {}},
            "spec": {"group": "example.com", "names": {"kind": "Widget"}},
        },
    )


def _widget_instance(*, generation: int = 1, observed: int = 1, ready: str = "True") -> dict[str, Any]:
    return {
        "kind": "Widget",
        "metadata": {"name": "w", "generation": generation},
        "status": {"observedGeneration": observed, "conditions": [{"type": "Ready", "status": ready}]},
    }


class TestCustomResourceDefinition:
    def test_names_accepted(self) -> None:
        crd = _crd()
        _sync(crd, {**crd.definition, "status": {"conditions": [{"type": "NamesAccepted", "status": "True"}]}})
        assert crd.succeeded()
        assert crd.status == "Names accepted"

    def test_names_rejected(self) -> None:
        crd = _crd()
        conditions = [{"type": "NamesAccepted", "status": "False", "reason": "Conflict", "message": "taken"}]
        _sync(crd, {**crd.definition, "status": {"conditions": conditions}})
        assert crd.failed()
        assert crd.status == "Conflict (taken)"

    def test_identity(self) -> None:
        crd = _crd()
        assert crd.namespace == ""
        assert crd.group_kind == "example.com/Widget"
        assert crds_by_kind([crd]) == {"Widget": crd}

    def test_invalid_conditions_fail_validation(self) -> None:
        crd = _crd({ROLLOUT_CONDITIONS_ANNOTATION: "{not json"})
        errors = crd.validate_definition()
        assert errors and "is invalid" in errors[0]
        assert crd.rollout_conditions is None

    def test_instance_timeout_annotation(self) -> None:
        crd = _crd({"kubeconverge.io/instance-timeout": "90s"})
        assert crd.timeout_for_instance == 90


class TestCustomResource:
    def test_built_when_crd_known(self) -> None:
        crd = _crd({ROLLOUT_CONDITIONS_ANNOTATION: "true"})
        resource = build_resource("my-app", "prod", _definition("Widget", "w"), crd=crd)
        assert isinstance(resource, CustomResource)
        assert resource.kubectl_resource_type == "Widget.example.com"

    def test_default_conditions(self) -> None:
        crd = _crd({ROLLOUT_CONDITIONS_ANNOTATION: "true"})
        resource = build_resource("my-app", "prod", _definition("Widget", "w"), crd=crd)
        _sync(resource, _widget_instance())
        assert resource.succeeded()
        assert resource.status == "Healthy"

    def test_stale_generation_is_neither(self) -> None:
        conditions = {
            "success_conditions": [{"path": "$.status.conditions[?(@.type == 'Ready')].status", "value": "True"}],
            "failure_conditions": [{"path": "$.status.conditions[?(@.type == 'Ready')].status", "value": "False"}],
        }
        crd = _crd({ROLLOUT_CONDITIONS_ANNOTATION: json.dumps(conditions)})
        resource = build_resource("my-app", "prod", _definition("Widget", "w"), crd=crd)
        _sync(resource, _widget_instance(generation=2, observed=1))
        assert not resource.succeeded()
        assert not resource.failed()
        assert resource.timeout_message == TIMEOUT_MESSAGE_DIFFERENT_GENERATIONS

        _sync(resource, _widget_instance(generation=2, observed=2, ready="False"))
        assert resource.failed()

    def test_custom_failure_message(self) -> None:
        conditions = {
            "success_conditions": [{"path": "$.status.phase", "value": "Ready"}],
            "failure_conditions": [
                {"path": "$.status.phase", "value": "Error", "error_msg_path": "$.status.message"}
            ],
        }
        crd = _crd({ROLLOUT_CONDITIONS_ANNOTATION: json.dumps(conditions)})
        resource = build_resource("my-app", "prod", _definition("Widget", "w"), crd=crd)
        _sync(resource, {"kind": "Widget", "metadata": {"name": "w"}, "status": {"phase": "Error", "message": "boom"}})
        assert resource.failed()
        assert resource.failure_message == "boom"

    def test_without_conditions_behaves_like_unknown_kind(self) -> None:
        resource = build_resource("my-app", "prod", _definition("Widget", "w"), crd=_crd())
        _sync(resource, {"kind": "Widget", "metadata": {"name": "w"}})
        assert resource.succeeded()

    def test_timeout_from_crd(self) -> None:
        crd = _crd({"kubeconverge.io/instance-timeout": "5m"})
        resource = build_resource("my-app", "prod", _definition("Widget", "w"), crd=crd)
        assert resource.timeout == 300

    def test_invalid_crd_conditions_fail_instance_validation(self) -> None:
        crd = _crd({ROLLOUT_CONDITIONS_ANNOTATION: json.dumps({"success_conditions": []})})
        resource = build_resource("my-app", "prod", _definition("Widget", "w"), crd=crd)
        errors = resource.validate_definition()
        assert errors and "invalid rollout conditions" in errors[0]
