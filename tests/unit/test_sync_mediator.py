"""Tests for kubeconverge.cache.sync_mediator — singleflight, isolation and prewarm."""

from __future__ import annotations

import json
import threading
import time
from typing import Any
from unittest.mock import MagicMock

import pytest

from kubeconverge.cache.sync_mediator import CacheView, SyncMediator, matches_selector
from kubeconverge.cluster.kubectl import Kubectl, KubectlResult
from kubeconverge.errors import ResourceNotFoundError
from kubeconverge.resources import ConfigMap, Deployment

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _obj(kind: str, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
    return {"kind": kind, "metadata": {"name": name, "labels": labels or {}}}


class _FakeCluster:
    """Answers ``kubectl get`` calls from an in-memory object store."""

    def __init__(self, objects: dict[str, list[dict[str, Any]]], delay: float = 0.0) -> None:
        self.objects = objects
        self.delay = delay
        self.failing: set[str] = set()
        self.calls: list[tuple[str, ...]] = []
        self.kwargs: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def run(self, *args: str, **kwargs: Any) -> KubectlResult:
        with self._lock:
            self.calls.append(args)
            self.kwargs.append(kwargs)
        if self.delay:
            time.sleep(self.delay)
        kind = args[1]
        if kind in self.failing:
            return KubectlResult("", "Unable to connect to the server", False)
        items = self.objects.get(kind, [])
        if len(args) > 2 and not args[2].startswith("--"):
            found = next((i for i in items if i["metadata"]["name"] == args[2]), None)
            if found is None:
                if kwargs.get("raise_if_not_found"):
                    raise ResourceNotFoundError(f"{kind} {args[2]} NotFound")
                return KubectlResult("", "NotFound", False)
            return KubectlResult(json.dumps(found), "", True)
        return KubectlResult(json.dumps({"items": items}), "", True)

    def list_calls(self, kind: str) -> int:
        return sum(1 for c in self.calls if c[1] == kind and "--chunk-size=0" in c)


def _mediator(cluster: _FakeCluster, max_workers: int = 8) -> SyncMediator:
    kubectl = MagicMock(spec=Kubectl)
    kubectl.run.side_effect = cluster.run
    return SyncMediator(kubectl, max_workers=max_workers)


# ---------------------------------------------------------------------------
# Selector matching
# ---------------------------------------------------------------------------


class TestMatchesSelector:
    def test_empty_selector_matches_everything(self) -> None:
        assert matches_selector(_obj("Pod", "a"), None)
        assert matches_selector(_obj("Pod", "a"), {})

    def test_exact_match_required(self) -> None:
        pod = _obj("Pod", "a", {"app": "web", "tier": "front"})
        assert matches_selector(pod, {"app": "web"})
        assert not matches_selector(pod, {"app": "api"})
        assert not matches_selector(pod, {"release": "v1"})

    def test_missing_labels(self) -> None:
        assert not matches_selector({"metadata": {"name": "a"}}, {"app": "web"})


# ---------------------------------------------------------------------------
# list_all
# ---------------------------------------------------------------------------


class TestListAll:
    def test_cold_list_fetches_once_then_serves_from_cache(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "a"), _obj("ConfigMap", "b")]})
        mediator = _mediator(cluster)
        assert len(mediator.list_all("ConfigMap")) == 2
        assert len(mediator.list_all("ConfigMap")) == 2
        assert cluster.list_calls("ConfigMap") == 1

    def test_list_call_shape(self) -> None:
        cluster = _FakeCluster({"ConfigMap": []})
        _mediator(cluster).list_all("ConfigMap")
        assert cluster.calls[0] == ("get", "ConfigMap", "--chunk-size=0")
        assert cluster.kwargs[0]["output"] == "json"
        assert cluster.kwargs[0]["attempts"] == 5

    def test_selector_filters_client_side(self) -> None:
        cluster = _FakeCluster(
            {"Pod": [_obj("Pod", "web-1", {"app": "web"}), _obj("Pod", "api-1", {"app": "api"})]}
        )
        mediator = _mediator(cluster)
        assert [p["metadata"]["name"] for p in mediator.list_all("Pod", {"app": "web"})] == ["web-1"]
        assert len(mediator.list_all("Pod")) == 2
        assert cluster.list_calls("Pod") == 1

    def test_concurrent_cold_requests_collapse_to_one_call(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "a")]}, delay=0.05)
        mediator = _mediator(cluster)
        barrier = threading.Barrier(2)
        results: list[list[dict[str, Any]]] = []
        lock = threading.Lock()

        def request() -> None:
            barrier.wait()
            items = mediator.list_all("ConfigMap")
            with lock:
                results.append(items)

        threads = [threading.Thread(target=request) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert cluster.list_calls("ConfigMap") == 1
        assert results[0] == results[1] == [_obj("ConfigMap", "a")]

    def test_many_concurrent_requests_one_call(self) -> None:
        cluster = _FakeCluster({"Pod": [_obj("Pod", "a")]}, delay=0.02)
        mediator = _mediator(cluster)
        threads = [threading.Thread(target=mediator.list_all, args=("Pod",)) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert cluster.list_calls("Pod") == 1

    def test_failed_fetch_returns_empty_and_is_not_cached(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "a")]})
        cluster.failing.add("ConfigMap")
        mediator = _mediator(cluster)
        assert mediator.list_all("ConfigMap") == []
        assert not mediator.is_warm("ConfigMap")

        cluster.failing.clear()
        assert len(mediator.list_all("ConfigMap")) == 1
        assert cluster.list_calls("ConfigMap") == 2

    def test_successful_empty_list_is_cached(self) -> None:
        cluster = _FakeCluster({})
        mediator = _mediator(cluster)
        assert mediator.list_all("ConfigMap") == []
        assert mediator.list_all("ConfigMap") == []
        assert cluster.list_calls("ConfigMap") == 1

    def test_unparseable_response_is_a_failure(self) -> None:
        kubectl = MagicMock(spec=Kubectl)
        kubectl.run.return_value = KubectlResult("not json", "", True)
        mediator = SyncMediator(kubectl)
        assert mediator.list_all("ConfigMap") == []
        assert not mediator.is_warm("ConfigMap")

    def test_global_kind_listed_without_namespace(self) -> None:
        cluster = _FakeCluster({"Node": [_obj("Node", "n1")]})
        _mediator(cluster).list_all("Node")
        assert cluster.kwargs[0]["use_namespace"] is False

    def test_sensitive_kind_fetched_with_redaction(self) -> None:
        cluster = _FakeCluster({"Secret": []})
        _mediator(cluster).list_all("Secret")
        assert cluster.kwargs[0]["output_is_sensitive"] is True

    def test_unrelated_kinds_not_serialized(self) -> None:
        cluster = _FakeCluster({"Pod": [], "ConfigMap": []}, delay=0.2)
        mediator = _mediator(cluster)
        started = time.monotonic()
        threads = [
            threading.Thread(target=mediator.list_all, args=("Pod",)),
            threading.Thread(target=mediator.list_all, args=("ConfigMap",)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert time.monotonic() - started < 0.35


# ---------------------------------------------------------------------------
# get_instance
# ---------------------------------------------------------------------------


class TestGetInstance:
    def test_warm_cache_serves_instance_without_call(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "a")]})
        mediator = _mediator(cluster)
        mediator.list_all("ConfigMap")
        assert mediator.get_instance("ConfigMap", "a")["metadata"]["name"] == "a"
        assert len(cluster.calls) == 1

    def test_warm_cache_missing_instance_is_empty(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "a")]})
        mediator = _mediator(cluster)
        mediator.list_all("ConfigMap")
        assert mediator.get_instance("ConfigMap", "zzz") == {}

    def test_warm_cache_missing_instance_raises_when_requested(self) -> None:
        cluster = _FakeCluster({"ConfigMap": []})
        mediator = _mediator(cluster)
        mediator.list_all("ConfigMap")
        with pytest.raises(ResourceNotFoundError):
            mediator.get_instance("ConfigMap", "zzz", raise_if_not_found=True)

    def test_cold_instance_lookup_does_not_warm_list_cache(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "a"), _obj("ConfigMap", "b")]})
        mediator = _mediator(cluster)
        assert mediator.get_instance("ConfigMap", "a")["metadata"]["name"] == "a"
        assert not mediator.is_warm("ConfigMap")

        assert len(mediator.list_all("ConfigMap")) == 2
        assert cluster.list_calls("ConfigMap") == 1

    def test_cold_instance_failure_is_empty(self) -> None:
        cluster = _FakeCluster({"ConfigMap": []})
        cluster.failing.add("ConfigMap")
        assert _mediator(cluster).get_instance("ConfigMap", "a") == {}

    def test_cold_instance_not_found_raises_when_requested(self) -> None:
        cluster = _FakeCluster({"ConfigMap": []})
        with pytest.raises(ResourceNotFoundError):
            _mediator(cluster).get_instance("ConfigMap", "a", raise_if_not_found=True)


# ---------------------------------------------------------------------------
# CacheView
# ---------------------------------------------------------------------------


class TestCacheView:
    def test_view_shares_warm_data(self) -> None:
        cluster = _FakeCluster({"Pod": [_obj("Pod", "a")]})
        mediator = _mediator(cluster)
        mediator.list_all("Pod")
        view = mediator.view()
        assert view.list_all("Pod") == [_obj("Pod", "a")]
        assert cluster.list_calls("Pod") == 1

    def test_clearing_a_view_leaves_shared_cache_and_siblings_intact(self) -> None:
        cluster = _FakeCluster({"Pod": [_obj("Pod", "a")]})
        mediator = _mediator(cluster)
        mediator.list_all("Pod")
        view, sibling = mediator.view(), mediator.view()

        view.clear()

        assert mediator.is_warm("Pod")
        assert sibling.list_all("Pod") == [_obj("Pod", "a")]
        assert cluster.list_calls("Pod") == 1

    def test_cleared_view_fetches_privately(self) -> None:
        cluster = _FakeCluster({"Pod": [_obj("Pod", "a")]})
        mediator = _mediator(cluster)
        mediator.list_all("Pod")
        view = mediator.view()
        view.clear()

        cluster.objects["Pod"] = [_obj("Pod", "a"), _obj("Pod", "b")]
        assert len(view.list_all("Pod")) == 2
        assert len(view.list_all("Pod")) == 2
        assert len(mediator.list_all("Pod")) == 1
        assert cluster.list_calls("Pod") == 2

    def test_view_satisfies_observation_cache_protocol(self) -> None:
        from kubeconverge.resources.base import ObservationCache

        assert isinstance(CacheView(_mediator(_FakeCluster({}))), ObservationCache)


# ---------------------------------------------------------------------------
# sync_all
# ---------------------------------------------------------------------------


def _deployment(name: str) -> Deployment:
    return Deployment(
        "my-app",
        "prod",
        {"kind": "Deployment", "metadata": {"name": name}, "spec": {"replicas": 1}},
    )


def _config_map(name: str) -> ConfigMap:
    return ConfigMap("my-app", "prod", {"kind": "ConfigMap", "metadata": {"name": name}})


class TestSyncAll:
    def test_kinds_for_includes_dependencies_once(self) -> None:
        kinds = SyncMediator.kinds_for([_deployment("a"), _deployment("b"), _config_map("c")])
        assert kinds == ["Deployment", "ReplicaSet", "Pod", "ConfigMap"]

    def test_prewarms_each_kind_once_and_syncs_every_resource(self) -> None:
        cluster = _FakeCluster(
            {
                "ConfigMap": [_obj("ConfigMap", "c1"), _obj("ConfigMap", "c2")],
                "Deployment": [],
                "ReplicaSet": [],
                "Pod": [],
            }
        )
        mediator = _mediator(cluster)
        resources = [_config_map("c1"), _config_map("c2"), _config_map("missing"), _deployment("web")]

        mediator.sync_all(resources)

        for kind in ("ConfigMap", "Deployment", "ReplicaSet", "Pod"):
            assert cluster.list_calls(kind) == 1
        assert all(r.synced for r in resources)
        assert resources[0].exists and resources[1].exists
        assert not resources[2].exists
        assert not resources[3].exists
        # every lookup was served from the warm cache
        assert len(cluster.calls) == 4

    def test_each_cycle_starts_cold(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "c1")]})
        mediator = _mediator(cluster)
        resources = [_config_map("c1")]
        mediator.sync_all(resources)
        mediator.sync_all(resources)
        assert cluster.list_calls("ConfigMap") == 2

    def test_failed_prewarm_marks_resources_absent(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "c1")]})
        cluster.failing.add("ConfigMap")
        mediator = _mediator(cluster)
        resource = _config_map("c1")
        mediator.sync_all([resource])
        assert resource.synced
        assert not resource.exists

    def test_prewarm_skips_warm_kinds(self) -> None:
        cluster = _FakeCluster({"ConfigMap": [_obj("ConfigMap", "c1")], "Pod": []})
        mediator = _mediator(cluster)
        mediator.list_all("ConfigMap")
        mediator.prewarm(["ConfigMap", "Pod", "Pod"])
        assert cluster.list_calls("ConfigMap") == 1
        assert cluster.list_calls("Pod") == 1
        assert mediator.is_warm("Pod")

    def test_empty_batch_is_noop(self) -> None:
        cluster = _FakeCluster({})
        _mediator(cluster).sync_all([])
        assert cluster.calls == []
