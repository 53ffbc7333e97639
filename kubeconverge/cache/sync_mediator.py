"""Per-cycle observation cache shared by every resource in a sync pass.

Guarantees
----------
- At most one ``kubectl get <kind>`` list call per kind per cycle, however
  many resources or threads ask for it. Cold requests for the same kind
  collapse onto a per-kind lock; different kinds never wait on each other.
- Single-instance lookups never populate the list cache: one object is not
  evidence about all objects of its kind.
- A failed fetch returns an empty result and is not cached, so a later
  request in the same cycle can retry. Callers see the resource as absent.
- Each resource syncs against its own :class:`CacheView`. A view shares the
  warmed list data but ``clear()`` on it only drops the view's private
  overlay; siblings syncing concurrently are unaffected.

Lifecycle
---------
:meth:`SyncMediator.sync_all` clears the cache, pre-warms every kind the
batch needs (own kinds plus ``SYNC_DEPENDENCIES``) in parallel, then syncs
each resource in parallel.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from kubeconverge.cluster.kubectl import Kubectl
from kubeconverge.concurrency import MAX_WORKERS, distribute
from kubeconverge.errors import KubectlError, ResourceNotFoundError
from kubeconverge.observability.logging import get_logger
from kubeconverge.observability.metrics import cache_fetches_total, sync_duration_seconds
from kubeconverge.resources.base import KubernetesResource, class_for_kind

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_LIST_ATTEMPTS: int = 5
_INSTANCE_ATTEMPTS: int = 2

Instance = dict[str, Any]


def matches_selector(instance: Mapping[str, Any], selector: Mapping[str, str] | None) -> bool:
    """True if every selector key/value appears in the instance's labels."""
    if not selector:
        return True
    labels = (instance.get("metadata") or {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in selector.items())


def _find_by_name(items: Iterable[Instance], name: str) -> Instance | None:
    return next((i for i in items if (i.get("metadata") or {}).get("name") == name), None)


class SyncMediator:
    """Deduplicating, thread-safe front for kubectl reads during a cycle.

    Example::

        mediator = SyncMediator(Kubectl("my-app", "prod-east"))
        mediator.sync_all(resources)
        pods = mediator.list_all("Pod", {"app": "web"})
    """

    def __init__(self, kubectl: Kubectl, *, max_workers: int = MAX_WORKERS) -> None:
        self._kubectl = kubectl
        self._max_workers = max_workers
        self._cache: dict[str, list[Instance]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._log = get_logger("cache.sync_mediator")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_all(self, kind: str, selector: Mapping[str, str] | None = None) -> list[Instance]:
        """Return every instance of *kind* whose labels match *selector*."""
        items = self._cache.get(kind)
        if items is None:
            items = self._populate(kind)
        return [item for item in items if matches_selector(item, selector)]

    def get_instance(self, kind: str, name: str, *, raise_if_not_found: bool = False) -> Instance:
        """Return one instance, or ``{}`` when it is absent or could not be fetched.

        Raises:
            ResourceNotFoundError: if *raise_if_not_found* is set and the
                object does not exist.
        """
        cached = self._cache.get(kind)
        if cached is not None:
            found = _find_by_name(cached, name)
            if found is None and raise_if_not_found:
                raise ResourceNotFoundError(f"{kind}/{name} not found")
            return found or {}
        return self.request_instance(kind, name, raise_if_not_found=raise_if_not_found)

    def request_instance(self, kind: str, name: str, *, raise_if_not_found: bool = False) -> Instance:
        """Fetch one instance directly; the result is never cached."""
        out, _err, ok = self._kubectl.run(
            "get",
            kind,
            name,
            output="json",
            attempts=_INSTANCE_ATTEMPTS,
            raise_if_not_found=raise_if_not_found,
            use_namespace=not class_for_kind(kind).GLOBAL,
            output_is_sensitive=class_for_kind(kind).SENSITIVE_TEMPLATE_CONTENT,
        )
        if not ok:
            return {}
        try:
            return dict(json.loads(out))
        except (json.JSONDecodeError, TypeError, ValueError):
            self._log.warning("instance_response_unparseable", kind=kind, name=name)
            return {}

    def fetch_kind(self, kind: str) -> list[Instance] | None:
        """List every instance of *kind*; None on failure. Never touches the cache."""
        cls = class_for_kind(kind)
        try:
            out, err, ok = self._kubectl.run(
                "get",
                kind,
                "--chunk-size=0",
                output="json",
                attempts=_LIST_ATTEMPTS,
                use_namespace=not cls.GLOBAL,
                output_is_sensitive=cls.SENSITIVE_TEMPLATE_CONTENT,
            )
            if not ok:
                raise KubectlError(f"Failed to list {kind}: {err if not cls.SENSITIVE_TEMPLATE_CONTENT else ''}")
            try:
                items = json.loads(out).get("items") or []
            except (json.JSONDecodeError, AttributeError) as exc:
                raise KubectlError(f"Unparseable list response for {kind}") from exc
        except KubectlError as exc:
            cache_fetches_total.labels(kind=kind, result="failure").inc()
            self._log.warning("list_fetch_failed", kind=kind, error=str(exc))
            return None
        cache_fetches_total.labels(kind=kind, result="success").inc()
        return list(items)

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------

    def _lock_for(self, kind: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(kind)
            if lock is None:
                lock = self._locks[kind] = threading.Lock()
            return lock

    def _populate(self, kind: str) -> list[Instance]:
        with self._lock_for(kind):
            items = self._cache.get(kind)
            if items is not None:
                return items
            fetched = self.fetch_kind(kind)
            if fetched is None:
                return []
            self._cache[kind] = fetched
            self._log.debug("kind_cached", kind=kind, count=len(fetched))
            return fetched

    def prewarm(self, kinds: Sequence[str]) -> None:
        """Populate *kinds* in parallel, one fetch per cold kind."""
        cold = [kind for kind in dict.fromkeys(kinds) if not self.is_warm(kind)]
        distribute(cold, self._populate, self._max_workers)

    def clear(self) -> None:
        self._cache = {}

    def is_warm(self, kind: str) -> bool:
        return kind in self._cache

    def view(self) -> CacheView:
        return CacheView(self)

    # ------------------------------------------------------------------
    # Batch sync
    # ------------------------------------------------------------------

    @staticmethod
    def kinds_for(resources: Iterable[KubernetesResource]) -> list[str]:
        """Closed set of kinds a batch needs: own kinds plus their dependencies."""
        kinds: dict[str, None] = {}
        for resource in resources:
            kinds[resource.kubectl_resource_type] = None
            for dependency in resource.SYNC_DEPENDENCIES:
                kinds[dependency] = None
        return list(kinds)

    def sync_all(self, resources: Sequence[KubernetesResource]) -> None:
        """Refresh every resource in *resources* against a freshly warmed cache."""
        started = time.monotonic()
        self.clear()
        if not resources:
            return
        self.prewarm(self.kinds_for(resources))
        distribute(list(resources), lambda r: r.sync(self.view()), self._max_workers)
        sync_duration_seconds.observe(time.monotonic() - started)


class CacheView:
    """Per-resource handle onto a :class:`SyncMediator`.

    Reads go to the shared cache until :meth:`clear` is called; after that
    the view keeps its own overlay and fetches into it, leaving the shared
    cache untouched.
    """

    def __init__(self, mediator: SyncMediator) -> None:
        self._mediator = mediator
        self._overlay: dict[str, list[Instance]] = {}
        self._detached = False

    def list_all(self, kind: str, selector: Mapping[str, str] | None = None) -> list[Instance]:
        if not self._detached:
            return self._mediator.list_all(kind, selector)
        items = self._overlay.get(kind)
        if items is None:
            fetched = self._mediator.fetch_kind(kind)
            if fetched is None:
                return []
            items = self._overlay[kind] = fetched
        return [item for item in items if matches_selector(item, selector)]

    def get_instance(self, kind: str, name: str, *, raise_if_not_found: bool = False) -> Instance:
        if not self._detached:
            return self._mediator.get_instance(kind, name, raise_if_not_found=raise_if_not_found)
        cached = self._overlay.get(kind)
        if cached is not None:
            found = _find_by_name(cached, name)
            if found is None and raise_if_not_found:
                raise ResourceNotFoundError(f"{kind}/{name} not found")
            return found or {}
        return self._mediator.request_instance(kind, name, raise_if_not_found=raise_if_not_found)

    def clear(self) -> None:
        self._overlay = {}
        self._detached = True
