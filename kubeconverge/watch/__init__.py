"""Watch loop: repeated sync cycles until every resource reaches a verdict."""

from kubeconverge.watch.resource_watcher import ResourceWatcher, WatchState

__all__ = ["ResourceWatcher", "WatchState"]
