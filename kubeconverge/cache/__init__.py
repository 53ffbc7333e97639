"""Observation cache: per-cycle deduplicated reads from the cluster."""

from kubeconverge.cache.sync_mediator import CacheView, SyncMediator, matches_selector

__all__ = ["CacheView", "SyncMediator", "matches_selector"]
