"""KubeConverge data models."""

from kubeconverge.models.config import KubeConvergeConfig, KubectlConfig, LogConfig, WatchConfig
from kubeconverge.models.watch import ResourceOutcome, ResourceState, WatchReport

__all__ = [
    "KubeConvergeConfig",
    "KubectlConfig",
    "LogConfig",
    "ResourceOutcome",
    "ResourceState",
    "WatchConfig",
    "WatchReport",
]
