"""KubeConverge - client-side rollout reconciliation for Kubernetes."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kubeconverge")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
