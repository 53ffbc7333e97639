"""Cluster access through the kubectl command executor."""

from kubeconverge.cluster.kubectl import CompletedCommand, Kubectl, KubectlResult, retry_delay

__all__ = ["CompletedCommand", "Kubectl", "KubectlResult", "retry_delay"]
