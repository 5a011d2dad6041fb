"""Kubernetes-backed collaborators for the reconciler."""

from kubernetes import config


def load_kube_config():
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
