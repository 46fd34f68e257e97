from rolloutkeeper.cluster.client import ClusterClient, WorkloadStatus
from rolloutkeeper.cluster.kubectl import KubectlClusterClient
from rolloutkeeper.cluster.memory import InMemoryClusterClient

__all__ = [
    "ClusterClient",
    "InMemoryClusterClient",
    "KubectlClusterClient",
    "WorkloadStatus",
]
