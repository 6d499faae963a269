"""
Provision a k3s cluster on a Proxmox node and deploy MinIO onto it.
"""

from .config import DeploymentConfig, WorkloadConfig, load_config
from .errors import DeploymentError
from .models import ClusterEndpoint, DeploymentReport, NodeRole, NodeStatus
from .orchestrator import ClusterOrchestrator

__version__ = "0.1.0"

__all__ = [
    "ClusterEndpoint",
    "ClusterOrchestrator",
    "DeploymentConfig",
    "DeploymentError",
    "DeploymentReport",
    "NodeRole",
    "NodeStatus",
    "WorkloadConfig",
    "load_config",
]
