"""
Cluster health verification through the Kubernetes API
"""

import asyncio
import logging
from typing import List, Tuple

import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from .errors import DeploymentError
from .remote import RemoteExecutor

logger = logging.getLogger(__name__)

KUBECONFIG_PATH = "/etc/rancher/k3s/k3s.yaml"


def rewrite_kubeconfig(raw: str, control_address: str, api_port: int = 6443) -> dict:
    """Point the kubeconfig written by k3s (127.0.0.1) at the control node"""
    kubeconfig = yaml.safe_load(raw)
    if not isinstance(kubeconfig, dict):
        raise DeploymentError("Control node returned an invalid kubeconfig")
    for cluster in kubeconfig.get("clusters", []):
        cluster["cluster"]["server"] = f"https://{control_address}:{api_port}"
    return kubeconfig


def check_node_health(api: client.CoreV1Api) -> Tuple[List[Tuple[str, str, str]], List[str]]:
    """Checks the health of all nodes in the cluster."""
    unhealthy_nodes = []
    healthy_nodes = []
    for node in api.list_node().items:
        ready = [c for c in node.status.conditions or [] if c.type == "Ready"]
        if ready and ready[0].status == "True":
            healthy_nodes.append(node.metadata.name)
        else:
            reason = ready[0].reason if ready else "NoReadyCondition"
            message = ready[0].message if ready else ""
            unhealthy_nodes.append((node.metadata.name, reason, message))
    return unhealthy_nodes, healthy_nodes


def check_pod_health(api: client.CoreV1Api, namespace: str) -> List[Tuple[str, str]]:
    """Pods in ``namespace`` that are not running with all containers ready"""
    unhealthy = []
    for pod in api.list_namespaced_pod(namespace).items:
        if pod.status.phase not in ("Running", "Succeeded"):
            unhealthy.append((pod.metadata.name, pod.status.phase))
        elif any(not cs.ready for cs in pod.status.container_statuses or []):
            unhealthy.append((pod.metadata.name, "NotReady"))
    return unhealthy


async def fetch_kubeconfig(remote: RemoteExecutor, control_address: str,
                           api_port: int = 6443) -> dict:
    result = await remote.run(control_address, f"sudo cat {KUBECONFIG_PATH}",
                              description="kubeconfig retrieval")
    return rewrite_kubeconfig(result.stdout, control_address, api_port)


def core_api(kubeconfig: dict) -> client.CoreV1Api:
    api_client = config.new_client_from_config_dict(kubeconfig)
    return client.CoreV1Api(api_client)


async def verify_cluster(remote: RemoteExecutor, control_address: str, namespace: str,
                         api_port: int = 6443) -> bool:
    """Print node and workload pod health; True when everything is healthy"""
    kubeconfig = await fetch_kubeconfig(remote, control_address, api_port)
    api = core_api(kubeconfig)

    try:
        unhealthy_nodes, healthy_nodes = await asyncio.to_thread(check_node_health, api)
        unhealthy_pods = await asyncio.to_thread(check_pod_health, api, namespace)
    except (ApiException, HTTPError) as e:
        raise DeploymentError(f"Kubernetes API on {control_address} failed: {e}") from e

    print(f"\nNodes: {len(healthy_nodes)} ready, {len(unhealthy_nodes)} not ready")
    for name in healthy_nodes:
        print(f"  ✅ {name}")
    for name, reason, message in unhealthy_nodes:
        print(f"  ❌ {name}: {reason} {message}")

    if unhealthy_pods:
        print(f"\nPods in {namespace}: {len(unhealthy_pods)} unhealthy")
        for name, status in unhealthy_pods:
            print(f"  ❌ {name}: {status}")
    else:
        print(f"\nPods in {namespace}: all healthy")

    return not unhealthy_nodes and not unhealthy_pods
