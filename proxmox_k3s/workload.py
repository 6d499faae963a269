"""
MinIO workload deployment

The manifest is built as plain Kubernetes objects, serialized once with
PyYAML and piped to ``kubectl apply -f -`` on the control node.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, List

import yaml

from .config import WorkloadConfig
from .errors import ManifestApplyFailed, RemoteCommandFailed
from .models import ClusterEndpoint
from .remote import RemoteExecutor

logger = logging.getLogger(__name__)

KUBECTL = "sudo k3s kubectl"


def build_manifest(workload: WorkloadConfig) -> List[dict]:
    """Namespace, single-replica Deployment and NodePort Service for MinIO"""
    labels = {"app": workload.name}
    namespace = {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": workload.namespace},
    }
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": workload.name, "namespace": workload.namespace},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [{
                        "name": workload.name,
                        "image": workload.image,
                        "args": ["server", "/data", "--console-address", f":{workload.console_port}"],
                        "env": [
                            {"name": "MINIO_ROOT_USER", "value": workload.root_user},
                            {"name": "MINIO_ROOT_PASSWORD", "value": workload.root_password},
                        ],
                        "ports": [
                            {"containerPort": workload.api_port},
                            {"containerPort": workload.console_port},
                        ],
                        "volumeMounts": [{"name": "data", "mountPath": "/data"}],
                    }],
                    "volumes": [{"name": "data", "emptyDir": {}}],
                },
            },
        },
    }
    api_port = {"name": "api", "port": workload.api_port, "targetPort": workload.api_port}
    console_port = {"name": "console", "port": workload.console_port,
                    "targetPort": workload.console_port}
    if workload.api_node_port is not None:
        api_port["nodePort"] = workload.api_node_port
    if workload.console_node_port is not None:
        console_port["nodePort"] = workload.console_node_port
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": workload.name, "namespace": workload.namespace},
        "spec": {
            "type": "NodePort",
            "selector": labels,
            "ports": [api_port, console_port],
        },
    }
    return [namespace, deployment, service]


def render_manifest(documents: List[dict]) -> str:
    return yaml.safe_dump_all(documents, sort_keys=False)


class KubectlApi:
    """Cluster management API reached through kubectl on the control node"""

    def __init__(self, remote: RemoteExecutor, control_address: str):
        self.remote = remote
        self.control_address = control_address

    async def ready(self) -> bool:
        result = await self.remote.run(self.control_address, f"{KUBECTL} get --raw /readyz",
                                       timeout=30, description="API readiness", check=False)
        return result.ok and result.stdout.strip() == "ok"

    async def apply(self, documents: List[dict]):
        await self.remote.run(self.control_address, f"{KUBECTL} apply -f -",
                              input=render_manifest(documents), description="kubectl apply")

    async def node_ports(self, namespace: str, name: str) -> Dict[str, int]:
        result = await self.remote.run(
            self.control_address, f"{KUBECTL} get service {name} -n {namespace} -o json",
            description="service lookup",
        )
        service = json.loads(result.stdout)
        return {p["name"]: p["nodePort"] for p in service["spec"]["ports"] if "nodePort" in p}


class WorkloadDeployer:
    def __init__(self, api_factory: Callable[[str], KubectlApi], workload: WorkloadConfig,
                 wait_for_api: bool = True, attempts: int = 30, interval: float = 5.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.api_factory = api_factory
        self.workload = workload
        self.wait_for_api = wait_for_api
        self.attempts = attempts
        self.interval = interval
        self.sleep = sleep

    async def _await_api(self, api: KubectlApi, control_address: str):
        for attempt in range(1, self.attempts + 1):
            try:
                if await api.ready():
                    return
            except RemoteCommandFailed as e:
                # a check that hangs while the apiserver starts counts as not ready
                logger.debug(f"API readiness check on {control_address} failed: {e}")
            logger.debug(f"API on {control_address} not ready ({attempt}/{self.attempts})")
            if attempt < self.attempts:
                await self.sleep(self.interval)
        raise ManifestApplyFailed(f"Cluster API on {control_address} never became ready")

    async def deploy(self, control_address: str, manifest: List[dict]) -> ClusterEndpoint:
        logger.info(f"[+] Deploying {self.workload.name} to the cluster via {control_address}")
        api = self.api_factory(control_address)
        try:
            if self.wait_for_api:
                await self._await_api(api, control_address)
            await api.apply(manifest)

            ports = {
                "api": self.workload.api_node_port,
                "console": self.workload.console_node_port,
            }
            if None in ports.values():
                assigned = await api.node_ports(self.workload.namespace, self.workload.name)
                ports = {k: v if v is not None else assigned[k] for k, v in ports.items()}
        except RemoteCommandFailed as e:
            raise ManifestApplyFailed(f"Could not apply workload: {e}") from e
        except (KeyError, ValueError) as e:
            raise ManifestApplyFailed(f"Could not read assigned node ports: {e}") from e

        logger.info(f"✅ {self.workload.name} deployed")
        return ClusterEndpoint(
            control_address=control_address,
            api_port=ports["api"],
            console_port=ports["console"],
            credentials=(self.workload.root_user, self.workload.root_password),
        )
