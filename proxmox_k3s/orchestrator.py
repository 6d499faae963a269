"""
Deployment orchestrator

ensure template -> allocate identities -> provision control -> await address
-> provision workers -> await addresses (parallel) -> install control
-> install workers (parallel) -> deploy workload -> report

Any failure on the control node path aborts the run. A worker failure is
recorded on that worker and the run continues with the remaining nodes.
Nothing is rolled back.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from .bootstrap import ClusterBootstrapper
from .config import DeploymentConfig
from .errors import DeploymentError, PreconditionMissing
from .identity import IdentityAllocator
from .models import (ClusterToken, DeploymentReport, NodeOutcome, NodeRole, NodeStatus,
                     TemplateRef, VmHandle, VmSpec)
from .provisioner import VmProvisioner
from .proxmox import ProxmoxHost
from .readiness import ReadinessPoller
from .remote import RemoteExecutor
from .shell import require_tools
from .template import TemplateProvider
from .workload import KubectlApi, WorkloadDeployer, build_manifest

logger = logging.getLogger(__name__)


class ClusterOrchestrator:
    """Composes the pipeline stages for one cluster run"""

    def __init__(self, config: DeploymentConfig, proxmox: Optional[ProxmoxHost] = None,
                 remote: Optional[RemoteExecutor] = None,
                 api_factory: Optional[Callable[[str], KubectlApi]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config
        self.proxmox = proxmox or ProxmoxHost(config.proxmox_host, config.proxmox_user)
        self.remote = remote or RemoteExecutor(
            user=config.ssh_user,
            private_key=config.private_key_path,
            known_hosts=Path(config.known_hosts_file).expanduser(),
            host_key_policy=config.host_key_policy,
            timeout=config.remote_timeout,
            proxmox=self.proxmox,
            sleep=sleep,
        )
        self.templates = TemplateProvider(
            self.proxmox, config.storage, config.bridge, config.template_name,
            config.image_download_timeout,
        )
        self.provisioner = VmProvisioner(self.proxmox, config.storage, config.ssh_user, config.disk)
        self.poller = ReadinessPoller(
            self.proxmox, config.poll_interval, config.poll_attempts,
            config.private_networks, sleep=sleep,
        )
        self.bootstrapper = ClusterBootstrapper(
            self.remote, config.k3s_install_url, config.k3s_version, config.k3s_server_args,
            config.k3s_token_path, config.k3s_api_port,
        )
        self.deployer = WorkloadDeployer(
            api_factory or (lambda address: KubectlApi(self.remote, address)),
            config.workload, config.wait_for_api, config.poll_attempts, config.poll_interval,
            sleep=sleep,
        )
        self.durations = {}
        # populated once the control node is up; survives an aborted run
        self.report: Optional[DeploymentReport] = None

    def check_prerequisites(self):
        tools = ["ssh"]
        tools += ["scp"] if self.config.remote_hypervisor else ["qm", "pvesh"]
        require_tools(tools)
        if not self.config.public_key_path.exists():
            raise PreconditionMissing(f"SSH public key not found: {self.config.public_key_path}")

    async def _timed(self, phase: str, coro):
        start = time.time()
        try:
            return await coro
        finally:
            self.durations[phase] = time.time() - start
            logger.info(f"Phase {phase} finished in {self.durations[phase]:.1f}s")

    def _specs(self, identities: List[int]) -> List[VmSpec]:
        key = self.config.public_key_path.read_text().strip()
        names = [self.config.control_name] + self.config.worker_names
        return [
            VmSpec(identity, name, self.config.cores, self.config.memory_mb,
                   self.config.disk_growth_gb, self.config.bridge, key)
            for identity, name in zip(identities, names)
        ]

    async def allocate(self) -> List[int]:
        """Reserve identities for the control node and every worker from one snapshot"""
        inventory = await self.proxmox.vm_ids()
        allocator = IdentityAllocator(inventory | {self.config.template_id},
                                      self.config.identity_floor)
        workers = self.config.worker_ids or [None] * self.config.worker_count
        return allocator.allocate_block([self.config.control_id, *workers])

    async def await_reachable(self, handle: VmHandle):
        await self.poller.await_address(handle)
        await self.remote.wait_until_reachable(handle, self.config.ssh_ready_attempts,
                                               self.config.poll_interval)

    async def bring_up(self, spec: VmSpec, template: TemplateRef, role: NodeRole) -> VmHandle:
        handle = await self.provisioner.provision(spec, template, role)
        await self.await_reachable(handle)
        return handle

    async def _worker_bring_up(self, spec: VmSpec, template: TemplateRef) -> NodeOutcome:
        # replaced by the provisioned handle so a found address survives a later failure
        handle = VmHandle(spec.identity, spec.name, NodeRole.WORKER)
        try:
            handle = await self.provisioner.provision(spec, template, NodeRole.WORKER)
            await self.await_reachable(handle)
        except DeploymentError as e:
            logger.error(f"❌ Worker {spec.name} failed to come up: {e}")
            return NodeOutcome(handle, NodeStatus.FAILED, str(e))
        return NodeOutcome(handle, NodeStatus.READY)

    async def _worker_join(self, outcome: NodeOutcome, control: VmHandle, token: ClusterToken):
        try:
            await self.bootstrapper.install_worker(outcome.handle.address, control.address, token)
        except DeploymentError as e:
            logger.error(f"❌ Worker {outcome.handle.name} failed to join: {e}")
            outcome.status = NodeStatus.FAILED
            outcome.message = str(e)
            return
        outcome.status = NodeStatus.JOINED

    async def run(self) -> DeploymentReport:
        """Execute the full pipeline; DeploymentError escapes only for control-path failures"""
        logger.info("🚀 Starting k3s cluster deployment")
        self.remote.reset_known_hosts()
        template = await self._timed("template", self.templates.ensure_template(
            TemplateRef(self.config.template_id), self.config.image_url))

        identities = await self.allocate()
        control_spec, *worker_specs = self._specs(identities)

        control = await self._timed("control_provision",
                                    self.bring_up(control_spec, template, NodeRole.CONTROL))
        report = DeploymentReport(NodeOutcome(control, NodeStatus.READY), durations=self.durations)
        self.report = report

        report.workers = await self._timed("worker_provision", asyncio.gather(
            *(self._worker_bring_up(spec, template) for spec in worker_specs)))

        token = await self._timed("control_bootstrap",
                                  self.bootstrapper.install_control(control.address))
        report.control.status = NodeStatus.JOINED

        ready = [w for w in report.workers if w.status == NodeStatus.READY]
        await self._timed("worker_bootstrap", asyncio.gather(
            *(self._worker_join(w, control, token) for w in ready)))
        self.bootstrapper.complete()

        report.endpoint = await self._timed("workload", self.deployer.deploy(
            control.address, build_manifest(self.config.workload)))
        return report


def print_report(report: DeploymentReport):
    """Print the operator-facing summary"""
    print("\n" + "=" * 60)
    print("K3S CLUSTER + MINIO - DEPLOYMENT REPORT")
    print("=" * 60)

    status_icon = {
        NodeStatus.JOINED: "✅",
        NodeStatus.READY: "⏳",
        NodeStatus.FAILED: "❌",
        NodeStatus.PENDING: "⏸️",
    }
    for outcome in [report.control, *report.workers]:
        handle = outcome.handle
        address = handle.address if handle.ready else "-"
        detail = f" - {outcome.message}" if outcome.message else ""
        print(f"{status_icon[outcome.status]} {handle.name} ({handle.identity}, "
              f"{handle.role.value}) {address}{detail}")

    print(f"\nWorkers: {len(report.healthy_workers)} joined, {len(report.failed_workers)} failed")
    if report.endpoint:
        endpoint = report.endpoint
        print(f"\nControl node: {endpoint.control_address}")
        print(f"MinIO API:     {endpoint.api_url}")
        print(f"MinIO console: {endpoint.console_url}")
        print(f"Credentials:   {endpoint.credentials[0]} / {endpoint.credentials[1]}")
    print("=" * 60)
