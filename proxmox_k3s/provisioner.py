"""
VM provisioner: clone the template, configure, grow the disk, start.
"""

import logging
import os
import tempfile
from pathlib import Path

from .errors import CloneFailed, ConfigurationFailed, HypervisorError
from .models import NodeRole, TemplateRef, VmHandle, VmSpec
from .proxmox import ProxmoxHost

logger = logging.getLogger(__name__)


class VmProvisioner:
    def __init__(self, proxmox: ProxmoxHost, storage: str, ssh_user: str = "ubuntu",
                 disk: str = "scsi0"):
        self.proxmox = proxmox
        self.storage = storage
        self.ssh_user = ssh_user
        self.disk = disk

    async def provision(self, spec: VmSpec, template: TemplateRef,
                        role: NodeRole = NodeRole.WORKER) -> VmHandle:
        if not template.present:
            raise ValueError(f"Template {template.identity} must exist before cloning")

        logger.info(f"[+] Creating VM {spec.name} (ID: {spec.identity})")
        try:
            await self.proxmox.clone(template.identity, spec.identity, spec.name, self.storage)
        except HypervisorError as e:
            raise CloneFailed(f"Clone of {template.identity} to {spec.identity} failed: {e.stderr}") from e

        await self._ensure_stopped(spec.identity)

        try:
            await self.proxmox.set(spec.identity, {
                "cores": spec.cores,
                "memory": spec.memory_mb,
                "net0": f"virtio,bridge={spec.bridge}",
            })
            await self._configure_cloud_init(spec)
        except HypervisorError as e:
            raise ConfigurationFailed(f"Could not configure VM {spec.identity}: {e.stderr}") from e

        if spec.disk_growth_gb:
            try:
                await self.proxmox.resize(spec.identity, self.disk, f"+{spec.disk_growth_gb}G")
            except HypervisorError as e:
                logger.warning(f"⚠️  Could not grow disk of VM {spec.identity}: {e.stderr}")

        try:
            await self.proxmox.start(spec.identity)
        except HypervisorError as e:
            raise ConfigurationFailed(f"Could not start VM {spec.identity}: {e.stderr}") from e

        logger.info(f"VM {spec.name} started")
        return VmHandle(spec.identity, spec.name, role)

    async def _ensure_stopped(self, vmid: int):
        try:
            if await self.proxmox.status(vmid) == "running":
                await self.proxmox.stop(vmid)
        except HypervisorError as e:
            # qm reports "not running" as an error when the VM stopped in between
            if "not running" not in e.stderr:
                raise ConfigurationFailed(f"Could not stop VM {vmid}: {e.stderr}") from e

    async def _configure_cloud_init(self, spec: VmSpec):
        fd, key_file = tempfile.mkstemp(prefix=f"sshkey-{spec.identity}-", suffix=".pub")
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(spec.ssh_public_key.strip() + "\n")
            async with self.proxmox.staged(Path(key_file)) as host_key_file:
                await self.proxmox.set(spec.identity, {
                    "ciuser": self.ssh_user,
                    "sshkeys": host_key_file,
                    "ipconfig0": "ip=dhcp",
                })
        finally:
            os.remove(key_file)
