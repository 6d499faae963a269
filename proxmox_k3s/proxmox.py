"""
Proxmox virtualization control surface

Thin async wrapper around the ``qm`` CLI. Commands run locally when no
Proxmox host is configured, otherwise over SSH as root on the host.
"""

import json
import logging
import re
import shlex
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Set

from .errors import HypervisorError
from .shell import CommandResult, run_command

logger = logging.getLogger(__name__)

STAGING_DIR = "/var/tmp"


class ProxmoxHost:
    """Execute qm operations against one Proxmox node"""

    def __init__(self, host: str = "", user: str = "root", timeout: int = 300):
        self.host = host
        self.user = user
        self.timeout = timeout

    @property
    def remote(self) -> bool:
        return bool(self.host)

    def _wrap(self, args: List[str]) -> List[str]:
        if not self.remote:
            return args
        return [
            "ssh", "-o", "ConnectTimeout=10", "-o", "BatchMode=yes",
            f"{self.user}@{self.host}", shlex.join(args),
        ]

    async def run(self, args: List[str], timeout: Optional[int] = None,
                  check: bool = True) -> CommandResult:
        result = await run_command(
            self._wrap(args), timeout=timeout or self.timeout, description=" ".join(args)
        )
        if check and not result.ok:
            raise HypervisorError(" ".join(args[:3]), result.returncode, result.stderr)
        return result

    async def qm(self, *args, timeout: Optional[int] = None, check: bool = True) -> CommandResult:
        return await self.run(["qm", *[str(a) for a in args]], timeout=timeout, check=check)

    # === INVENTORY ===

    async def vm_ids(self) -> Set[int]:
        """Identities of every VM, template and container in the cluster

        LXC containers share the id space with VMs but are missing from
        ``qm list``, so the cluster resource index is used instead.
        """
        result = await self.run([
            "pvesh", "get", "/cluster/resources", "--type", "vm", "--output-format", "json",
        ])
        return parse_resource_ids(result.stdout)

    async def exists(self, vmid: int) -> bool:
        result = await self.qm("status", vmid, check=False)
        return result.ok

    async def status(self, vmid: int) -> str:
        """Power state reported by ``qm status`` (running, stopped, ...)"""
        result = await self.qm("status", vmid)
        match = re.search(r"status:\s*(\S+)", result.stdout)
        return match.group(1) if match else "unknown"

    # === LIFECYCLE ===

    async def create(self, vmid: int, options: Dict[str, str]):
        await self.qm("create", vmid, *_flags(options))

    async def clone(self, template_id: int, vmid: int, name: str, storage: str):
        await self.qm("clone", template_id, vmid, "--name", name, "--full", "true",
                      "--storage", storage, timeout=1800)

    async def set(self, vmid: int, options: Dict[str, str]):
        await self.qm("set", vmid, *_flags(options))

    async def resize(self, vmid: int, disk: str, delta: str):
        await self.qm("resize", vmid, disk, delta)

    async def start(self, vmid: int):
        await self.qm("start", vmid)

    async def stop(self, vmid: int):
        await self.qm("stop", vmid)

    async def import_disk(self, vmid: int, image_path: str, storage: str) -> str:
        """Import a disk image and return the volume id it was stored as"""
        result = await self.qm("importdisk", vmid, image_path, storage, timeout=1800)
        return parse_imported_volume(result.stdout, vmid, storage)

    async def template(self, vmid: int):
        await self.qm("template", vmid)

    # === GUEST AGENT ===

    async def guest_network_interfaces(self, vmid: int) -> List[dict]:
        """Interfaces reported by the guest agent; empty when it is not up yet"""
        result = await self.qm("guest", "cmd", vmid, "network-get-interfaces",
                               timeout=30, check=False)
        if not result.ok or not result.stdout.strip():
            return []
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.debug(f"Unparseable guest agent reply for VM {vmid}")
            return []
        # Older releases wrap the list in {"return": [...]}
        interfaces = data.get('return', []) if isinstance(data, dict) else data
        return interfaces if isinstance(interfaces, list) else []

    async def guest_exec(self, vmid: int, args: List[str]) -> str:
        """Run a command inside the guest through the agent and return its stdout"""
        result = await self.qm("guest", "exec", vmid, "--", *args, timeout=60)
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise HypervisorError("qm guest exec", 0, f"unparseable reply: {e}") from e
        if data.get("exitcode", 0) != 0:
            raise HypervisorError("qm guest exec", data["exitcode"], data.get("err-data", ""))
        return data.get("out-data", "")

    # === FILE STAGING ===

    async def upload(self, local_path: Path) -> str:
        """Make a local file visible to qm and return its path on the host"""
        if not self.remote:
            return str(local_path)
        remote_path = f"{STAGING_DIR}/{local_path.name}"
        result = await run_command(
            ["scp", "-o", "ConnectTimeout=10", "-o", "BatchMode=yes",
             str(local_path), f"{self.user}@{self.host}:{remote_path}"],
            timeout=1800, description=f"scp {local_path.name} to {self.host}",
        )
        if not result.ok:
            raise HypervisorError("scp", result.returncode, result.stderr)
        return remote_path

    async def remove(self, path: str):
        """Remove a staged file from the host; local files are left to their owner"""
        if self.remote:
            await self.run(["rm", "-f", path], check=False)

    @asynccontextmanager
    async def staged(self, local_path: Path):
        """Upload a file for the duration of the block and remove it from the host afterwards"""
        path = await self.upload(local_path)
        try:
            yield path
        finally:
            await self.remove(path)


def _flags(options: Dict[str, str]) -> List[str]:
    args = []
    for key, value in options.items():
        args += [f"--{key}", str(value)]
    return args


def parse_imported_volume(output: str, vmid: int, storage: str) -> str:
    """Extract the volume id from ``qm importdisk`` output"""
    match = re.search(r"unused\d+:(\S+?)'?\s*$", output.strip(), re.MULTILINE)
    if match:
        return match.group(1).rstrip("'")
    logger.warning("Could not find imported volume in importdisk output, assuming disk-0")
    return f"{storage}:vm-{vmid}-disk-0"


def parse_resource_ids(output: str) -> Set[int]:
    """Collect ``vmid`` values from ``pvesh get /cluster/resources`` JSON"""
    try:
        resources = json.loads(output or "[]")
    except json.JSONDecodeError as e:
        raise HypervisorError("pvesh get /cluster/resources", 0, f"unparseable reply: {e}") from e
    return {int(r['vmid']) for r in resources if isinstance(r, dict) and 'vmid' in r}
