from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from proxmox_k3s.config import DeploymentConfig
from proxmox_k3s.errors import HypervisorError, RemoteCommandFailed
from proxmox_k3s.shell import CommandResult


def interface(name: str, *addresses: str) -> dict:
    return {
        "name": name,
        "ip-addresses": [
            {"ip-address": a, "ip-address-type": "ipv6" if ":" in a else "ipv4", "prefix": 24}
            for a in addresses
        ],
    }


class FakeSleep:
    """Records requested delays instead of waiting"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float):
        self.calls.append(delay)


class FakeProxmox:
    """In-memory stand-in for ProxmoxHost that records every operation"""

    remote = False

    def __init__(self, existing: Optional[Set[int]] = None,
                 addresses: Optional[Dict[int, str]] = None):
        self.vms: Set[int] = set(existing or ())
        self.running: Set[int] = set()
        self.templates: Set[int] = set()
        self.addresses: Dict[int, str] = dict(addresses or {})
        self.failures: Dict[Tuple[str, int], str] = {}
        self.calls: List[Tuple] = []
        self.polls: Dict[int, int] = {}
        self.staged_files: List[str] = []

    def fail(self, op: str, vmid: int, stderr: str = "boom"):
        self.failures[(op, vmid)] = stderr

    def _record(self, op: str, vmid: int, *args):
        self.calls.append((op, vmid, *args))
        if (op, vmid) in self.failures:
            raise HypervisorError(f"qm {op} {vmid}", 255, self.failures[(op, vmid)])

    def ops(self, op: str) -> List[Tuple]:
        return [c for c in self.calls if c[0] == op]

    async def vm_ids(self) -> Set[int]:
        return set(self.vms)

    async def exists(self, vmid: int) -> bool:
        return vmid in self.vms

    async def status(self, vmid: int) -> str:
        self._record("status", vmid)
        return "running" if vmid in self.running else "stopped"

    async def create(self, vmid: int, options: dict):
        self._record("create", vmid, options)
        self.vms.add(vmid)

    async def clone(self, template_id: int, vmid: int, name: str, storage: str):
        self._record("clone", vmid, template_id, name, storage)
        if vmid in self.vms:
            raise HypervisorError(f"qm clone {template_id}", 255, f"VM {vmid} already exists")
        self.vms.add(vmid)

    async def set(self, vmid: int, options: dict):
        self._record("set", vmid, options)

    async def resize(self, vmid: int, disk: str, delta: str):
        self._record("resize", vmid, disk, delta)

    async def start(self, vmid: int):
        self._record("start", vmid)
        self.running.add(vmid)

    async def stop(self, vmid: int):
        self._record("stop", vmid)
        self.running.discard(vmid)

    async def import_disk(self, vmid: int, image_path: str, storage: str) -> str:
        self._record("import_disk", vmid, image_path, storage)
        return f"{storage}:vm-{vmid}-disk-0"

    async def template(self, vmid: int):
        self._record("template", vmid)
        self.templates.add(vmid)

    async def guest_network_interfaces(self, vmid: int) -> List[dict]:
        self.polls[vmid] = self.polls.get(vmid, 0) + 1
        if vmid in self.addresses and vmid in self.running:
            return [interface("lo", "127.0.0.1"), interface("eth0", self.addresses[vmid])]
        return [interface("lo", "127.0.0.1")]

    async def guest_exec(self, vmid: int, args: List[str]) -> str:
        self._record("guest_exec", vmid, args)
        return f"ssh-ed25519 AAAAC3NzaKEY{vmid} root@vm{vmid}\n"

    @asynccontextmanager
    async def staged(self, local_path: Path):
        self.staged_files.append(str(local_path))
        yield str(local_path)


class FakeRemote:
    """Stand-in for RemoteExecutor with a fixed k3s token"""

    def __init__(self, token: str = "K10abc::server:secret"):
        self.token = token
        self.calls: List[Tuple[str, str]] = []
        self.inputs: Dict[str, str] = {}
        self.failing: Set[Tuple[str, str]] = set()
        self.reachable: List[str] = []
        self.unreachable: Set[str] = set()
        self.resets = 0

    def fail(self, address: str, description: str):
        self.failing.add((address, description))

    async def run(self, address: str, command: str, input: Optional[str] = None,
                  timeout: Optional[int] = None, description: str = "",
                  check: bool = True) -> CommandResult:
        description = description or command
        self.calls.append((address, description))
        if input is not None:
            self.inputs[address] = input
        if (address, description) in self.failing:
            if check:
                raise RemoteCommandFailed(address, description, 1, "installer failed")
            return CommandResult(1, "", "installer failed")
        if "node-token" in command:
            return CommandResult(0, self.token + "\n", "")
        return CommandResult(0, "", "")

    def reset_known_hosts(self):
        self.resets += 1

    async def trust(self, handle):
        pass

    async def wait_until_reachable(self, handle, attempts: int = 24, interval: float = 5.0):
        if handle.address in self.unreachable:
            raise RemoteCommandFailed(handle.address, "ssh connection", stderr="Connection refused")
        self.reachable.append(handle.address)


class FakeClusterApi:
    def __init__(self, node_ports: Optional[Dict[str, int]] = None, ready_after: int = 0):
        self.applied: List[List[dict]] = []
        self._node_ports = node_ports or {}
        self.ready_after = ready_after
        self.ready_checks = 0

    async def ready(self) -> bool:
        self.ready_checks += 1
        return self.ready_checks > self.ready_after

    async def apply(self, documents: List[dict]):
        self.applied.append(documents)

    async def node_ports(self, namespace: str, name: str) -> Dict[str, int]:
        return dict(self._node_ports)


@pytest.fixture
def public_key(tmp_path) -> Path:
    path = tmp_path / "id_test.pub"
    path.write_text("ssh-ed25519 AAAAC3NzaTESTKEY operator@mgmt\n")
    return path


@pytest.fixture
def config(public_key, tmp_path) -> DeploymentConfig:
    return DeploymentConfig(
        ssh_public_key=str(public_key),
        known_hosts_file=str(tmp_path / "known_hosts"),
        log_file=None,
    )


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()
