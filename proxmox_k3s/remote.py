"""
Remote command channel to the cluster nodes over ssh

Host keys are handled according to a policy:

- ``pinned``: keys are read from the VM through the hypervisor's guest agent
  and written to a known_hosts file, emptied at the start of each run,
  before the first connection;
  ssh then verifies strictly against that file.
- ``accept-new``: trust on first use into the run-scoped file.
- ``strict``: only keys already present in the file are accepted.
- ``off``: no verification.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set

from .errors import CommandTimeout, HypervisorError, RemoteCommandFailed
from .models import VmHandle
from .proxmox import ProxmoxHost
from .shell import CommandResult, run_command

logger = logging.getLogger(__name__)

HOST_KEY_COMMAND = ["sh", "-c", "cat /etc/ssh/ssh_host_*_key.pub 2>/dev/null || true"]

STRICT_HOST_KEY_CHECKING = {
    "pinned": "yes",
    "accept-new": "accept-new",
    "strict": "yes",
    "off": "no",
}


def known_hosts_lines(address: str, host_keys: str) -> List[str]:
    """Turn ``<type> <key> [comment]`` lines into known_hosts entries for ``address``"""
    lines = []
    for line in host_keys.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0].startswith(("ssh-", "ecdsa-")):
            lines.append(f"{address} {parts[0]} {parts[1]}")
    return lines


class RemoteExecutor:
    """Run commands on cluster nodes as the cloud-init user"""

    def __init__(self, user: str, private_key: Path, known_hosts: Path,
                 host_key_policy: str = "pinned", timeout: int = 600,
                 proxmox: Optional[ProxmoxHost] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.user = user
        self.private_key = private_key
        self.known_hosts = known_hosts
        self.host_key_policy = host_key_policy
        self.timeout = timeout
        self.proxmox = proxmox
        self.sleep = sleep
        self._lock = asyncio.Lock()
        self._pinned: Set[str] = set()

    def ssh_command(self, address: str, command: str) -> List[str]:
        options = [
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=10",
            "-o", f"StrictHostKeyChecking={STRICT_HOST_KEY_CHECKING[self.host_key_policy]}",
        ]
        if self.host_key_policy == "off":
            options += ["-o", "UserKnownHostsFile=/dev/null"]
        else:
            options += ["-o", f"UserKnownHostsFile={self.known_hosts}"]
        return ["ssh", "-i", str(self.private_key), *options, f"{self.user}@{address}", command]

    async def run(self, address: str, command: str, input: Optional[str] = None,
                  timeout: Optional[int] = None, description: str = "",
                  check: bool = True) -> CommandResult:
        """Run ``command`` on ``address``; failures and timeouts raise RemoteCommandFailed"""
        description = description or command
        try:
            result = await run_command(
                self.ssh_command(address, command), timeout=timeout or self.timeout,
                input=input, description=f"{description} on {address}",
            )
        except CommandTimeout as e:
            raise RemoteCommandFailed(address, description, stderr=str(e)) from e
        if check and not result.ok:
            raise RemoteCommandFailed(address, description, result.returncode, result.stderr)
        return result

    def reset_known_hosts(self):
        """Start the run with an empty known_hosts file

        Addresses are recycled by DHCP across runs, so entries from an earlier
        run would make ssh reject a fresh VM's keys. ``strict`` keeps the file
        since it is maintained by the operator.
        """
        if self.host_key_policy not in ("pinned", "accept-new"):
            return
        self.known_hosts.parent.mkdir(parents=True, exist_ok=True)
        self.known_hosts.write_text("")
        self._pinned.clear()
        logger.debug(f"Reset known hosts file {self.known_hosts}")

    async def trust(self, handle: VmHandle):
        """Record the host keys of a provisioned VM when keys are pinned"""
        if self.host_key_policy != "pinned" or handle.address in self._pinned:
            return
        if self.proxmox is None:
            raise RemoteCommandFailed(handle.address, "host key pinning",
                                      stderr="no hypervisor available to vouch for the host")
        try:
            host_keys = await self.proxmox.guest_exec(handle.identity, HOST_KEY_COMMAND)
        except HypervisorError as e:
            raise RemoteCommandFailed(handle.address, "host key retrieval", stderr=e.stderr) from e
        lines = known_hosts_lines(handle.address, host_keys)
        if not lines:
            raise RemoteCommandFailed(handle.address, "host key retrieval",
                                      stderr="guest reported no host keys")
        async with self._lock:
            self.known_hosts.parent.mkdir(parents=True, exist_ok=True)
            with open(self.known_hosts, 'a') as f:
                f.write("\n".join(lines) + "\n")
            self._pinned.add(handle.address)
        logger.info(f"Pinned {len(lines)} host key(s) for {handle.name} ({handle.address})")

    async def wait_until_reachable(self, handle: VmHandle, attempts: int = 24,
                                   interval: float = 5.0):
        """Pin host keys and retry ssh until the node answers

        Host keys are generated by cloud-init on first boot, so pinning is
        retried together with the connection check.
        """
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                await self.trust(handle)
                await self.run(handle.address, "true", timeout=30, description="ssh check")
                logger.info(f"SSH reachable on {handle.name} ({handle.address})")
                return
            except RemoteCommandFailed as e:
                last_error = e.stderr
                logger.debug(f"Waiting for SSH on {handle.address} ({attempt}/{attempts})")
            if attempt < attempts:
                await self.sleep(interval)
        raise RemoteCommandFailed(handle.address, "ssh connection", stderr=last_error)
