"""
k3s cluster bootstrap

The control node is installed first and hands back its join token; only then
may agents join. The token travels to each worker over stdin so it never
appears on a command line.
"""

import logging
import shlex
from enum import Enum
from typing import List, Optional

from .errors import BootstrapOrderError, RemoteCommandFailed
from .models import ClusterToken
from .remote import RemoteExecutor

logger = logging.getLogger(__name__)


class BootstrapState(Enum):
    UNBOOTSTRAPPED = "unbootstrapped"
    CONTROL_READY = "control_ready"
    CLUSTER_READY = "cluster_ready"


class ClusterBootstrapper:
    def __init__(self, remote: RemoteExecutor, install_url: str = "https://get.k3s.io",
                 version: Optional[str] = None, server_args: Optional[List[str]] = None,
                 token_path: str = "/var/lib/rancher/k3s/server/node-token",
                 api_port: int = 6443):
        self.remote = remote
        self.install_url = install_url
        self.version = version
        self.server_args = server_args or []
        self.token_path = token_path
        self.api_port = api_port
        self.state = BootstrapState.UNBOOTSTRAPPED

    def _installer_env(self) -> str:
        return f"INSTALL_K3S_VERSION={shlex.quote(self.version)} " if self.version else ""

    def control_command(self) -> str:
        args = " ".join(shlex.quote(a) for a in ["server", *self.server_args])
        return (f"curl -sfL {shlex.quote(self.install_url)} | "
                f"{self._installer_env()}sh -s - {args}")

    def worker_command(self, control_address: str) -> str:
        url = f"https://{control_address}:{self.api_port}"
        script = (f"read -r K3S_TOKEN && export K3S_TOKEN && "
                  f"curl -sfL {shlex.quote(self.install_url)} | "
                  f"K3S_URL={shlex.quote(url)} {self._installer_env()}sh -s - agent")
        return f"sh -c {shlex.quote(script)}"

    async def install_control(self, address: str) -> ClusterToken:
        """Install the k3s server and return its join token"""
        logger.info(f"[+] Installing k3s server on control node ({address})")
        await self.remote.run(address, self.control_command(), description="k3s server install")

        result = await self.remote.run(
            address, f"sudo cat {shlex.quote(self.token_path)}", description="token retrieval"
        )
        value = result.stdout.strip()
        if not value:
            raise RemoteCommandFailed(address, "token retrieval", stderr="token file is empty")

        self.state = BootstrapState.CONTROL_READY
        logger.info(f"✅ Control node ready at {address}")
        return ClusterToken(value)

    async def install_worker(self, address: str, control_address: str, token: ClusterToken):
        """Join ``address`` to the cluster as an agent"""
        if self.state == BootstrapState.UNBOOTSTRAPPED:
            raise BootstrapOrderError(f"Cannot join {address} before the control node is installed")
        logger.info(f"[+] Installing k3s agent on worker ({address})")
        await self.remote.run(
            address, self.worker_command(control_address), input=token.value + "\n",
            description="k3s agent install",
        )
        logger.info(f"✅ Worker {address} joined {control_address}")

    def complete(self):
        if self.state == BootstrapState.UNBOOTSTRAPPED:
            raise BootstrapOrderError("Control node was never installed")
        self.state = BootstrapState.CLUSTER_READY
