"""
Readiness poller

Polls the guest agent of a freshly started VM until it reports an address on
a private network, at a fixed interval and for a fixed number of attempts.
"""

import asyncio
import ipaddress
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

from .errors import ReadinessTimeout
from .models import VmHandle
from .proxmox import ProxmoxHost

logger = logging.getLogger(__name__)

DEFAULT_PRIVATE_NETWORKS = ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")


def select_private_address(interfaces: List[dict],
                           networks: Iterable[str] = DEFAULT_PRIVATE_NETWORKS) -> Optional[str]:
    """First IPv4 address, in report order, that falls inside one of ``networks``

    Loopback, link-local and public addresses never qualify.
    """
    nets = [ipaddress.ip_network(n) for n in networks]
    for interface in interfaces:
        for entry in interface.get('ip-addresses', []) or []:
            if entry.get('ip-address-type', 'ipv4') != 'ipv4':
                continue
            try:
                ip = ipaddress.ip_address(entry.get('ip-address', ''))
            except ValueError:
                continue
            if ip.is_loopback or ip.is_link_local:
                continue
            if any(ip in net for net in nets):
                return str(ip)
    return None


class ReadinessPoller:
    def __init__(self, proxmox: ProxmoxHost, interval: float = 5.0, attempts: int = 30,
                 networks: Iterable[str] = DEFAULT_PRIVATE_NETWORKS,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.proxmox = proxmox
        self.interval = interval
        self.attempts = attempts
        self.networks = list(networks)
        self.sleep = sleep

    async def await_address(self, handle: VmHandle) -> VmHandle:
        logger.info(f"[...] Waiting for IP of VM {handle.name} ({handle.identity})")
        for attempt in range(1, self.attempts + 1):
            interfaces = await self.proxmox.guest_network_interfaces(handle.identity)
            address = select_private_address(interfaces, self.networks)
            if address:
                handle.set_address(address)
                logger.info(f"[✓] VM {handle.name} is up at {address}")
                return handle
            logger.debug(f"Attempt {attempt}/{self.attempts} - no private address for VM {handle.identity}")
            if attempt < self.attempts:
                await self.sleep(self.interval)

        logger.error(f"[x] No IP found for VM {handle.name} ({handle.identity})")
        raise ReadinessTimeout(handle.identity, self.attempts)
