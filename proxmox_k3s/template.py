"""
Template provider

Guarantees a clonable cloud-init template exists on the Proxmox node,
building it from an Ubuntu cloud image when it is missing.
"""

import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
from urllib.parse import urlparse

import requests

from .errors import DeploymentError, PreconditionMissing, TemplateCreationFailed
from .models import TemplateRef
from .proxmox import ProxmoxHost

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def download_image(url: str, destination: Path, timeout: int = 900) -> Path:
    """Stream ``url`` into ``destination``"""
    logger.info(f"Downloading base image {url}")
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(destination, 'wb') as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                f.write(chunk)
    logger.info(f"Downloaded {destination.stat().st_size // (1024 * 1024)} MB to {destination}")
    return destination


@asynccontextmanager
async def fetched_image(url: str, timeout: int = 900) -> AsyncIterator[Path]:
    """Download an image into a private temp directory removed on exit"""
    workdir = Path(tempfile.mkdtemp(prefix="proxmox-k3s-"))
    filename = Path(urlparse(url).path).name or "base-image.img"
    try:
        path = await asyncio.to_thread(download_image, url, workdir / filename, timeout)
        yield path
    finally:
        shutil.rmtree(workdir, ignore_errors=True)
        logger.debug(f"Removed temporary image directory {workdir}")


class TemplateProvider:
    """Creates the base template on demand; a no-op when it already exists"""

    def __init__(self, proxmox: ProxmoxHost, storage: str, bridge: str,
                 name: str = "ubuntu-cloud-template", download_timeout: int = 900):
        self.proxmox = proxmox
        self.storage = storage
        self.bridge = bridge
        self.name = name
        self.download_timeout = download_timeout

    async def ensure_template(self, ref: TemplateRef, image_url: str) -> TemplateRef:
        if await self.proxmox.exists(ref.identity):
            logger.info(f"Template {ref.identity} already exists - skipping creation")
            return TemplateRef(ref.identity, present=True)

        logger.info(f"Creating template {self.name} (ID: {ref.identity})")
        try:
            async with fetched_image(image_url, self.download_timeout) as image:
                async with self.proxmox.staged(image) as host_path:
                    await self._build(ref.identity, host_path)
        except PreconditionMissing:
            raise
        except (requests.RequestException, OSError) as e:
            raise TemplateCreationFailed(f"Could not fetch {image_url}: {e}") from e
        except DeploymentError as e:
            raise TemplateCreationFailed(f"Template {ref.identity} creation failed: {e}") from e

        logger.info(f"✅ Template created: {self.name} (ID: {ref.identity})")
        return TemplateRef(ref.identity, present=True)

    async def _build(self, vmid: int, image_path: str):
        await self.proxmox.create(vmid, {
            "name": self.name,
            "memory": "2048",
            "cores": "2",
            "net0": f"virtio,bridge={self.bridge}",
            "scsihw": "virtio-scsi-pci",
            "ostype": "l26",
            "agent": "enabled=1",
        })
        volume = await self.proxmox.import_disk(vmid, image_path, self.storage)
        await self.proxmox.set(vmid, {
            "scsi0": volume,
            "ide2": f"{self.storage}:cloudinit",
            "boot": "order=scsi0",
            "serial0": "socket",
            "vga": "serial0",
        })
        await self.proxmox.template(vmid)
