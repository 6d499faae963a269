"""
Deployment configuration

Static settings for one cluster run: node counts, VM sizing, hypervisor and
remote-channel settings, k3s installer options and the MinIO workload.
Values come from a YAML file layered over the dataclass defaults.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import InvalidConfig

logger = logging.getLogger(__name__)

HOST_KEY_POLICIES = ("pinned", "accept-new", "strict", "off")

CONFIG_SEARCH_PATHS = [
    Path("cluster.yaml"),
    Path.home() / ".config" / "proxmox-k3s.yaml",
]


@dataclass
class WorkloadConfig:
    """MinIO object-storage workload settings"""
    namespace: str = "minio"
    name: str = "minio"
    image: str = "quay.io/minio/minio:latest"
    root_user: str = "minioadmin"
    root_password: str = "minioadmin"
    api_port: int = 9000
    console_port: int = 9001
    # None lets the cluster assign a NodePort
    api_node_port: Optional[int] = 30900
    console_node_port: Optional[int] = 30901


@dataclass
class DeploymentConfig:
    """Centralized deployment configuration"""
    # Cluster shape
    worker_count: int = 2
    control_name: str = "k3s-master"
    worker_name_prefix: str = "k3s-worker"

    # VM identities: fixed when set, auto-allocated from identity_floor otherwise
    control_id: Optional[int] = None
    worker_ids: Optional[List[int]] = None
    identity_floor: int = 100

    # Template
    template_id: int = 9000
    template_name: str = "ubuntu-cloud-template"
    image_url: str = "https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img"
    image_download_timeout: int = 900

    # Proxmox settings (empty host means qm runs locally)
    proxmox_host: str = ""
    proxmox_user: str = "root"
    storage: str = "local-lvm"
    bridge: str = "vmbr0"
    disk: str = "scsi0"

    # Resource allocation
    cores: int = 2
    memory_mb: int = 4096
    disk_growth_gb: int = 20

    # SSH configuration
    ssh_user: str = "ubuntu"
    ssh_public_key: str = "~/.ssh/id_rsa.pub"
    ssh_private_key: Optional[str] = None
    host_key_policy: str = "pinned"
    known_hosts_file: str = "~/.kube-cluster/known_hosts"
    remote_timeout: int = 600
    ssh_ready_attempts: int = 24

    # Readiness polling
    poll_interval: float = 5.0
    poll_attempts: int = 30
    private_networks: List[str] = field(default_factory=lambda: [
        "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"
    ])

    # k3s
    k3s_install_url: str = "https://get.k3s.io"
    k3s_version: Optional[str] = None
    k3s_server_args: List[str] = field(default_factory=lambda: ["--write-kubeconfig-mode", "644"])
    k3s_token_path: str = "/var/lib/rancher/k3s/server/node-token"
    k3s_api_port: int = 6443
    wait_for_api: bool = True

    workload: WorkloadConfig = field(default_factory=WorkloadConfig)

    log_file: Optional[str] = "k3s-deployment.log"

    def __post_init__(self):
        if isinstance(self.workload, dict):
            self.workload = _build(WorkloadConfig, self.workload, "workload")
        self.validate()

    @property
    def public_key_path(self) -> Path:
        return Path(self.ssh_public_key).expanduser()

    @property
    def private_key_path(self) -> Path:
        if self.ssh_private_key:
            return Path(self.ssh_private_key).expanduser()
        public = self.public_key_path
        return public.with_suffix("") if public.suffix == ".pub" else public

    @property
    def worker_names(self) -> List[str]:
        return [f"{self.worker_name_prefix}-{i}" for i in range(1, self.worker_count + 1)]

    @property
    def remote_hypervisor(self) -> bool:
        return bool(self.proxmox_host)

    def validate(self):
        """Reject values the pipeline cannot honour"""
        if self.worker_count < 0:
            raise InvalidConfig(f"worker_count must be >= 0, got {self.worker_count}")
        for name in ("cores", "memory_mb", "poll_attempts", "ssh_ready_attempts", "remote_timeout"):
            if getattr(self, name) <= 0:
                raise InvalidConfig(f"{name} must be positive")
        if self.disk_growth_gb < 0:
            raise InvalidConfig("disk_growth_gb must be >= 0")
        if self.poll_interval < 0:
            raise InvalidConfig("poll_interval must be >= 0")
        if self.host_key_policy not in HOST_KEY_POLICIES:
            raise InvalidConfig(
                f"host_key_policy must be one of {', '.join(HOST_KEY_POLICIES)}, "
                f"got {self.host_key_policy!r}"
            )
        if self.worker_ids is not None:
            if len(self.worker_ids) != self.worker_count:
                raise InvalidConfig(
                    f"worker_ids lists {len(self.worker_ids)} ids for {self.worker_count} workers"
                )
        fixed = [self.control_id] if self.control_id is not None else []
        fixed += list(self.worker_ids or [])
        if len(set(fixed)) != len(fixed):
            raise InvalidConfig(f"Fixed VM identities must be distinct: {fixed}")
        if self.template_id in fixed:
            raise InvalidConfig(f"VM identity {self.template_id} is reserved for the template")


def _build(cls, values: Dict[str, Any], section: str):
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise InvalidConfig(f"Unknown {section} settings: {', '.join(unknown)}")
    try:
        return cls(**values)
    except TypeError as e:
        raise InvalidConfig(str(e)) from e


def load_config(config_path: Optional[str] = None, **overrides) -> DeploymentConfig:
    """Load configuration from YAML, falling back to defaults

    ``overrides`` with a value of None are ignored so CLI flags can be passed
    through unconditionally.
    """
    if config_path:
        candidates = [Path(config_path).expanduser()]
        if not candidates[0].exists():
            raise InvalidConfig(f"Config file not found: {config_path}")
    else:
        candidates = CONFIG_SEARCH_PATHS

    values: Dict[str, Any] = {}
    for path in candidates:
        if path.exists():
            logger.info(f"Loading configuration from {path}")
            try:
                with open(path, 'r') as f:
                    values = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise InvalidConfig(f"Could not parse {path}: {e}") from e
            if not isinstance(values, dict):
                raise InvalidConfig(f"{path} must contain a mapping")
            break
    else:
        logger.warning("No configuration file found, using defaults")

    overrides = {k: v for k, v in overrides.items() if v is not None}
    worker_ids = values.get("worker_ids")
    if (worker_ids is not None and "worker_count" in overrides
            and len(worker_ids) != overrides["worker_count"]):
        logger.warning(
            f"Ignoring fixed worker_ids {worker_ids}: worker count overridden to "
            f"{overrides['worker_count']}, worker identities will be auto-allocated"
        )
        values.pop("worker_ids")
    values.update(overrides)
    return _build(DeploymentConfig, values, "deployment")
