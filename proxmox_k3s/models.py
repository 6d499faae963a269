"""
Value types passed between pipeline stages
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import AddressNotReady


class NodeRole(Enum):
    CONTROL = "control"
    WORKER = "worker"


class NodeStatus(Enum):
    """Per-node outcome reported at the end of a run"""
    PENDING = "pending"
    READY = "ready"
    JOINED = "joined"
    FAILED = "failed"


@dataclass(frozen=True)
class VmSpec:
    """Everything needed to create one VM"""
    identity: int
    name: str
    cores: int
    memory_mb: int
    disk_growth_gb: int
    bridge: str
    ssh_public_key: str


@dataclass(frozen=True)
class TemplateRef:
    identity: int
    present: bool = False


@dataclass
class VmHandle:
    """A provisioned VM; the address is set once by the readiness poller"""
    identity: int
    name: str
    role: NodeRole
    _address: Optional[str] = field(default=None, repr=False)

    @property
    def ready(self) -> bool:
        return self._address is not None

    @property
    def address(self) -> str:
        if self._address is None:
            raise AddressNotReady(f"VM {self.name} ({self.identity}) has no address yet")
        return self._address

    def set_address(self, address: str):
        if self._address is not None:
            raise ValueError(f"Address of {self.name} already set to {self._address}")
        self._address = address

    def __repr__(self):
        return f"VmHandle({self.identity}, {self.name!r}, {self.role.value}, address={self._address})"


@dataclass(frozen=True)
class ClusterToken:
    """k3s join secret, kept in memory only"""
    value: str

    def __post_init__(self):
        if not self.value:
            raise ValueError("Cluster token must not be empty")

    def __repr__(self):
        return "ClusterToken(****)"

    __str__ = __repr__


@dataclass(frozen=True)
class ClusterEndpoint:
    control_address: str
    api_port: int
    console_port: int
    credentials: Tuple[str, str]

    @property
    def api_url(self) -> str:
        return f"http://{self.control_address}:{self.api_port}"

    @property
    def console_url(self) -> str:
        return f"http://{self.control_address}:{self.console_port}"

    def __repr__(self):
        return (f"ClusterEndpoint({self.control_address}, api={self.api_port}, "
                f"console={self.console_port})")


@dataclass
class NodeOutcome:
    handle: VmHandle
    status: NodeStatus = NodeStatus.PENDING
    message: str = ""


@dataclass
class DeploymentReport:
    """Aggregated result of a run that got past the control node"""
    control: NodeOutcome
    workers: List[NodeOutcome] = field(default_factory=list)
    endpoint: Optional[ClusterEndpoint] = None
    durations: Dict[str, float] = field(default_factory=dict)

    @property
    def healthy_workers(self) -> List[NodeOutcome]:
        return [w for w in self.workers if w.status == NodeStatus.JOINED]

    @property
    def failed_workers(self) -> List[NodeOutcome]:
        return [w for w in self.workers if w.status == NodeStatus.FAILED]

    @property
    def degraded(self) -> bool:
        return bool(self.failed_workers)
