"""
Exception hierarchy for the provisioning pipeline.

Control-node failures abort the whole run; worker failures are caught per node
by the orchestrator and reported as a degraded outcome.
"""

from typing import Optional


class DeploymentError(Exception):
    """Base class for every failure raised by the deployment pipeline"""


class InvalidConfig(DeploymentError):
    """Configuration file or override is malformed"""


class PreconditionMissing(DeploymentError):
    """A required external tool is not installed"""


class CommandTimeout(DeploymentError):
    """A local or remote process exceeded its deadline"""


class HypervisorError(DeploymentError):
    """A qm invocation on the Proxmox host returned non-zero"""

    def __init__(self, command: str, returncode: int, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"{command} failed ({returncode}): {self.stderr}")


class IdentityExhausted(DeploymentError):
    pass


class TemplateCreationFailed(DeploymentError):
    pass


class CloneFailed(DeploymentError):
    pass


class ConfigurationFailed(DeploymentError):
    pass


class ReadinessTimeout(DeploymentError):
    def __init__(self, vmid: int, attempts: int):
        self.vmid = vmid
        self.attempts = attempts
        super().__init__(f"VM {vmid} reported no private address after {attempts} attempts")


class RemoteCommandFailed(DeploymentError):
    def __init__(self, address: str, description: str, returncode: Optional[int] = None,
                 stderr: str = ""):
        self.address = address
        self.returncode = returncode
        self.stderr = stderr.strip()
        message = f"{description} on {address} failed"
        if returncode is not None:
            message += f" ({returncode})"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)


class ManifestApplyFailed(DeploymentError):
    pass


class BootstrapOrderError(DeploymentError):
    """Worker install attempted before the control node produced a token"""


class AddressNotReady(DeploymentError):
    """A VM address was read before the readiness poller populated it"""
