"""
Provider contract shared by every way of fulfilling a sandbox request.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from preview_sandbox.schemas import SandboxType


@dataclass
class ProvisionRequest:
    """What a provider needs to stand up a preview."""
    sandbox_id: str
    project_id: str
    files: Dict[str, str]
    framework: str
    port: int


@dataclass
class ProvisionResult:
    """A provisioned preview."""
    url: str
    type: SandboxType
    runtime_id: Optional[str] = None
    port: Optional[int] = None
    logs: List[str] = field(default_factory=list)


class PreviewProvider(ABC):
    """
    One strategy for turning generated files into a preview URL.

    Attributes:
        name: Short identifier used in logs
        sandbox_type: Execution kind recorded on the sandbox
        timeout: Per-attempt timeout in seconds (None uses the chain default)
        last_resort: True for providers that never fail
    """

    name: str = "provider"
    sandbox_type: SandboxType = SandboxType.STATIC
    timeout: Optional[float] = None
    last_resort: bool = False

    @abstractmethod
    async def attempt_provision(self, request: ProvisionRequest) -> ProvisionResult:
        """
        Provision a preview.

        Raises:
            RuntimeUnavailable: Transient failure; the chain may retry
            BuildError, ProviderError: Permanent failure; the chain moves on
        """

    async def release(self, result: ProvisionResult, sandbox_id: str) -> None:
        """Free resources held by a result that will not be used."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
