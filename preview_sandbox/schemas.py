"""
Pydantic schemas for sandbox records and their transport form.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SandboxStatus(str, Enum):
    """Lifecycle status of a sandbox."""
    CREATING = "CREATING"
    RUNNING = "RUNNING"
    RESTARTING = "RESTARTING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


class SandboxType(str, Enum):
    """Execution kind backing a sandbox, in decreasing preview fidelity."""
    DOCKER = "DOCKER"
    E2B = "E2B"
    CODESANDBOX = "CODESANDBOX"
    STACKBLITZ = "STACKBLITZ"
    STATIC = "STATIC"


# Status edges. Same-status writes are always allowed.
# CREATING never goes straight to STOPPED: a stop during creation passes
# through ERROR first.
ALLOWED_TRANSITIONS: Dict[SandboxStatus, FrozenSet[SandboxStatus]] = {
    SandboxStatus.CREATING: frozenset({SandboxStatus.RUNNING, SandboxStatus.ERROR}),
    SandboxStatus.RUNNING: frozenset({
        SandboxStatus.ERROR,
        SandboxStatus.RESTARTING,
        SandboxStatus.STOPPED,
    }),
    SandboxStatus.RESTARTING: frozenset({SandboxStatus.RUNNING, SandboxStatus.ERROR}),
    SandboxStatus.ERROR: frozenset({SandboxStatus.RESTARTING, SandboxStatus.STOPPED}),
    SandboxStatus.STOPPED: frozenset({SandboxStatus.RESTARTING}),
}

# Statuses in which a sandbox holds its port against other sandboxes.
ACTIVE_STATUSES = frozenset({
    SandboxStatus.CREATING,
    SandboxStatus.RUNNING,
    SandboxStatus.RESTARTING,
})


def can_transition(current: SandboxStatus, target: SandboxStatus) -> bool:
    """Check whether a status write from `current` to `target` is legal."""
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


class Sandbox(BaseModel):
    """Registry record of one sandbox."""
    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(..., description="Opaque sandbox identifier")
    project_id: str = Field(..., description="Owning project reference")
    runtime_id: Optional[str] = Field(None, description="Container or provider handle")
    url: Optional[str] = Field(None, description="Preview URL")
    port: Optional[int] = Field(None, description="Host port held by the sandbox")
    status: SandboxStatus = Field(SandboxStatus.CREATING, description="Lifecycle status")
    type: SandboxType = Field(SandboxType.DOCKER, description="Execution kind")
    framework: Optional[str] = Field(None, description="Framework tag of the generated project")
    logs: List[str] = Field(default_factory=list, description="Bounded log tail")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds since the sandbox was created."""
        return ((now or utcnow()) - self.created_at).total_seconds()

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds since the record last changed."""
        return ((now or utcnow()) - self.updated_at).total_seconds()


class SandboxInfo(BaseModel):
    """Sandbox as returned to the API layer, with logs truncated for transport."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    project_id: str = Field(..., serialization_alias="projectId")
    runtime_id: Optional[str] = Field(None, serialization_alias="runtimeId")
    url: Optional[str] = None
    port: Optional[int] = None
    status: SandboxStatus
    type: SandboxType
    logs: List[str] = Field(default_factory=list)
    created_at: datetime = Field(..., serialization_alias="createdAt")
    updated_at: datetime = Field(..., serialization_alias="updatedAt")

    @classmethod
    def from_record(cls, record: Sandbox, log_lines: int) -> "SandboxInfo":
        logs = record.logs[-log_lines:] if log_lines > 0 else []
        return cls(
            id=record.id,
            project_id=record.project_id,
            runtime_id=record.runtime_id,
            url=record.url,
            port=record.port,
            status=record.status,
            type=record.type,
            logs=logs,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class CreateSandboxRequest(BaseModel):
    """Body of a create request from the API layer."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId", min_length=1, description="Owning project")
    framework: str = Field(..., min_length=1, description="Framework tag, e.g. nextjs")
    files: Dict[str, str] = Field(default_factory=dict, description="Map of file path to file content")
    preferred_port: Optional[int] = Field(None, alias="preferredPort", description="Requested host port")
