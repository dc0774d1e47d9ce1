"""
Sandbox lifecycle for live previews of generated projects.

Components:
- ports: Hand out unique host ports from a configured range
- runtime: Build, run, inspect and remove preview containers
- providers / fallback: Local container, hosted embeds, static render, tried in order
- registry: Durable store of sandbox records
- health: Reconcile record status against the runtime
- cleanup: Retire expired and failed sandboxes
- orchestrator: Facade composing all of the above
"""

from preview_sandbox.sandbox.cleanup import CleanupSweeper
from preview_sandbox.sandbox.errors import (
    AlreadyStopped,
    BuildError,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    PoolExhausted,
    PortConflict,
    ProviderError,
    RuntimeUnavailable,
    SandboxError,
)
from preview_sandbox.sandbox.fallback import ChainOutcome, ProviderFallbackChain
from preview_sandbox.sandbox.health import HealthMonitor
from preview_sandbox.sandbox.orchestrator import Diagnosis, SandboxOrchestrator, build_providers
from preview_sandbox.sandbox.ports import PortAllocator
from preview_sandbox.sandbox.registry import (
    InMemorySandboxRegistry,
    JsonFileSandboxRegistry,
    SandboxRegistry,
)
from preview_sandbox.sandbox.runtime import ContainerRuntimeAdapter, ContainerState

__all__ = [
    # Errors
    "SandboxError",
    "PoolExhausted",
    "RuntimeUnavailable",
    "PortConflict",
    "BuildError",
    "ProviderError",
    "NotFound",
    "AlreadyStopped",
    "InvalidTransition",
    "InvalidRequest",
    # Components
    "PortAllocator",
    "ContainerRuntimeAdapter",
    "ContainerState",
    "ProviderFallbackChain",
    "ChainOutcome",
    "SandboxRegistry",
    "InMemorySandboxRegistry",
    "JsonFileSandboxRegistry",
    "HealthMonitor",
    "CleanupSweeper",
    # Facade
    "SandboxOrchestrator",
    "Diagnosis",
    "build_providers",
]
