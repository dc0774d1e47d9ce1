"""
Preview providers, in decreasing fidelity:

- local: interactive dev server in a local container
- hosted: embedded third-party live previews (E2B, CodeSandbox, StackBlitz)
- static: non-interactive rendered snapshot, never fails
"""

from preview_sandbox.sandbox.providers.base import PreviewProvider, ProvisionRequest, ProvisionResult
from preview_sandbox.sandbox.providers.hosted import (
    CodeSandboxProvider,
    E2BProvider,
    HostedProvider,
    StackBlitzProvider,
)
from preview_sandbox.sandbox.providers.local import LocalContainerProvider
from preview_sandbox.sandbox.providers.render import StaticRenderer
from preview_sandbox.sandbox.providers.static import StaticRenderProvider

__all__ = [
    "PreviewProvider",
    "ProvisionRequest",
    "ProvisionResult",
    "HostedProvider",
    "E2BProvider",
    "CodeSandboxProvider",
    "StackBlitzProvider",
    "LocalContainerProvider",
    "StaticRenderer",
    "StaticRenderProvider",
]
