"""
Error taxonomy for the sandbox lifecycle.
"""

from typing import Optional


class SandboxError(Exception):
    """Base class for sandbox lifecycle errors."""
    pass


class PoolExhausted(SandboxError):
    """Raised when every port in the configured range is claimed."""
    pass


class RuntimeUnavailable(SandboxError):
    """Raised when a runtime or provider cannot serve the request."""
    pass


class PortConflict(RuntimeUnavailable):
    """Raised when the engine cannot bind the requested host port."""

    def __init__(self, port: int, message: str = ""):
        self.port = port
        super().__init__(message or f"Port {port} is already allocated")


class BuildError(SandboxError):
    """Raised when a sandbox image fails to build."""

    def __init__(self, message: str, build_log: str = ""):
        self.build_log = build_log
        super().__init__(message)


class ProviderError(SandboxError):
    """Raised when a provider rejects a request in a way retrying won't fix."""
    pass


class NotFound(SandboxError):
    """Raised for an unknown sandbox id."""

    def __init__(self, sandbox_id: str):
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox not found: {sandbox_id}")


class AlreadyStopped(SandboxError):
    """Idempotent success: the sandbox was already stopped."""

    def __init__(self, sandbox_id: str, sandbox: Optional[object] = None):
        self.sandbox_id = sandbox_id
        self.sandbox = sandbox
        super().__init__(f"Sandbox already stopped: {sandbox_id}")


class InvalidTransition(SandboxError):
    """Raised when a status change or operation is illegal in the current status."""
    pass


class InvalidRequest(SandboxError):
    """Raised for missing or malformed caller input."""
    pass
