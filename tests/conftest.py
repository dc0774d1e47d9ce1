"""Pytest configuration and fixtures for preview sandbox tests."""

import asyncio
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from preview_sandbox.schemas import SandboxType
from preview_sandbox.sandbox.cleanup import CleanupSweeper
from preview_sandbox.sandbox.errors import BuildError, PortConflict, RuntimeUnavailable
from preview_sandbox.sandbox.fallback import ProviderFallbackChain
from preview_sandbox.sandbox.health import HealthMonitor
from preview_sandbox.sandbox.orchestrator import SandboxOrchestrator
from preview_sandbox.sandbox.ports import PortAllocator
from preview_sandbox.sandbox.providers import (
    LocalContainerProvider,
    PreviewProvider,
    ProvisionRequest,
    ProvisionResult,
    StaticRenderProvider,
)
from preview_sandbox.sandbox.registry import InMemorySandboxRegistry
from preview_sandbox.sandbox.runtime import ContainerState, ManagedContainer, container_name, image_tag


NEXTJS_FILES = {
    "package.json": '{"name": "p1", "dependencies": {"next": "14.1.0"}}',
    "src/app/page.tsx": (
        "export default function Home() {\n"
        "  return (\n"
        '    <main className="p-8"><h1>Hello preview</h1></main>\n'
        "  );\n"
        "}\n"
    ),
    "src/app/layout.tsx": "export default function RootLayout({ children }) { return children; }\n",
}


class FakeRuntime:
    """In-memory stand-in for ContainerRuntimeAdapter."""

    def __init__(self):
        self.containers: Dict[str, Dict] = {}
        self.builds: List[str] = []
        self.removed: List[str] = []
        self.pruned = 0
        self.build_error: Optional[str] = None
        self.unavailable = False
        self.fail_stop = False
        self.fail_remove = False
        self.conflict_ports = set()
        self.startup_logs = ["> next dev", "Ready in 1.2s", "Local: http://localhost:3000"]
        self._counter = 0

    async def build(self, sandbox_id, files, framework):
        if self.unavailable:
            raise RuntimeUnavailable("Docker is not running")
        if self.build_error is not None:
            raise BuildError("Image build failed: npm install exited with 1", build_log=self.build_error)
        self.builds.append(sandbox_id)
        return image_tag(sandbox_id)

    async def run(self, image_ref, port, sandbox_id, framework):
        if self.unavailable:
            raise RuntimeUnavailable("Docker is not running")
        if port in self.conflict_ports:
            raise PortConflict(port)
        self._counter += 1
        runtime_id = f"ctr{self._counter:04d}"
        self.containers[runtime_id] = {
            "sandbox_id": sandbox_id,
            "port": port,
            "state": "running",
            "exit_code": 0,
            "restart_count": 0,
            "logs": list(self.startup_logs),
        }
        return runtime_id

    async def logs(self, runtime_id, tail=100):
        container = self.containers.get(runtime_id)
        return container["logs"][-tail:] if container else []

    async def inspect(self, runtime_id):
        if self.unavailable:
            raise RuntimeUnavailable("Docker is not running")
        container = self.containers.get(runtime_id)
        if container is None:
            return ContainerState(state="missing")
        return ContainerState(
            state=container["state"],
            exit_code=container["exit_code"],
            restart_count=container["restart_count"],
        )

    async def list_managed(self):
        if self.unavailable:
            raise RuntimeUnavailable("Docker is not running")
        return [
            ManagedContainer(
                runtime_id=runtime_id,
                name=container_name(c["sandbox_id"]),
                sandbox_id=c["sandbox_id"],
                status=c["state"],
            )
            for runtime_id, c in self.containers.items()
        ]

    async def stop(self, runtime_id):
        if self.fail_stop:
            raise RuntimeUnavailable(f"Could not stop {runtime_id}")
        container = self.containers.get(runtime_id)
        if container is not None:
            container["state"] = "exited"

    async def restart(self, runtime_id):
        container = self.containers.get(runtime_id)
        if container is None:
            raise RuntimeUnavailable(f"Container {runtime_id} no longer exists")
        container["state"] = "running"
        container["exit_code"] = 0
        container["restart_count"] += 1

    async def remove(self, runtime_id, sandbox_id=None):
        if self.fail_remove:
            raise RuntimeUnavailable(f"Could not remove {runtime_id}")
        if runtime_id and self.containers.pop(runtime_id, None) is not None:
            self.removed.append(runtime_id)

    async def prune_images(self):
        self.pruned += 1

    async def is_available(self):
        return not self.unavailable

    def crash(self, runtime_id, exit_code=1):
        self.containers[runtime_id].update(state="exited", exit_code=exit_code)

    def alive(self) -> List[str]:
        return [rid for rid, c in self.containers.items() if c["state"] == "running"]


class StubProvider(PreviewProvider):
    """Provider that fails with the queued errors, then succeeds."""

    def __init__(
        self,
        name: str,
        sandbox_type: SandboxType = SandboxType.E2B,
        errors: Optional[List[Exception]] = None,
        always_fail: Optional[Exception] = None,
        delay: float = 0,
        timeout: Optional[float] = None,
        last_resort: bool = False,
    ):
        self.name = name
        self.sandbox_type = sandbox_type
        self.errors = list(errors or [])
        self.always_fail = always_fail
        self.delay = delay
        self.timeout = timeout
        self.last_resort = last_resort
        self.calls = 0
        self.released: List[str] = []
        self.started = asyncio.Event()

    async def attempt_provision(self, request: ProvisionRequest) -> ProvisionResult:
        self.calls += 1
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        return ProvisionResult(
            url=f"https://{self.name}.example/{request.sandbox_id}",
            type=self.sandbox_type,
            runtime_id=f"{self.name}-{request.sandbox_id}",
            logs=[f"{self.name} ready"],
        )

    async def release(self, result: ProvisionResult, sandbox_id: str) -> None:
        self.released.append(sandbox_id)


def make_request(sandbox_id: str = "sb-1", framework: str = "nextjs", port: int = 5000) -> ProvisionRequest:
    """Create a test provision request."""
    return ProvisionRequest(
        sandbox_id=sandbox_id,
        project_id="p1",
        files=dict(NEXTJS_FILES),
        framework=framework,
        port=port,
    )


@pytest.fixture
def nextjs_files():
    return dict(NEXTJS_FILES)


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def registry():
    return InMemorySandboxRegistry(log_tail_lines=50)


@pytest.fixture
def ports():
    return PortAllocator(5000, 5010, check_bind=False)



def build_orchestrator(
    runtime,
    providers=None,
    port_start=5000,
    port_end=5010,
    ttl_seconds=2 * 60 * 60,
    retries=0,
    **kwargs,
) -> SandboxOrchestrator:
    """
    Wire an orchestrator to a fake runtime.

    `providers` is a callable receiving the port allocator; by default the chain
    is the local container provider followed by the static renderer.
    """
    registry = InMemorySandboxRegistry(log_tail_lines=50)
    ports = PortAllocator(port_start, port_end, check_bind=False)
    if providers is None:
        chain_providers = [
            LocalContainerProvider(runtime, ports, poll_interval=0.01, timeout=5),
            StaticRenderProvider(),
        ]
    else:
        chain_providers = providers(ports)
    chain = ProviderFallbackChain(chain_providers, default_timeout=5, retries=retries)
    monitor = HealthMonitor(registry, runtime, interval=3600, failure_threshold=3)
    sweeper = CleanupSweeper(
        registry,
        runtime,
        ports,
        ttl_seconds=ttl_seconds,
        error_grace_seconds=15 * 60,
        interval=3600,
    )
    return SandboxOrchestrator(registry, ports, runtime, chain, monitor=monitor, sweeper=sweeper, **kwargs)


@pytest_asyncio.fixture
async def make_orchestrator(fake_runtime):
    """Factory for orchestrators wired to the fake runtime, shut down after the test."""
    created = []

    def factory(**kwargs):
        orchestrator = build_orchestrator(fake_runtime, **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.shutdown()


@pytest_asyncio.fixture
async def orchestrator(make_orchestrator):
    return make_orchestrator()
