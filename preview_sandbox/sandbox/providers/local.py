"""
Local container provider - interactive dev server in a Docker container.

Highest-fidelity provider: builds the generated project, runs it with the
sandbox's port published and waits until the dev server answers.
"""

import asyncio
import logging
from typing import List, Optional

from preview_sandbox.schemas import SandboxType
from preview_sandbox.sandbox.errors import PortConflict, ProviderError
from preview_sandbox.sandbox.frameworks import get_profile, is_ready_output
from preview_sandbox.sandbox.ports import PortAllocator
from preview_sandbox.sandbox.providers.base import PreviewProvider, ProvisionRequest, ProvisionResult
from preview_sandbox.sandbox.runtime import ContainerRuntimeAdapter, port_is_open

logger = logging.getLogger(__name__)

READY_POLL_INTERVAL = 2  # seconds
PORT_RETRIES = 3


class LocalContainerProvider(PreviewProvider):
    """Serve the preview from a container on this host."""

    name = "docker"
    sandbox_type = SandboxType.DOCKER

    def __init__(
        self,
        runtime: ContainerRuntimeAdapter,
        ports: PortAllocator,
        host: str = "localhost",
        timeout: Optional[float] = 300,
        max_restarts: int = 5,
        poll_interval: float = READY_POLL_INTERVAL,
    ):
        self.runtime = runtime
        self.ports = ports
        self.host = host
        self.timeout = timeout
        self.max_restarts = max_restarts
        self.poll_interval = poll_interval

    async def attempt_provision(self, request: ProvisionRequest) -> ProvisionResult:
        image_ref = await self.runtime.build(request.sandbox_id, request.files, request.framework)

        port = request.port
        # Ports claimed here after a bind conflict; all but the winner are released
        substitutes: List[int] = []
        runtime_id = None
        try:
            for attempt in range(PORT_RETRIES + 1):
                try:
                    runtime_id = await self.runtime.run(image_ref, port, request.sandbox_id, request.framework)
                    break
                except PortConflict:
                    if attempt == PORT_RETRIES:
                        raise
                    logger.warning("Port %d taken for %s, trying next candidate", port, request.sandbox_id)
                    port = self.ports.allocate()
                    substitutes.append(port)

            logs = await self.wait_until_ready(runtime_id, port, request.sandbox_id, request.framework)
        except BaseException:
            if runtime_id:
                await self._discard(runtime_id, request.sandbox_id)
            for claimed in substitutes:
                self.ports.release(claimed)
            raise

        for claimed in substitutes:
            if claimed != port:
                self.ports.release(claimed)

        return ProvisionResult(
            url=f"http://{self.host}:{port}",
            type=SandboxType.DOCKER,
            runtime_id=runtime_id,
            port=port,
            logs=logs,
        )

    async def release(self, result: ProvisionResult, sandbox_id: str) -> None:
        await self.runtime.remove(result.runtime_id, sandbox_id)

    async def wait_until_ready(self, runtime_id: str, port: int, sandbox_id: str, framework: Optional[str]) -> List[str]:
        """
        Poll the container until the app answers.

        Raises:
            ProviderError: If the container exits, disappears or restart-loops
        """
        profile = get_profile(framework)
        while True:
            state = await self.runtime.inspect(runtime_id)
            logs = await self.runtime.logs(runtime_id, tail=50)

            if state.missing:
                raise ProviderError(f"Container {runtime_id[:12]} disappeared during startup")
            if state.crashed or state.restart_count > self.max_restarts:
                detail = "\n".join(logs[-20:])
                raise ProviderError(
                    f"Container failed to start (state={state.state}, exit={state.exit_code}, "
                    f"restarts={state.restart_count}). Logs:\n{detail}"
                )

            if state.running:
                if await port_is_open(self.host, port) or is_ready_output(profile, logs):
                    logger.info("Sandbox %s ready on port %d", sandbox_id, port)
                    return logs

            await asyncio.sleep(self.poll_interval)

    async def _discard(self, runtime_id: str, sandbox_id: str) -> None:
        try:
            await self.runtime.remove(runtime_id, sandbox_id)
        except Exception as e:
            # Left for the cleanup sweep's orphan pass
            logger.warning("Could not discard container %s: %s", runtime_id[:12], e)
