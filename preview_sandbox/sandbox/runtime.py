"""
Container Runtime Adapter - Wrap the local Docker engine for preview sandboxes.

This module handles:
- Writing generated project files to a scratch directory per sandbox
- Building a framework-specific image from those files
- Running the image with the sandbox's host port published
- Inspecting, logging, stopping, restarting and removing containers
- Listing managed containers so orphans can be reclaimed

Every Docker SDK call is blocking, so each one runs in a worker thread via
asyncio.to_thread. Concurrent builds are capped by a semaphore.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound
from docker.errors import BuildError as DockerBuildError
from docker.errors import NotFound as DockerNotFound

from preview_sandbox.sandbox.errors import BuildError, PortConflict, RuntimeUnavailable
from preview_sandbox.sandbox.frameworks import get_profile, render_dockerfile, scaffold_files
from preview_sandbox.utils import decode_log_lines, safe_name, write_project_files

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

LABEL_MANAGED = "preview-sandbox.managed"
LABEL_SANDBOX_ID = "preview-sandbox.id"

STOP_TIMEOUT = 5  # seconds
CPU_PERIOD = 100000

# Engine messages that mean the host port is taken
PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ContainerState:
    """Result of inspecting a container."""
    state: str  # created, running, restarting, exited, dead, paused, missing
    exit_code: Optional[int] = None
    restart_count: int = 0
    error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.state == "running"

    @property
    def missing(self) -> bool:
        return self.state == "missing"

    @property
    def crashed(self) -> bool:
        """Exited or dead with a non-zero exit code."""
        return self.state in ("exited", "dead") and (self.exit_code or 0) != 0


@dataclass
class ManagedContainer:
    """A container carrying the sandbox labels."""
    runtime_id: str
    name: str
    sandbox_id: Optional[str]
    status: str


def container_name(sandbox_id: str) -> str:
    return f"sandbox-{safe_name(sandbox_id)}"


def image_tag(sandbox_id: str) -> str:
    return f"sandbox-{safe_name(sandbox_id)}:latest"


async def port_is_open(host: str, port: int, timeout: float = 2.0) -> bool:
    """Check if something accepts TCP connections on host:port."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (asyncio.TimeoutError, OSError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


# =============================================================================
# ADAPTER
# =============================================================================

class ContainerRuntimeAdapter:
    """Engine operations needed to serve a generated project as a live preview."""

    def __init__(
        self,
        sandbox_dir: Path,
        max_concurrent_builds: int = 2,
        memory_limit: str = "1g",
        cpu_limit: float = 1.0,
        client: Optional["docker.DockerClient"] = None,
    ):
        self.sandbox_dir = Path(sandbox_dir)
        self.memory_limit = memory_limit
        self.cpu_limit = cpu_limit
        self._client = client
        self._build_slots = asyncio.Semaphore(max_concurrent_builds)

    @property
    def client(self) -> "docker.DockerClient":
        """Lazy initialization of the Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailable(f"Docker is not running: {e}") from e
        return self._client

    def workdir(self, sandbox_id: str) -> Path:
        """Scratch directory holding a sandbox's build context."""
        return self.sandbox_dir / safe_name(sandbox_id)

    async def is_available(self) -> bool:
        """Check that the daemon answers."""
        try:
            return bool(await asyncio.to_thread(self.client.ping))
        except (RuntimeUnavailable, DockerException, OSError):
            return False

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    async def build(self, sandbox_id: str, files: Dict[str, str], framework: Optional[str]) -> str:
        """
        Write the project and build its image.

        Args:
            sandbox_id: Sandbox the build belongs to
            files: Generated path->content mapping
            framework: Framework tag

        Returns:
            Image reference

        Raises:
            BuildError: If the files are unusable or the build fails
            RuntimeUnavailable: If the engine cannot be reached
        """
        profile = get_profile(framework)
        context = scaffold_files(files, framework)
        context["Dockerfile"] = render_dockerfile(profile)

        workdir = self.workdir(sandbox_id)
        try:
            await asyncio.to_thread(write_project_files, workdir, context)
        except ValueError as e:
            raise BuildError(str(e)) from e

        tag = image_tag(sandbox_id)
        labels = {LABEL_MANAGED: "true", LABEL_SANDBOX_ID: sandbox_id}

        async with self._build_slots:
            logger.info("Building image %s for %s (%s)", tag, sandbox_id, profile.name)
            try:
                await asyncio.to_thread(
                    self.client.images.build,
                    path=str(workdir),
                    tag=tag,
                    rm=True,
                    forcerm=True,
                    labels=labels,
                )
            except DockerBuildError as e:
                build_log = _format_build_log(e.build_log)
                logger.warning("Image build failed for %s: %s", sandbox_id, e.msg)
                raise BuildError(f"Image build failed: {e.msg}", build_log=build_log) from e
            except APIError as e:
                raise RuntimeUnavailable(f"Docker API error during build: {_explain(e)}") from e
            except (DockerException, OSError) as e:
                raise RuntimeUnavailable(f"Docker is not reachable: {e}") from e

        return tag

    async def run(self, image_ref: str, port: int, sandbox_id: str, framework: Optional[str]) -> str:
        """
        Start a container from an image with the host port published.

        Returns:
            Container id

        Raises:
            PortConflict: If the host port is already bound
            RuntimeUnavailable: For any other engine failure
        """
        profile = get_profile(framework)
        name = container_name(sandbox_id)

        # Clean up any existing container with the same name
        await self._remove_by_name(name)

        try:
            container = await asyncio.to_thread(
                self.client.containers.run,
                image=image_ref,
                name=name,
                detach=True,
                ports={f"{profile.internal_port}/tcp": port},
                mem_limit=self.memory_limit,
                cpu_period=CPU_PERIOD,
                cpu_quota=int(CPU_PERIOD * self.cpu_limit),
                environment=dict(profile.environment),
                labels={LABEL_MANAGED: "true", LABEL_SANDBOX_ID: sandbox_id},
                restart_policy={"Name": "on-failure", "MaximumRetryCount": 10},
            )
        except ImageNotFound as e:
            raise RuntimeUnavailable(f"Image {image_ref} not found") from e
        except APIError as e:
            message = _explain(e)
            if any(marker in message.lower() for marker in PORT_CONFLICT_MARKERS):
                # A container may have been created before the bind failed
                await self._remove_by_name(name)
                raise PortConflict(port, f"Port {port} is already in use") from e
            raise RuntimeUnavailable(f"Docker API error: {message}") from e
        except (DockerException, OSError) as e:
            raise RuntimeUnavailable(f"Docker is not reachable: {e}") from e

        logger.info("Started container %s for %s on port %d", container.id[:12], sandbox_id, port)
        return container.id

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    async def logs(self, runtime_id: str, tail: int = 100) -> List[str]:
        """Get the last `tail` log lines of a container. Missing containers have no logs."""
        try:
            container = await asyncio.to_thread(self.client.containers.get, runtime_id)
            raw = await asyncio.to_thread(container.logs, tail=tail)
        except DockerNotFound:
            return []
        except (DockerException, OSError) as e:
            raise RuntimeUnavailable(f"Could not read logs of {runtime_id}: {e}") from e
        return decode_log_lines(raw)

    async def inspect(self, runtime_id: str) -> ContainerState:
        """Inspect a container's state, exit code and restart count."""
        try:
            container = await asyncio.to_thread(self.client.containers.get, runtime_id)
        except DockerNotFound:
            return ContainerState(state="missing")
        except (DockerException, OSError) as e:
            raise RuntimeUnavailable(f"Could not inspect {runtime_id}: {e}") from e

        attrs = container.attrs or {}
        state = attrs.get("State", {})
        return ContainerState(
            state=state.get("Status", container.status or "unknown"),
            exit_code=state.get("ExitCode"),
            restart_count=int(attrs.get("RestartCount", 0) or 0),
            error=state.get("Error") or None,
        )

    async def list_managed(self) -> List[ManagedContainer]:
        """List every container (running or not) carrying the managed label."""
        try:
            containers = await asyncio.to_thread(
                self.client.containers.list,
                all=True,
                filters={"label": f"{LABEL_MANAGED}=true"},
            )
        except (DockerException, OSError) as e:
            raise RuntimeUnavailable(f"Could not list containers: {e}") from e

        return [
            ManagedContainer(
                runtime_id=c.id,
                name=c.name,
                sandbox_id=(c.labels or {}).get(LABEL_SANDBOX_ID),
                status=c.status,
            )
            for c in containers
        ]

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def stop(self, runtime_id: str) -> None:
        """Stop a container. Stopping a missing container is a no-op."""
        try:
            container = await asyncio.to_thread(self.client.containers.get, runtime_id)
            await asyncio.to_thread(container.stop, timeout=STOP_TIMEOUT)
        except DockerNotFound:
            return
        except (DockerException, OSError) as e:
            raise RuntimeUnavailable(f"Could not stop {runtime_id}: {e}") from e

    async def restart(self, runtime_id: str) -> None:
        """Restart a container in place."""
        try:
            container = await asyncio.to_thread(self.client.containers.get, runtime_id)
            await asyncio.to_thread(container.restart, timeout=STOP_TIMEOUT)
        except DockerNotFound as e:
            raise RuntimeUnavailable(f"Container {runtime_id} no longer exists") from e
        except (DockerException, OSError) as e:
            raise RuntimeUnavailable(f"Could not restart {runtime_id}: {e}") from e

    async def remove(self, runtime_id: Optional[str], sandbox_id: Optional[str] = None) -> None:
        """
        Remove a container, its image and its scratch directory.

        Every step tolerates the resource already being gone.
        """
        if runtime_id:
            try:
                container = await asyncio.to_thread(self.client.containers.get, runtime_id)
                await asyncio.to_thread(container.remove, force=True)
                logger.info("Removed container %s", runtime_id[:12])
            except DockerNotFound:
                pass
            except (DockerException, OSError) as e:
                raise RuntimeUnavailable(f"Could not remove {runtime_id}: {e}") from e

        if sandbox_id:
            try:
                await asyncio.to_thread(self.client.images.remove, image_tag(sandbox_id), force=True)
            except DockerNotFound:
                pass
            except (DockerException, OSError) as e:
                logger.warning("Could not remove image for %s: %s", sandbox_id, e)
            await asyncio.to_thread(shutil.rmtree, self.workdir(sandbox_id), True)

    async def prune_images(self) -> None:
        """Remove dangling images left behind by rebuilds."""
        try:
            await asyncio.to_thread(self.client.images.prune, filters={"dangling": True})
        except (DockerException, OSError) as e:
            logger.warning("Image prune failed: %s", e)

    async def _remove_by_name(self, name: str) -> None:
        """Remove any existing container with the given name."""
        try:
            existing = await asyncio.to_thread(self.client.containers.get, name)
            await asyncio.to_thread(existing.remove, force=True)
            logger.debug("Removed stale container %s", name)
        except DockerNotFound:
            pass
        except (DockerException, OSError) as e:
            logger.warning("Could not remove stale container %s: %s", name, e)


def _explain(error: APIError) -> str:
    return str(getattr(error, "explanation", None) or error)


def _format_build_log(build_log) -> str:
    """Flatten the Docker build log stream into text."""
    lines = []
    for chunk in build_log or []:
        if isinstance(chunk, dict):
            text = chunk.get("stream") or chunk.get("error") or ""
        else:
            text = str(chunk)
        if text.strip():
            lines.append(text.rstrip())
    return "\n".join(lines)
