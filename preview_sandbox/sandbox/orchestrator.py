"""
Sandbox Orchestrator - The one entry point the API layer talks to.

Responsibilities:
- Create sandboxes: allocate a port, record them, provision through the fallback chain
- Report fresh status, logs and diagnoses
- Stop, restart, force-restart and delete sandboxes
- Run the health monitor and cleanup sweeper for the lifetime of the process

Operations on the same sandbox id are serialized with a per-id lock; different
ids proceed independently. Provisioning runs as its own task so a later stop
can cancel it.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from preview_sandbox.config import Config, get_config
from preview_sandbox.schemas import (
    ACTIVE_STATUSES,
    Sandbox,
    SandboxInfo,
    SandboxStatus,
    SandboxType,
)
from preview_sandbox.sandbox.cleanup import CleanupSweeper
from preview_sandbox.sandbox.errors import (
    AlreadyStopped,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    ProviderError,
    RuntimeUnavailable,
    SandboxError,
)
from preview_sandbox.sandbox.fallback import ProviderFallbackChain
from preview_sandbox.sandbox.frameworks import detect_framework, normalize_framework
from preview_sandbox.sandbox.health import HealthMonitor
from preview_sandbox.sandbox.ports import PortAllocator
from preview_sandbox.sandbox.providers import (
    CodeSandboxProvider,
    E2BProvider,
    HostedProvider,
    LocalContainerProvider,
    PreviewProvider,
    ProvisionRequest,
    ProvisionResult,
    StackBlitzProvider,
    StaticRenderProvider,
)
from preview_sandbox.sandbox.registry import (
    InMemorySandboxRegistry,
    JsonFileSandboxRegistry,
    SandboxRegistry,
)
from preview_sandbox.sandbox.runtime import ContainerRuntimeAdapter
from preview_sandbox.utils import KeyedLock

logger = logging.getLogger(__name__)

# Loads the latest generated files of a project: project_id -> (files, framework)
FileSource = Callable[[str], Awaitable[Optional[Tuple[Dict[str, str], str]]]]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Diagnosis:
    """Result of diagnosing a sandbox."""
    sandbox: SandboxInfo
    reachable: bool
    runtime_state: Optional[str] = None
    exit_code: Optional[int] = None
    restart_count: int = 0
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["sandbox"] = self.sandbox.model_dump(mode="json", by_alias=True)
        return data


# =============================================================================
# PROVIDERS
# =============================================================================

def build_providers(config: Config, runtime: ContainerRuntimeAdapter, ports: PortAllocator) -> List[PreviewProvider]:
    """
    Build the fallback chain's providers from configuration.

    Order: local container, E2B (when an API key is set), CodeSandbox,
    StackBlitz, static render.
    """
    providers: List[PreviewProvider] = [
        LocalContainerProvider(
            runtime,
            ports,
            host=config.host,
            timeout=config.local_timeout_seconds,
            max_restarts=config.max_restarts,
        )
    ]
    if config.e2b_api_key:
        providers.append(E2BProvider(config.e2b_api_key, config.e2b_api_url, timeout=config.hosted_timeout_seconds))
    if config.enable_codesandbox:
        providers.append(CodeSandboxProvider(
            config.codesandbox_url,
            config.codesandbox_api_key,
            timeout=config.hosted_timeout_seconds,
        ))
    if config.enable_stackblitz:
        providers.append(StackBlitzProvider())
    providers.append(StaticRenderProvider(timeout=config.static_timeout_seconds))
    return providers


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SandboxOrchestrator:
    """
    Facade over the sandbox lifecycle.

    Build one per process with from_config() and inject it where it is needed.
    The cleanup sweeper shares this orchestrator's per-id locks and teardown.
    """

    def __init__(
        self,
        registry: SandboxRegistry,
        ports: PortAllocator,
        runtime: ContainerRuntimeAdapter,
        chain: ProviderFallbackChain,
        monitor: Optional[HealthMonitor] = None,
        sweeper: Optional[CleanupSweeper] = None,
        locks: Optional[KeyedLock] = None,
        transport_log_lines: int = 10,
        file_source: Optional[FileSource] = None,
    ):
        self.registry = registry
        self.ports = ports
        self.runtime = runtime
        self.chain = chain
        self.locks = locks or KeyedLock()
        self.monitor = monitor or HealthMonitor(registry, runtime)
        self.sweeper = sweeper or CleanupSweeper(registry, runtime, ports)
        self.sweeper.locks = self.locks
        self.sweeper.teardown = self._teardown
        self.monitor.is_provisioning = self._is_inflight
        self.transport_log_lines = transport_log_lines
        self.file_source = file_source

        self._inflight: Dict[str, asyncio.Task] = {}
        self._project_files: Dict[str, Tuple[Dict[str, str], str]] = {}
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        runtime: Optional[ContainerRuntimeAdapter] = None,
        file_source: Optional[FileSource] = None,
    ) -> "SandboxOrchestrator":
        """Wire every component from configuration."""
        config = config or get_config()

        if config.registry_file:
            registry: SandboxRegistry = JsonFileSandboxRegistry(config.registry_file, config.log_tail_lines)
        else:
            registry = InMemorySandboxRegistry(config.log_tail_lines)

        ports = PortAllocator(config.port_range_start, config.port_range_end, check_bind=config.check_ports)
        runtime = runtime or ContainerRuntimeAdapter(
            config.sandbox_dir,
            max_concurrent_builds=config.max_concurrent_builds,
            memory_limit=config.memory_limit,
            cpu_limit=config.cpu_limit,
        )
        chain = ProviderFallbackChain(
            build_providers(config, runtime, ports),
            default_timeout=config.hosted_timeout_seconds,
            retries=config.provider_retries,
        )
        monitor = HealthMonitor(
            registry,
            runtime,
            interval=config.health_interval_seconds,
            failure_threshold=config.health_failure_threshold,
            provisioning_timeout=config.provisioning_timeout_seconds,
            max_restarts=config.max_restarts,
            host=config.host,
        )
        sweeper = CleanupSweeper(
            registry,
            runtime,
            ports,
            ttl_seconds=config.ttl_minutes * 60,
            error_grace_seconds=config.error_grace_minutes * 60,
            interval=config.cleanup_interval_seconds,
            delete_records=config.cleanup_delete_records,
        )
        return cls(
            registry,
            ports,
            runtime,
            chain,
            monitor=monitor,
            sweeper=sweeper,
            transport_log_lines=config.transport_log_lines,
            file_source=file_source,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Resume from the registry and start background tasks.

        Ports of surviving sandboxes are claimed again, and sandboxes left
        mid-provisioning by a previous process are marked ERROR.
        """
        if self._started:
            return

        records = await self.registry.list_all()
        self.ports.claim(r.port for r in records if r.port is not None and r.status != SandboxStatus.STOPPED)

        for record in records:
            if record.status in (SandboxStatus.CREATING, SandboxStatus.RESTARTING):
                await self.registry.update(
                    record.id,
                    expected_status=record.status,
                    status=SandboxStatus.ERROR,
                    append_logs=["Provisioning interrupted by a service restart"],
                )

        await self.monitor.start()
        self.sweeper.start()
        self._started = True
        logger.info("Sandbox orchestrator started with %d known sandbox(es)", len(records))

    async def shutdown(self) -> None:
        """Cancel in-flight provisioning and stop background tasks."""
        inflight = list(self._inflight.values())
        for task in inflight:
            task.cancel()
        await asyncio.gather(*inflight, return_exceptions=True)

        await self.sweeper.stop()
        await self.monitor.stop()
        for provider in self.chain.providers:
            if isinstance(provider, HostedProvider):
                await provider.close()
        self._started = False
        logger.info("Sandbox orchestrator stopped")

    async def __aenter__(self) -> "SandboxOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create_sandbox(
        self,
        project_id: str,
        files: Dict[str, str],
        framework: str,
        preferred_port: Optional[int] = None,
    ) -> SandboxInfo:
        """
        Create a sandbox and provision its preview.

        Args:
            project_id: Owning project
            files: Generated path->content mapping
            framework: Framework tag, e.g. "nextjs"
            preferred_port: Host port to use if it is free

        Returns:
            The sandbox, RUNNING unless provisioning was cancelled by a stop

        Raises:
            InvalidRequest: If project_id or framework is missing
            PoolExhausted: If no port is free
            RuntimeUnavailable: If every provider failed
        """
        if not project_id or not project_id.strip():
            raise InvalidRequest("projectId is required")
        if not framework or not framework.strip():
            raise InvalidRequest("framework is required")

        files = dict(files or {})
        framework = normalize_framework(framework) or detect_framework(files) or framework.strip().lower()
        self._project_files[project_id] = (files, framework)

        port = self.ports.allocate(preferred_port)
        sandbox_id = f"sandbox_{uuid.uuid4().hex[:12]}"
        try:
            await self.registry.create(Sandbox(
                id=sandbox_id,
                project_id=project_id,
                port=port,
                status=SandboxStatus.CREATING,
                framework=framework,
                logs=[f"Provisioning {framework} preview for project {project_id} ({len(files)} files)"],
            ))
        except BaseException:
            self.ports.release(port)
            raise

        logger.info("Creating sandbox %s for project %s on port %d", sandbox_id, project_id, port)
        self.monitor.track(sandbox_id)

        request = ProvisionRequest(
            sandbox_id=sandbox_id,
            project_id=project_id,
            files=files,
            framework=framework,
            port=port,
        )
        record = await self._run_provisioning(request, SandboxStatus.CREATING)
        return self._info(record)

    async def _run_inflight(self, sandbox_id: str, coro: Awaitable, name: str) -> asyncio.Task:
        """Run a long operation as a task that stop and force restart can cancel, and wait for it."""
        task = asyncio.create_task(coro, name=f"{name}-{sandbox_id}")
        self._inflight[sandbox_id] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            if self._inflight.get(sandbox_id) is task:
                del self._inflight[sandbox_id]
        return task

    async def _run_provisioning(self, request: ProvisionRequest, expected_status: SandboxStatus) -> Sandbox:
        task = await self._run_inflight(
            request.sandbox_id, self._provision(request, expected_status), "provision"
        )
        if task.cancelled():
            # Superseded by a stop or force restart
            return await self._get(request.sandbox_id)
        return task.result()

    async def _provision(self, request: ProvisionRequest, expected_status: SandboxStatus) -> Sandbox:
        sandbox_id = request.sandbox_id
        try:
            outcome = await self.chain.provision(request)
        except asyncio.CancelledError:
            await self._mark_error(sandbox_id, expected_status, "Provisioning cancelled")
            raise
        except RuntimeUnavailable as e:
            await self._mark_error(sandbox_id, expected_status, f"Provisioning failed: {e}")
            raise

        result = outcome.result
        try:
            async with self.locks(sandbox_id):
                fields = {
                    "status": SandboxStatus.RUNNING,
                    "runtime_id": result.runtime_id,
                    "url": result.url,
                    "type": result.type,
                }
                if result.port is not None:
                    fields["port"] = result.port
                record = await self.registry.update(
                    sandbox_id,
                    expected_status=expected_status,
                    append_logs=outcome.log_lines(),
                    **fields,
                )
        except asyncio.CancelledError:
            await self._discard_result(outcome.provider, result, request)
            await self._mark_error(sandbox_id, expected_status, "Provisioning cancelled")
            raise
        except BaseException:
            await self._discard_result(outcome.provider, result, request)
            raise

        if record is None:
            # Stopped while provisioning; the result is not used
            logger.info("Sandbox %s changed during provisioning, discarding result", sandbox_id)
            await self._discard_result(outcome.provider, result, request)
            current = await self.registry.get(sandbox_id)
            if current is None:
                raise NotFound(sandbox_id)
            return current

        if result.port is not None and result.port != request.port:
            self.ports.release(request.port)

        self.monitor.track(sandbox_id)
        logger.info(
            "Sandbox %s running at %s via %s%s",
            sandbox_id, result.url[:80], outcome.provider.name, " (degraded)" if outcome.degraded else "",
        )
        return record

    async def _discard_result(self, provider: PreviewProvider, result: ProvisionResult, request: ProvisionRequest) -> None:
        try:
            await provider.release(result, request.sandbox_id)
        except SandboxError as e:
            logger.warning("Could not release %s result of %s: %s", provider.name, request.sandbox_id, e)
        if result.port is not None and result.port != request.port:
            self.ports.release(result.port)

    async def _mark_error(self, sandbox_id: str, expected_status: SandboxStatus, reason: str) -> None:
        try:
            updated = await self.registry.update(
                sandbox_id,
                expected_status=expected_status,
                status=SandboxStatus.ERROR,
                append_logs=[reason],
            )
        except NotFound:
            return
        if updated is not None:
            logger.warning("Sandbox %s: %s", sandbox_id, reason)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_status(self, sandbox_id: str) -> SandboxInfo:
        """Get a sandbox after a fresh health check."""
        record = await self._get(sandbox_id)
        if record.status in (SandboxStatus.CREATING, SandboxStatus.RUNNING) and sandbox_id not in self._inflight:
            try:
                refreshed = await self.monitor.check_once(sandbox_id)
            except RuntimeUnavailable as e:
                logger.warning("Status check of %s failed: %s", sandbox_id, e)
                refreshed = record
            if refreshed is None:
                raise NotFound(sandbox_id)
            record = refreshed
        return self._info(record)

    async def list(self) -> List[SandboxInfo]:
        return [self._info(r) for r in await self.registry.list_all()]

    async def list_active(self) -> List[SandboxInfo]:
        return [self._info(r) for r in await self.registry.list_by_status(*ACTIVE_STATUSES)]

    async def logs(self, sandbox_id: str, tail: int = 100) -> List[str]:
        """Fresh runtime logs for container sandboxes, recorded logs otherwise."""
        record = await self._get(sandbox_id)
        if record.type == SandboxType.DOCKER and record.runtime_id:
            try:
                lines = await self.runtime.logs(record.runtime_id, tail=tail)
                if lines:
                    return lines
            except RuntimeUnavailable as e:
                logger.warning("Could not read runtime logs of %s: %s", sandbox_id, e)
        return record.logs[-tail:] if tail > 0 else []

    async def diagnose(self, sandbox_id: str) -> Diagnosis:
        """
        Inspect a sandbox and suggest how to recover it.

        Returns:
            Diagnosis with runtime state, reachability, issues and recommendations
        """
        record = await self._get(sandbox_id)
        diagnosis = Diagnosis(sandbox=self._info(record), reachable=False)

        if record.type == SandboxType.DOCKER and record.runtime_id:
            try:
                state = await self.runtime.inspect(record.runtime_id)
            except RuntimeUnavailable as e:
                diagnosis.issues.append(f"Container engine unavailable: {e}")
                state = None
            if state is not None:
                diagnosis.runtime_state = state.state
                diagnosis.exit_code = state.exit_code
                diagnosis.restart_count = state.restart_count
                if state.missing:
                    diagnosis.issues.append("Container no longer exists")
                elif state.crashed:
                    diagnosis.issues.append(f"Container exited with code {state.exit_code}")
                elif state.restart_count > self.monitor.max_restarts:
                    diagnosis.issues.append(f"Container is restart-looping ({state.restart_count} restarts)")

        if record.status != SandboxStatus.STOPPED and record.runtime_id:
            diagnosis.reachable = (await self.monitor.observe(record)).reachable
            if not diagnosis.reachable and record.status == SandboxStatus.RUNNING:
                diagnosis.issues.append(f"Preview is not answering at {record.url}")

        if any("Image build failed" in line for line in record.logs):
            diagnosis.issues.append("The image build failed; the generated files may be malformed")

        diagnosis.recommendations = self._recommend(record, diagnosis)
        return diagnosis

    def _recommend(self, record: Sandbox, diagnosis: Diagnosis) -> List[str]:
        recommendations = []
        if record.status == SandboxStatus.STOPPED:
            recommendations.append("Sandbox is stopped; restart it to provision a new preview")
        elif record.status == SandboxStatus.ERROR:
            recommendations.append("Restart the sandbox; use force-restart if the restart fails")
        elif diagnosis.runtime_state == "missing":
            recommendations.append("The container is gone; use force-restart to provision a new one")
        elif diagnosis.issues:
            recommendations.append("Check the logs, then restart or force-restart the sandbox")

        if record.type != SandboxType.DOCKER and record.status == SandboxStatus.RUNNING:
            recommendations.append(
                f"Preview is served by a fallback ({record.type.value}); restart to retry the local runtime"
            )
        if not recommendations:
            recommendations.append("No issues detected")
        return recommendations

    # -------------------------------------------------------------------------
    # Stop / delete
    # -------------------------------------------------------------------------

    async def stop(self, sandbox_id: str) -> SandboxInfo:
        """
        Stop a sandbox and release its runtime and port.

        Raises:
            NotFound: If the sandbox does not exist
            AlreadyStopped: If it was already stopped (idempotent success)
        """
        await self._get(sandbox_id)
        await self._cancel_inflight(sandbox_id)

        async with self.locks(sandbox_id):
            record = await self._get(sandbox_id)

            if record.status == SandboxStatus.STOPPED:
                if record.runtime_id and await self._teardown(record):
                    record = await self.registry.update(sandbox_id, runtime_id=None)
                raise AlreadyStopped(sandbox_id, self._info(record))

            if record.status in (SandboxStatus.CREATING, SandboxStatus.RESTARTING):
                await self.registry.update(
                    sandbox_id, status=SandboxStatus.ERROR, append_logs=["Provisioning interrupted by stop"]
                )

            record = await self.registry.update(
                sandbox_id, status=SandboxStatus.STOPPED, append_logs=["Stopped by request"]
            )
            if await self._teardown(record) and record.runtime_id:
                record = await self.registry.update(sandbox_id, runtime_id=None)
            self.ports.release(record.port)

        self.monitor.untrack(sandbox_id)
        logger.info("Stopped sandbox %s", sandbox_id)
        return self._info(record)

    async def delete(self, sandbox_id: str) -> bool:
        """Tear down a sandbox and delete its record."""
        await self._get(sandbox_id)
        await self._cancel_inflight(sandbox_id)

        async with self.locks(sandbox_id):
            record = await self._get(sandbox_id)
            await self._teardown(record)
            self.ports.release(record.port)
            deleted = await self.registry.delete(sandbox_id)

        self.monitor.untrack(sandbox_id)
        logger.info("Deleted sandbox %s", sandbox_id)
        return deleted

    async def cleanup(self) -> int:
        """Run a cleanup sweep now. Returns the number of sandboxes retired."""
        return await self.sweeper.sweep()

    # -------------------------------------------------------------------------
    # Restart
    # -------------------------------------------------------------------------

    async def restart(self, sandbox_id: str) -> SandboxInfo:
        """
        Restart a sandbox.

        Containers are restarted in place; when that fails, or the sandbox is
        stopped or served by another provider, it is provisioned again.

        Raises:
            NotFound: If the sandbox does not exist
            InvalidTransition: If the sandbox is still being created or restarted
            InvalidRequest: If re-provisioning is needed and no files are known
        """
        async with self.locks(sandbox_id):
            record = await self._get(sandbox_id)
            if record.status in (SandboxStatus.CREATING, SandboxStatus.RESTARTING):
                raise InvalidTransition(f"Sandbox {sandbox_id} is {record.status.value}; wait for it to settle")

            in_place = (
                record.type == SandboxType.DOCKER
                and record.runtime_id
                and record.status != SandboxStatus.STOPPED
            )
            if in_place:
                await self.registry.update(
                    sandbox_id, status=SandboxStatus.RESTARTING, append_logs=["Restarting container"]
                )
                self.monitor.untrack(sandbox_id)
            else:
                request = await self._restart_request(record)

        if in_place:
            task = await self._run_inflight(sandbox_id, self._restart_in_place(record), "restart")
            if task.cancelled():
                # Superseded by a stop or force restart
                return self._info(await self._get(sandbox_id))
            restarted = task.result()
            if restarted is not None:
                return self._info(restarted)

            async with self.locks(sandbox_id):
                record = await self._get(sandbox_id)
                if record.status != SandboxStatus.RESTARTING:
                    return self._info(record)
                request = await self._restart_request(record)

        record = await self._run_provisioning(request, SandboxStatus.RESTARTING)
        return self._info(record)

    async def _restart_request(self, record: Sandbox) -> ProvisionRequest:
        """Move a sandbox to RESTARTING for a fresh provisioning. Caller holds the lock."""
        try:
            files, framework = await self._files_for(record)
        except InvalidRequest:
            if record.status == SandboxStatus.RESTARTING:
                await self.registry.update(
                    record.id, status=SandboxStatus.ERROR, append_logs=["Restart failed: no project files"]
                )
            raise
        return await self._prepare_reprovision(record, files, framework, "Restarting: provisioning a new preview")

    async def _restart_in_place(self, record: Sandbox) -> Optional[Sandbox]:
        """Restart the container. Returns None (status RESTARTING) if that did not work."""
        sandbox_id = record.id
        local = self._provider_for(SandboxType.DOCKER)
        try:
            await self.runtime.restart(record.runtime_id)
            if isinstance(local, LocalContainerProvider):
                await asyncio.wait_for(
                    local.wait_until_ready(record.runtime_id, record.port, sandbox_id, record.framework),
                    timeout=local.timeout,
                )
        except asyncio.CancelledError:
            await self._mark_error(sandbox_id, SandboxStatus.RESTARTING, "Restart cancelled")
            raise
        except (RuntimeUnavailable, ProviderError, asyncio.TimeoutError) as e:
            logger.warning("In-place restart of %s failed, provisioning again: %s", sandbox_id, e)
            await self.registry.update(sandbox_id, append_logs=[f"Container restart failed: {e}"])
            return None

        async with self.locks(sandbox_id):
            updated = await self.registry.update(
                sandbox_id,
                expected_status=SandboxStatus.RESTARTING,
                status=SandboxStatus.RUNNING,
                append_logs=["Container restarted"],
            )
        if updated is None:
            return await self._get(sandbox_id)
        self.monitor.track(sandbox_id)
        logger.info("Restarted sandbox %s in place", sandbox_id)
        return updated

    async def force_restart(self, sandbox_id: str) -> SandboxInfo:
        """
        Provision a sandbox again from its project files.

        A failed graceful stop is ignored: the old runtime is treated as gone.

        Raises:
            NotFound: If the sandbox does not exist
            InvalidRequest: If no files are known for the project
        """
        await self._get(sandbox_id)
        await self._cancel_inflight(sandbox_id)

        async with self.locks(sandbox_id):
            record = await self._get(sandbox_id)
            files, framework = await self._files_for(record)

            if record.status == SandboxStatus.CREATING:
                record = await self.registry.update(
                    sandbox_id, status=SandboxStatus.ERROR, append_logs=["Provisioning interrupted by force restart"]
                )

            if record.type == SandboxType.DOCKER and record.runtime_id:
                try:
                    await self.runtime.stop(record.runtime_id)
                except RuntimeUnavailable as e:
                    logger.warning("Graceful stop of %s failed, treating runtime as gone: %s", sandbox_id, e)

            request = await self._prepare_reprovision(record, files, framework, "Force restart requested")

        record = await self._run_provisioning(request, SandboxStatus.RESTARTING)
        return self._info(record)

    async def _prepare_reprovision(
        self,
        record: Sandbox,
        files: Dict[str, str],
        framework: str,
        reason: str,
    ) -> ProvisionRequest:
        """Drop the old runtime, make sure a port is held and move to RESTARTING. Caller holds the lock."""
        if record.runtime_id:
            await self._teardown(record)

        port = record.port
        if record.status == SandboxStatus.STOPPED or port is None:
            port = self.ports.allocate(record.port)

        try:
            await self.registry.update(
                record.id,
                status=SandboxStatus.RESTARTING,
                runtime_id=None,
                port=port,
                framework=framework,
                append_logs=[reason],
            )
        except BaseException:
            if port != record.port or record.status == SandboxStatus.STOPPED:
                self.ports.release(port)
            raise

        self.monitor.untrack(record.id)
        return ProvisionRequest(
            sandbox_id=record.id,
            project_id=record.project_id,
            files=files,
            framework=framework,
            port=port,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get(self, sandbox_id: str) -> Sandbox:
        record = await self.registry.get(sandbox_id)
        if record is None:
            raise NotFound(sandbox_id)
        return record

    def _info(self, record: Sandbox) -> SandboxInfo:
        return SandboxInfo.from_record(record, self.transport_log_lines)

    def _is_inflight(self, sandbox_id: str) -> bool:
        task = self._inflight.get(sandbox_id)
        return task is not None and not task.done()

    async def _cancel_inflight(self, sandbox_id: str) -> None:
        if not self._is_inflight(sandbox_id):
            return
        task = self._inflight[sandbox_id]
        logger.info("Cancelling in-flight work on %s", sandbox_id)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _files_for(self, record: Sandbox) -> Tuple[Dict[str, str], str]:
        cached = self._project_files.get(record.project_id)
        if cached is None and self.file_source is not None:
            cached = await self.file_source(record.project_id)
            if cached is not None:
                cached = (dict(cached[0]), normalize_framework(cached[1]) or cached[1])
                self._project_files[record.project_id] = cached
        if cached is None:
            raise InvalidRequest(f"No project files available to provision sandbox {record.id}")

        files, framework = cached
        return files, record.framework or framework

    def _provider_for(self, sandbox_type: SandboxType) -> Optional[PreviewProvider]:
        for provider in self.chain.providers:
            if provider.sandbox_type == sandbox_type:
                return provider
        return None

    async def _teardown(self, record: Sandbox) -> bool:
        """
        Release whatever runtime backs a sandbox.

        Returns:
            True if nothing is left behind
        """
        if not record.runtime_id:
            return True

        if record.type == SandboxType.DOCKER:
            try:
                await self.runtime.stop(record.runtime_id)
                await self.runtime.remove(record.runtime_id, record.id)
            except RuntimeUnavailable as e:
                logger.warning("Could not remove container of %s: %s", record.id, e)
                return False
            return True

        provider = self._provider_for(record.type)
        if provider is None:
            return True
        result = ProvisionResult(
            url=record.url or "",
            type=record.type,
            runtime_id=record.runtime_id,
            port=record.port,
        )
        try:
            await provider.release(result, record.id)
        except SandboxError as e:
            logger.warning("Could not release %s preview of %s: %s", provider.name, record.id, e)
            return False
        return True
