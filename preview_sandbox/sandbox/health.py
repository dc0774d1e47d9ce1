"""
Health Monitor - Reconcile registry status against what the runtime reports.

State machine:
- CREATING -> RUNNING once the runtime reports the app reachable
- CREATING -> ERROR when provisioning exceeds its timeout and no provider is still trying
- RUNNING  -> ERROR after K consecutive failed checks, a non-zero exit or a restart loop
- nothing  -> STOPPED (only explicit operations stop sandboxes)

Each tracked sandbox is polled by its own cancellable task, so a slow check on
one sandbox never delays the others. Every write is a compare-and-set against
the status read at the start of the step, so a concurrent explicit operation
(stop, restart) always wins over what the poll observed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import httpx

from preview_sandbox.schemas import Sandbox, SandboxStatus, SandboxType, utcnow
from preview_sandbox.sandbox.errors import NotFound, RuntimeUnavailable
from preview_sandbox.sandbox.registry import SandboxRegistry
from preview_sandbox.sandbox.runtime import ContainerRuntimeAdapter, port_is_open

logger = logging.getLogger(__name__)

WATCHED_STATUSES = frozenset({SandboxStatus.CREATING, SandboxStatus.RUNNING})

HOSTED_TYPES = frozenset({SandboxType.E2B, SandboxType.CODESANDBOX, SandboxType.STACKBLITZ})


@dataclass
class Observation:
    """What one check of a sandbox found."""
    reachable: bool
    fatal: Optional[str] = None
    logs: Optional[List[str]] = field(default=None)


class HealthMonitor:
    """Background reconciliation of sandbox status."""

    def __init__(
        self,
        registry: SandboxRegistry,
        runtime: ContainerRuntimeAdapter,
        interval: float = 5,
        failure_threshold: int = 3,
        provisioning_timeout: float = 600,
        max_restarts: int = 5,
        host: str = "localhost",
        log_tail: int = 50,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
        is_provisioning: Optional[Callable[[str], bool]] = None,
    ):
        self.registry = registry
        self.runtime = runtime
        self.interval = interval
        self.failure_threshold = failure_threshold
        self.provisioning_timeout = provisioning_timeout
        self.max_restarts = max_restarts
        self.host = host
        self.log_tail = log_tail
        self.clock = clock
        # Reports whether a provider attempt is still running for a sandbox
        self.is_provisioning = is_provisioning or (lambda sandbox_id: False)
        self._http = http_client
        self._tasks: Dict[str, asyncio.Task] = {}
        self._failures: Dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Task management
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Track every sandbox that is still creating or running."""
        for record in await self.registry.list_by_status(*WATCHED_STATUSES):
            self.track(record.id)

    async def stop(self) -> None:
        """Cancel all polling tasks."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def track(self, sandbox_id: str) -> None:
        """Start polling a sandbox. Tracking an already tracked sandbox is a no-op."""
        task = self._tasks.get(sandbox_id)
        if task is not None and not task.done():
            return
        self._failures.pop(sandbox_id, None)
        self._tasks[sandbox_id] = asyncio.create_task(
            self._watch(sandbox_id), name=f"health-{sandbox_id}"
        )

    def untrack(self, sandbox_id: str) -> None:
        """Stop polling a sandbox."""
        task = self._tasks.pop(sandbox_id, None)
        self._failures.pop(sandbox_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def is_tracking(self, sandbox_id: str) -> bool:
        task = self._tasks.get(sandbox_id)
        return task is not None and not task.done()

    def failure_count(self, sandbox_id: str) -> int:
        return self._failures.get(sandbox_id, 0)

    async def _watch(self, sandbox_id: str) -> None:
        try:
            while True:
                try:
                    record = await self.check_once(sandbox_id)
                except RuntimeUnavailable as e:
                    logger.warning("Health check of %s failed: %s", sandbox_id, e)
                    record = await self.registry.get(sandbox_id)
                except NotFound:
                    record = None

                if record is None or record.status not in WATCHED_STATUSES:
                    logger.debug("Stopped polling %s", sandbox_id)
                    return
                await asyncio.sleep(self.interval)
        finally:
            if self._tasks.get(sandbox_id) is asyncio.current_task():
                self._tasks.pop(sandbox_id, None)
                self._failures.pop(sandbox_id, None)

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def check_once(self, sandbox_id: str) -> Optional[Sandbox]:
        """
        Run one reconciliation step.

        Returns:
            The sandbox as it stands after the step, or None if it was deleted
        """
        record = await self.registry.get(sandbox_id)
        if record is None or record.status not in WATCHED_STATUSES:
            return record

        observation = await self.observe(record)
        now = self.clock()

        if record.status == SandboxStatus.CREATING:
            return await self._reconcile_creating(record, observation, now)
        return await self._reconcile_running(record, observation)

    async def _reconcile_creating(self, record: Sandbox, observation: Observation, now: datetime) -> Optional[Sandbox]:
        if observation.fatal:
            return await self._transition(record, SandboxStatus.ERROR, observation.fatal, observation.logs)

        if record.runtime_id and observation.reachable:
            logger.info("Sandbox %s is ready", record.id)
            return await self._transition(record, SandboxStatus.RUNNING, "Sandbox is ready", observation.logs)

        if record.age_seconds(now) > self.provisioning_timeout and not self.is_provisioning(record.id):
            reason = f"Provisioning timed out after {int(self.provisioning_timeout)}s"
            return await self._transition(record, SandboxStatus.ERROR, reason, observation.logs)

        return await self._refresh_logs(record, observation.logs)

    async def _reconcile_running(self, record: Sandbox, observation: Observation) -> Optional[Sandbox]:
        if observation.fatal:
            return await self._transition(record, SandboxStatus.ERROR, observation.fatal, observation.logs)

        if observation.reachable:
            self._failures.pop(record.id, None)
            return await self._refresh_logs(record, observation.logs)

        failures = self._failures.get(record.id, 0) + 1
        self._failures[record.id] = failures
        logger.debug("Sandbox %s unreachable (%d/%d)", record.id, failures, self.failure_threshold)
        if failures >= self.failure_threshold:
            self._failures.pop(record.id, None)
            reason = f"Unreachable for {failures} consecutive health checks"
            return await self._transition(record, SandboxStatus.ERROR, reason, observation.logs)
        return record

    async def _transition(
        self,
        record: Sandbox,
        status: SandboxStatus,
        reason: str,
        logs: Optional[List[str]],
    ) -> Optional[Sandbox]:
        fields = {"status": status}
        if logs is not None:
            fields["logs"] = logs
        try:
            updated = await self.registry.update(
                record.id,
                expected_status=record.status,
                append_logs=[reason],
                **fields,
            )
        except NotFound:
            logger.debug("Sandbox %s was deleted while being checked", record.id)
            return None
        if updated is None:
            # An explicit operation changed the sandbox while we were checking it
            return await self.registry.get(record.id)
        level = logging.WARNING if status == SandboxStatus.ERROR else logging.INFO
        logger.log(level, "Sandbox %s: %s -> %s (%s)", record.id, record.status.value, status.value, reason)
        return updated

    async def _refresh_logs(self, record: Sandbox, logs: Optional[List[str]]) -> Optional[Sandbox]:
        if not logs or record.logs[-len(logs):] == logs:
            return record
        try:
            updated = await self.registry.update(record.id, expected_status=record.status, logs=logs)
        except NotFound:
            return None
        return updated if updated is not None else await self.registry.get(record.id)

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    async def observe(self, record: Sandbox) -> Observation:
        """Look at a sandbox without changing its record."""
        if record.type == SandboxType.STATIC:
            return Observation(reachable=True)

        if not record.runtime_id:
            # Still provisioning; nothing to check yet
            return Observation(reachable=False)

        if record.type == SandboxType.DOCKER:
            return await self._observe_container(record)

        if record.type in HOSTED_TYPES and record.url:
            return Observation(reachable=await self._url_responds(record.url))

        return Observation(reachable=False)

    async def _observe_container(self, record: Sandbox) -> Observation:
        try:
            state = await self.runtime.inspect(record.runtime_id)
            if state.missing:
                return Observation(reachable=False)
            logs = await self.runtime.logs(record.runtime_id, tail=self.log_tail)
        except RuntimeUnavailable as e:
            logger.warning("Cannot inspect %s: %s", record.id, e)
            return Observation(reachable=False)

        if state.crashed:
            return Observation(
                reachable=False,
                fatal=f"Container exited with code {state.exit_code}",
                logs=logs,
            )
        if state.restart_count > self.max_restarts:
            return Observation(
                reachable=False,
                fatal=f"Container restarted {state.restart_count} times",
                logs=logs,
            )

        reachable = state.running and record.port is not None and await port_is_open(self.host, record.port)
        return Observation(reachable=reachable, logs=logs)

    async def _url_responds(self, url: str) -> bool:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(5.0), follow_redirects=True)
        try:
            response = await self._http.get(url)
        except httpx.HTTPError:
            return False
        return response.status_code < 500
