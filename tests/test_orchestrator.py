"""End-to-end tests for the sandbox orchestrator against a fake container runtime."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from preview_sandbox.schemas import Sandbox, SandboxStatus, SandboxType
from preview_sandbox.sandbox.errors import (
    AlreadyStopped,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    PoolExhausted,
    ProviderError,
    RuntimeUnavailable,
)
from preview_sandbox.sandbox.providers import StaticRenderProvider

from tests.conftest import NEXTJS_FILES, StubProvider


@pytest.fixture(autouse=True)
def port_check(mocker):
    """Make every TCP port check succeed unless a test says otherwise."""
    port_check = AsyncMock(return_value=True)
    mocker.patch("preview_sandbox.sandbox.health.port_is_open", new=port_check)
    mocker.patch("preview_sandbox.sandbox.providers.local.port_is_open", new=port_check)
    return port_check


async def wait_for(condition, attempts: int = 200):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met")


class TestCreate:
    """Tests for create_sandbox."""

    @pytest.mark.asyncio
    async def test_create_running_sandbox(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        assert info.status == SandboxStatus.RUNNING
        assert info.type == SandboxType.DOCKER
        assert 5000 <= info.port < 5010
        assert info.url
        assert info.id.startswith("sandbox_")
        assert info.runtime_id in fake_runtime.alive()

    @pytest.mark.asyncio
    async def test_concurrent_creates_get_distinct_ports(self, orchestrator, nextjs_files):
        first, second = await asyncio.gather(
            orchestrator.create_sandbox("p1", nextjs_files, "nextjs"),
            orchestrator.create_sandbox("p2", nextjs_files, "nextjs"),
        )

        assert first.port != second.port
        assert orchestrator.ports.in_use() == sorted([first.port, second.port])

    @pytest.mark.asyncio
    async def test_preferred_port(self, orchestrator, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs", preferred_port=5007)
        assert info.port == 5007

    @pytest.mark.asyncio
    @pytest.mark.parametrize("project_id,framework", [("", "nextjs"), ("p1", ""), ("   ", "nextjs")])
    async def test_missing_fields_rejected(self, orchestrator, nextjs_files, project_id, framework):
        with pytest.raises(InvalidRequest):
            await orchestrator.create_sandbox(project_id, nextjs_files, framework)
        assert orchestrator.ports.in_use() == []

    @pytest.mark.asyncio
    async def test_pool_exhausted(self, make_orchestrator, nextjs_files):
        orchestrator = make_orchestrator(port_start=5000, port_end=5001)
        await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        with pytest.raises(PoolExhausted):
            await orchestrator.create_sandbox("p2", nextjs_files, "nextjs")

    @pytest.mark.asyncio
    async def test_framework_alias_is_normalized(self, orchestrator, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "Next.js")
        record = await orchestrator.registry.get(info.id)
        assert record.framework == "nextjs"


class TestFallback:
    """Provisioning degrades through the provider chain instead of failing."""

    @pytest.mark.asyncio
    async def test_second_provider_used_when_first_fails(self, make_orchestrator, nextjs_files):
        orchestrator = make_orchestrator(providers=lambda ports: [
            StubProvider("primary", always_fail=ProviderError("quota exceeded")),
            StubProvider("secondary"),
            StaticRenderProvider(),
        ])

        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        assert info.status == SandboxStatus.RUNNING
        assert info.url == f"https://secondary.example/{info.id}"
        record = await orchestrator.registry.get(info.id)
        assert any("quota exceeded" in line for line in record.logs)

    @pytest.mark.asyncio
    async def test_docker_down_serves_static_preview(self, orchestrator, fake_runtime, nextjs_files):
        fake_runtime.unavailable = True

        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        assert info.status == SandboxStatus.RUNNING
        assert info.type == SandboxType.STATIC
        assert info.url.startswith("data:text/html")

    @pytest.mark.asyncio
    async def test_build_failure_is_recorded(self, orchestrator, fake_runtime, nextjs_files):
        fake_runtime.build_error = "npm ERR! Unexpected token in JSON at position 12"

        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        record = await orchestrator.registry.get(info.id)
        assert info.type == SandboxType.STATIC
        assert any("Unexpected token" in line for line in record.logs)

    @pytest.mark.asyncio
    async def test_slow_chain_outlasting_provisioning_timeout(self, make_orchestrator, nextjs_files):
        """The health monitor leaves CREATING alone while a provider is still being tried."""
        orchestrator = make_orchestrator(providers=lambda ports: [
            StubProvider("slow", delay=0.6, timeout=0.3),
            StaticRenderProvider(),
        ])
        orchestrator.monitor.provisioning_timeout = 0.2
        orchestrator.monitor.interval = 0.05

        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        assert info.status == SandboxStatus.RUNNING
        assert info.type == SandboxType.STATIC
        assert info.url
        record = await orchestrator.registry.get(info.id)
        assert not any("Provisioning timed out" in line for line in record.logs)

    @pytest.mark.asyncio
    async def test_every_provider_failing(self, make_orchestrator, nextjs_files):
        """Without a last-resort provider the sandbox ends in ERROR."""
        orchestrator = make_orchestrator(providers=lambda ports: [
            StubProvider("only", always_fail=RuntimeUnavailable("service down")),
        ])

        with pytest.raises(RuntimeUnavailable):
            await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        (record,) = await orchestrator.registry.list_all()
        assert record.status == SandboxStatus.ERROR


class TestStop:
    """Tests for stop."""

    @pytest.mark.asyncio
    async def test_stop_unknown_sandbox(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.stop("sandbox_missing")

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        stopped = await orchestrator.stop(info.id)

        assert stopped.status == SandboxStatus.STOPPED
        assert stopped.runtime_id is None
        assert fake_runtime.containers == {}
        assert not orchestrator.ports.is_claimed(info.port)
        assert not orchestrator.monitor.is_tracking(info.id)

    @pytest.mark.asyncio
    async def test_second_stop_is_already_stopped(self, orchestrator, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        await orchestrator.stop(info.id)

        with pytest.raises(AlreadyStopped) as excinfo:
            await orchestrator.stop(info.id)

        assert excinfo.value.sandbox.status == SandboxStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_during_create(self, orchestrator, fake_runtime, port_check, nextjs_files):
        """A stop issued while the container is starting leaves nothing running."""
        port_check.return_value = False
        fake_runtime.startup_logs = ["compiling..."]

        create = asyncio.create_task(orchestrator.create_sandbox("p1", nextjs_files, "nextjs"))
        await wait_for(lambda: bool(fake_runtime.containers))
        sandbox_id = next(iter(fake_runtime.containers.values()))["sandbox_id"]

        stopped = await orchestrator.stop(sandbox_id)
        created = await create

        assert stopped.status == SandboxStatus.STOPPED
        assert created.status in (SandboxStatus.ERROR, SandboxStatus.STOPPED)
        assert fake_runtime.alive() == []
        assert orchestrator.ports.in_use() == []

        await orchestrator.cleanup()
        assert fake_runtime.alive() == []
        assert (await orchestrator.registry.get(sandbox_id)).status == SandboxStatus.STOPPED

    @pytest.mark.asyncio
    async def test_hosted_preview_released_on_stop(self, make_orchestrator, nextjs_files):
        hosted = StubProvider("e2b")
        orchestrator = make_orchestrator(providers=lambda ports: [hosted, StaticRenderProvider()])
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        await orchestrator.stop(info.id)

        assert hosted.released == [info.id]


class TestRestart:
    """Tests for restart and force_restart."""

    @pytest.mark.asyncio
    async def test_restart_in_place(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        restarted = await orchestrator.restart(info.id)

        assert restarted.status == SandboxStatus.RUNNING
        assert restarted.runtime_id == info.runtime_id
        assert fake_runtime.containers[info.runtime_id]["restart_count"] == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_in_place_restart(self, orchestrator, fake_runtime, nextjs_files, mocker):
        """A stop does not wait behind a container that never comes back up."""
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        async def hang(runtime_id):
            await asyncio.Event().wait()

        mocker.patch.object(fake_runtime, "restart", side_effect=hang)
        restarting = asyncio.create_task(orchestrator.restart(info.id))
        await wait_for(lambda: info.id in orchestrator._inflight)

        stopped = await asyncio.wait_for(orchestrator.stop(info.id), timeout=1)
        await asyncio.wait_for(restarting, timeout=1)

        assert stopped.status == SandboxStatus.STOPPED
        assert restarting.exception() is None
        assert (await orchestrator.registry.get(info.id)).status == SandboxStatus.STOPPED
        assert info.id not in orchestrator._inflight
        assert not orchestrator.ports.is_claimed(info.port)

    @pytest.mark.asyncio
    async def test_restart_reprovisions_when_container_is_gone(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        fake_runtime.containers.clear()

        restarted = await orchestrator.restart(info.id)

        assert restarted.status == SandboxStatus.RUNNING
        assert restarted.runtime_id != info.runtime_id
        assert restarted.port == info.port

    @pytest.mark.asyncio
    async def test_restart_stopped_sandbox(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        await orchestrator.stop(info.id)

        restarted = await orchestrator.restart(info.id)

        assert restarted.status == SandboxStatus.RUNNING
        assert restarted.runtime_id in fake_runtime.alive()
        assert orchestrator.ports.is_claimed(restarted.port)

    @pytest.mark.asyncio
    async def test_restart_while_creating_rejected(self, orchestrator):
        await orchestrator.registry.create(Sandbox(id="sb-1", project_id="p1", port=5000))

        with pytest.raises(InvalidTransition):
            await orchestrator.restart("sb-1")

    @pytest.mark.asyncio
    async def test_restart_without_files(self, orchestrator):
        await orchestrator.registry.create(
            Sandbox(id="sb-1", project_id="unknown", status=SandboxStatus.ERROR, type=SandboxType.STATIC)
        )

        with pytest.raises(InvalidRequest):
            await orchestrator.restart("sb-1")
        assert (await orchestrator.registry.get("sb-1")).status == SandboxStatus.ERROR

    @pytest.mark.asyncio
    async def test_files_loaded_from_file_source(self, make_orchestrator):
        async def file_source(project_id):
            return dict(NEXTJS_FILES), "next"

        orchestrator = make_orchestrator(file_source=file_source)
        await orchestrator.registry.create(
            Sandbox(id="sb-1", project_id="p9", status=SandboxStatus.STOPPED, type=SandboxType.DOCKER)
        )

        restarted = await orchestrator.restart("sb-1")

        assert restarted.status == SandboxStatus.RUNNING
        assert restarted.port is not None

    @pytest.mark.asyncio
    async def test_force_restart_when_handle_is_gone(self, orchestrator, fake_runtime, nextjs_files):
        """A failed graceful stop does not block a force restart."""
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        fake_runtime.containers.clear()
        fake_runtime.fail_stop = True

        restarted = await orchestrator.force_restart(info.id)

        assert restarted.status == SandboxStatus.RUNNING
        assert restarted.runtime_id != info.runtime_id
        assert restarted.runtime_id in fake_runtime.alive()

    @pytest.mark.asyncio
    async def test_force_restart_of_errored_sandbox(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        fake_runtime.crash(info.runtime_id)
        assert (await orchestrator.get_status(info.id)).status == SandboxStatus.ERROR

        restarted = await orchestrator.force_restart(info.id)

        assert restarted.status == SandboxStatus.RUNNING
        assert info.runtime_id not in fake_runtime.containers


class TestQueries:
    """Tests for status, logs, diagnose and listing."""

    @pytest.mark.asyncio
    async def test_status_of_unknown_sandbox(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.get_status("sandbox_missing")

    @pytest.mark.asyncio
    async def test_status_reflects_crash(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        fake_runtime.crash(info.runtime_id, exit_code=137)

        status = await orchestrator.get_status(info.id)

        assert status.status == SandboxStatus.ERROR
        assert status.port == info.port

    @pytest.mark.asyncio
    async def test_logs_come_from_runtime(self, orchestrator, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        logs = await orchestrator.logs(info.id, tail=2)

        assert logs == ["Ready in 1.2s", "Local: http://localhost:3000"]

    @pytest.mark.asyncio
    async def test_transport_logs_are_truncated(self, make_orchestrator, nextjs_files):
        orchestrator = make_orchestrator(transport_log_lines=2)
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        assert len(info.logs) == 2

    @pytest.mark.asyncio
    async def test_diagnose_crashed_container(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        fake_runtime.crash(info.runtime_id, exit_code=1)

        diagnosis = await orchestrator.diagnose(info.id)

        assert diagnosis.runtime_state == "exited"
        assert diagnosis.exit_code == 1
        assert "Container exited with code 1" in diagnosis.issues
        assert diagnosis.recommendations
        assert diagnosis.to_dict()["sandbox"]["projectId"] == "p1"

    @pytest.mark.asyncio
    async def test_diagnose_healthy_sandbox(self, orchestrator, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        diagnosis = await orchestrator.diagnose(info.id)

        assert diagnosis.reachable
        assert diagnosis.issues == []
        assert diagnosis.recommendations == ["No issues detected"]

    @pytest.mark.asyncio
    async def test_list_active(self, orchestrator, nextjs_files):
        running = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        stopped = await orchestrator.create_sandbox("p2", nextjs_files, "nextjs")
        await orchestrator.stop(stopped.id)

        assert {i.id for i in await orchestrator.list()} == {running.id, stopped.id}
        assert [i.id for i in await orchestrator.list_active()] == [running.id]


class TestDeleteAndCleanup:
    """Tests for delete and cleanup."""

    @pytest.mark.asyncio
    async def test_delete(self, orchestrator, fake_runtime, nextjs_files):
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")

        assert await orchestrator.delete(info.id) is True

        assert fake_runtime.containers == {}
        assert orchestrator.ports.in_use() == []
        with pytest.raises(NotFound):
            await orchestrator.get_status(info.id)

    @pytest.mark.asyncio
    async def test_cleanup_retires_expired_sandboxes(self, make_orchestrator, fake_runtime, nextjs_files):
        orchestrator = make_orchestrator(ttl_seconds=0)
        info = await orchestrator.create_sandbox("p1", nextjs_files, "nextjs")
        await asyncio.sleep(0.01)

        assert await orchestrator.cleanup() == 1

        record = await orchestrator.registry.get(info.id)
        assert record.status == SandboxStatus.STOPPED
        assert fake_runtime.alive() == []
        assert not orchestrator.ports.is_claimed(info.port)
        assert await orchestrator.cleanup() == 0


class TestStartup:
    """Tests for resuming from an existing registry."""

    @pytest.mark.asyncio
    async def test_start_reclaims_ports_and_fails_interrupted(self, orchestrator):
        await orchestrator.registry.create(
            Sandbox(id="running", project_id="p1", port=5003, status=SandboxStatus.RUNNING, type=SandboxType.STATIC)
        )
        await orchestrator.registry.create(Sandbox(id="creating", project_id="p2", port=5004))
        await orchestrator.registry.create(
            Sandbox(id="stopped", project_id="p3", port=5005, status=SandboxStatus.STOPPED)
        )

        await orchestrator.start()

        assert orchestrator.ports.in_use() == [5003, 5004]
        assert (await orchestrator.registry.get("creating")).status == SandboxStatus.ERROR
        assert orchestrator.monitor.is_tracking("running")
        assert orchestrator.sweeper.running
