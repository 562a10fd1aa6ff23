"""BuildCoordinatorとCascadeSchedulerのユニットテスト。"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from flotilla.models.build import CommandResult
from flotilla.registry.loader import PlatformRegistry
from flotilla.registry.processes import ProcessRegistry
from flotilla.services.build import BuildCoordinator, CascadeScheduler
from flotilla.services.graph import DependencyGraph
from flotilla.services.runner import CommandRunner


def _result(command: str, success: bool = True) -> CommandResult:
    return CommandResult(command=command, success=success, exit_code=0 if success else 1)


async def _succeed(command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
    return _result(command)


class TestBuildCoordinator:
    async def test_build_success(self, registry: PlatformRegistry, runner: CommandRunner) -> None:
        builder = BuildCoordinator(registry, runner)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_succeed) as mock_run:
            assert await builder.build("web") is True

        mock_run.assert_awaited_once()
        assert mock_run.call_args.kwargs["key"] == "web:build"
        assert mock_run.call_args.kwargs["cwd"] == registry.get("web").path
        assert builder.last_result("web").success is True

    async def test_build_failure(self, registry: PlatformRegistry, runner: CommandRunner) -> None:
        builder = BuildCoordinator(registry, runner)

        with patch.object(runner, "run", new_callable=AsyncMock, return_value=_result("npm run build", False)):
            result = await builder.build_result("web")

        assert result.success is False
        assert result.reason == "Build exited with 1"

    async def test_concurrent_builds_share_one_process(
        self, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        """実行中のビルドへの要求は同じ結果に合流し、コマンドは1回だけ実行される。"""
        builder = BuildCoordinator(registry, runner)
        release = asyncio.Event()

        async def blocked_run(command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
            await release.wait()
            return _result(command)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=blocked_run) as mock_run:
            first = asyncio.create_task(builder.build("web"))
            second = asyncio.create_task(builder.build("web"))
            await asyncio.sleep(0)
            assert builder.is_building("web")
            release.set()
            results = await asyncio.gather(first, second)

        assert results == [True, True]
        mock_run.assert_awaited_once()
        assert not builder.is_building("web")

    async def test_in_flight_marker_cleared_after_failure(
        self, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        builder = BuildCoordinator(registry, runner)

        with patch.object(runner, "run", new_callable=AsyncMock, return_value=_result("npm run build", False)):
            await builder.build("web")
        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_succeed) as mock_run:
            assert await builder.build("web") is True

        mock_run.assert_awaited_once()

    async def test_force_terminates_in_flight_build(
        self, registry: PlatformRegistry, runner: CommandRunner, processes: ProcessRegistry
    ) -> None:
        """force=Trueは実行中のプロセスを終了させてから新しくビルドする。"""
        builder = BuildCoordinator(registry, runner)
        release = asyncio.Event()
        proc = MagicMock()
        proc.returncode = None
        proc.pid = 4242
        proc.terminate.side_effect = release.set
        calls: list[str] = []

        async def fake_run(command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
            calls.append(command)
            if len(calls) == 1:
                processes.register(key, proc)
                await release.wait()
                processes.unregister(key, proc)
                return CommandResult(command=command, success=False, exit_code=-15)
            return _result(command)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=fake_run):
            first = asyncio.create_task(builder.build("web"))
            while not processes.keys():
                await asyncio.sleep(0)
            assert await builder.build("web", force=True) is True
            assert await first is False

        proc.terminate.assert_called_once()
        assert len(calls) == 2
        assert processes.keys() == []

    async def test_missing_directory_is_skipped(
        self, platform_factory, workspace: Path, runner: CommandRunner
    ) -> None:
        registry = PlatformRegistry.from_platforms([platform_factory("web", create_dir=False)], workspace)
        builder = BuildCoordinator(registry, runner)

        with patch.object(runner, "run", new_callable=AsyncMock) as mock_run:
            result = await builder.build_result("web")

        assert result.skipped is True
        assert result.success is False
        assert result.reason == "Platform directory not found"
        mock_run.assert_not_awaited()


class TestCascadeScheduler:
    async def test_builds_dependents_after_origin(
        self, graph: DependencyGraph, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        scheduler = CascadeScheduler(graph, registry, BuildCoordinator(registry, runner))

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_succeed):
            result = await scheduler.cascade("mail_box_components")

        assert result.order == ["mail_box_components", "desktop", "web"]
        assert result.success is True
        assert result.skipped == []

    async def test_diamond_builds_each_platform_once(
        self, graph: DependencyGraph, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        scheduler = CascadeScheduler(graph, registry, BuildCoordinator(registry, runner))

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_succeed) as mock_run:
            result = await scheduler.cascade("mail_box_lib")

        keys = [call.kwargs["key"] for call in mock_run.call_args_list]
        assert len(keys) == len(set(keys)) == 7
        assert result.order[0] == "mail_box_lib"
        assert result.order.index("mail_box_components") < result.order.index("web")

    async def test_unavailable_platform_is_skipped(
        self, graph: DependencyGraph, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        registry.get("cloud").status = "unavailable"
        registry.get("mobile").status = "error"
        scheduler = CascadeScheduler(graph, registry, BuildCoordinator(registry, runner))

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_succeed):
            result = await scheduler.cascade("mail_box_lib")

        assert sorted(result.skipped) == ["cloud", "mobile"]
        assert "cloud" not in result.order
        assert "mobile" not in result.results

    async def test_failure_does_not_stop_cascade_by_default(
        self, graph: DependencyGraph, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        async def fail_components(command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
            return _result(command, success=key != "mail_box_components:build")

        scheduler = CascadeScheduler(graph, registry, BuildCoordinator(registry, runner))
        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=fail_components):
            result = await scheduler.cascade("mail_box_components")

        assert result.results == {"mail_box_components": False, "desktop": True, "web": True}
        assert result.success is False

    async def test_halt_on_failure_skips_transitive_dependents(
        self, graph: DependencyGraph, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        async def fail_components(command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
            return _result(command, success=key != "mail_box_components:build")

        scheduler = CascadeScheduler(graph, registry, BuildCoordinator(registry, runner), halt_on_failure=True)
        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=fail_components):
            result = await scheduler.cascade("mail_box_lib")

        assert sorted(result.skipped) == ["desktop", "web"]
        assert result.results["mobile"] is True
        assert result.results["mail_box_components"] is False

    def test_plan_starts_with_origin(
        self, graph: DependencyGraph, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        scheduler = CascadeScheduler(graph, registry, BuildCoordinator(registry, runner))
        assert scheduler.plan("mail_box_lib")[0] == "mail_box_lib"
        assert scheduler.plan("web") == ["web"]
