"""DeploymentPipelineRunnerのユニットテスト。"""

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from flotilla.models.build import CommandResult
from flotilla.models.deploy import DeploymentTrigger
from flotilla.models.errors import DeploymentInProgressError
from flotilla.registry.loader import PlatformRegistry
from flotilla.services.build import BuildCoordinator
from flotilla.services.deploy import DeploymentPipelineRunner
from flotilla.services.runner import CommandRunner

LOW = DeploymentTrigger(platform_id="web", reason="Scheduled update due", urgency="low")
HIGH = DeploymentTrigger(platform_id="web", reason="Critical patch available", urgency="high")


@pytest.fixture
def builder(registry: PlatformRegistry, runner: CommandRunner) -> BuildCoordinator:
    return BuildCoordinator(registry, runner)


@pytest.fixture
def deployer(
    registry: PlatformRegistry, runner: CommandRunner, builder: BuildCoordinator, tmp_path: Path
) -> DeploymentPipelineRunner:
    return DeploymentPipelineRunner(
        registry=registry, runner=runner, builder=builder, data_dir=tmp_path / "flotilla-data"
    )


def _fail_on(failing: str):
    async def fake_run(command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
        success = command != failing
        return CommandResult(command=command, success=success, exit_code=0 if success else 1, stderr="" if success else "boom")

    return fake_run


class TestCreatePipeline:
    def test_minimal_steps(self, deployer: DeploymentPipelineRunner) -> None:
        pipeline = deployer.create_pipeline("web", LOW)

        assert [s.name for s in pipeline.steps] == ["build", "test", "deploy"]
        assert pipeline.rollback_on_failure is False
        assert pipeline.environment == "staging"
        assert pipeline.state == "pending"

    def test_optional_steps_and_urgency(self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry) -> None:
        web = registry.get("web")
        web.validate_command = "npm run lint"
        web.health_check = "curl -f http://localhost:5173"

        pipeline = deployer.create_pipeline("web", HIGH)

        assert [s.name for s in pipeline.steps] == [
            "pre-deployment-checks",
            "build",
            "test",
            "deploy",
            "post-deployment-verification",
        ]
        assert pipeline.steps[-1].command == "curl -f http://localhost:5173"
        assert pipeline.rollback_on_failure is True
        assert pipeline.urgency == "high"


class TestRun:
    async def test_success_sets_last_sync(
        self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        pipeline = deployer.create_pipeline("web", LOW)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_fail_on("")) as mock_run:
            result = await deployer.run(pipeline)

        assert result.success is True
        assert result.state == "succeeded"
        assert pipeline.state == "succeeded"
        assert mock_run.await_count == 3
        assert registry.get("web").last_sync is not None

    async def test_low_urgency_failure_does_not_roll_back(
        self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        registry.get("web").rollback_command = "npm run rollback"
        pipeline = deployer.create_pipeline("web", LOW)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_fail_on("npm test")) as mock_run:
            result = await deployer.run(pipeline)

        commands = [call.args[0] for call in mock_run.call_args_list]
        assert commands == ["npm run build", "npm test"]
        assert result.state == "failed"
        assert result.failed_step == "test"
        assert result.rolled_back is False
        assert "boom" in result.error
        assert registry.get("web").last_sync is None

    async def test_high_urgency_failure_rolls_back_once(
        self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        web = registry.get("web")
        web.rollback_command = "npm run rollback"
        web.artifacts = ["dist", "build"]
        (web.path / "dist").mkdir()
        (web.path / "dist" / "app.js").write_text("v1", encoding="utf-8")
        pipeline = deployer.create_pipeline("web", HIGH)

        async def deploy_breaks_artifacts(
            command: str, cwd: Path | None = None, key: str | None = None
        ) -> CommandResult:
            if command == "npm run deploy":
                (web.path / "dist" / "app.js").write_text("v2", encoding="utf-8")
                (web.path / "build").mkdir()
                return CommandResult(command=command, success=False, exit_code=1)
            return CommandResult(command=command, success=True, exit_code=0)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=deploy_breaks_artifacts) as mock_run:
            result = await deployer.run(pipeline)

        commands = [call.args[0] for call in mock_run.call_args_list]
        assert commands.count("npm run rollback") == 1
        assert commands[-1] == "npm run rollback"
        assert result.rolled_back is True
        assert result.state == "rolled_back"
        assert result.failed_step == "deploy"
        assert (web.path / "dist" / "app.js").read_text(encoding="utf-8") == "v1"
        assert not (web.path / "build").exists()

    async def test_failed_rollback_command_leaves_failed_state(
        self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        web = registry.get("web")
        web.rollback_command = "npm run rollback"
        pipeline = deployer.create_pipeline("web", HIGH)

        async def everything_after_build_fails(
            command: str, cwd: Path | None = None, key: str | None = None
        ) -> CommandResult:
            success = command == "npm run build"
            return CommandResult(command=command, success=success, exit_code=0 if success else 1)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=everything_after_build_fails):
            result = await deployer.run(pipeline)

        assert result.rolled_back is True
        assert result.state == "failed"

    async def test_concurrent_run_rejected(self, deployer: DeploymentPipelineRunner, runner: CommandRunner) -> None:
        release = asyncio.Event()

        async def blocked_run(command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
            await release.wait()
            return CommandResult(command=command, success=True, exit_code=0)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=blocked_run):
            first = asyncio.create_task(deployer.run(deployer.create_pipeline("web", LOW)))
            await asyncio.sleep(0)
            assert deployer.is_deploying("web")
            with pytest.raises(DeploymentInProgressError):
                await deployer.run(deployer.create_pipeline("web", LOW))
            release.set()
            result = await first

        assert result.success is True
        assert not deployer.is_deploying("web")

    async def test_build_step_joins_in_flight_build(
        self, deployer: DeploymentPipelineRunner, builder: BuildCoordinator, runner: CommandRunner
    ) -> None:
        release = asyncio.Event()

        async def slow_build(command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
            if key == "web:build":
                await release.wait()
            return CommandResult(command=command, success=True, exit_code=0)

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=slow_build) as mock_run:
            build = asyncio.create_task(builder.build("web"))
            while not builder.is_building("web"):
                await asyncio.sleep(0)
            deploy = asyncio.create_task(deployer.run(deployer.create_pipeline("web", LOW)))
            await asyncio.sleep(0.05)
            release.set()
            built, result = await asyncio.gather(build, deploy)

        build_keys = [c.kwargs["key"] for c in mock_run.call_args_list if c.kwargs["key"] == "web:build"]
        assert build_keys == ["web:build"]
        assert built is True
        assert result.success is True
        assert [step.command for step in result.steps] == ["npm run build", "npm test", "npm run deploy"]

    async def test_skipped_build_fails_the_pipeline(
        self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        pipeline = deployer.create_pipeline("web", LOW)
        registry.get("web").path.rmdir()

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_fail_on("")) as mock_run:
            result = await deployer.run(pipeline)

        mock_run.assert_not_awaited()
        assert result.failed_step == "build"
        assert "Platform directory not found" in result.error

    async def test_snapshot_is_discarded_after_success(
        self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        web = registry.get("web")
        web.artifacts = ["dist"]
        (web.path / "dist").mkdir()
        (web.path / "dist" / "app.js").write_text("v1", encoding="utf-8")

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_fail_on("")):
            await deployer.run(deployer.create_pipeline("web", LOW))
            await deployer.run(deployer.create_pipeline("web", LOW))

        assert list(deployer.backups_dir.iterdir()) == []
        assert (web.path / "dist" / "app.js").read_text(encoding="utf-8") == "v1"

    async def test_snapshot_is_discarded_after_rollback(
        self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry, runner: CommandRunner
    ) -> None:
        web = registry.get("web")
        web.artifacts = ["dist"]
        (web.path / "dist").mkdir()

        with patch.object(runner, "run", new_callable=AsyncMock, side_effect=_fail_on("npm run deploy")):
            result = await deployer.run(deployer.create_pipeline("web", HIGH))

        assert result.state == "rolled_back"
        assert list(deployer.backups_dir.iterdir()) == []


class TestTriggers:
    def test_identify_triggers(self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry) -> None:
        now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        for platform in registry.all():
            platform.last_sync = now - timedelta(minutes=5)
        registry.get("web").last_sync = None
        registry.get("mobile").last_sync = now - timedelta(hours=2)
        registry.get("extension").status = "unavailable"
        registry.get("extension").last_sync = None
        deployer.signals_dir.mkdir(parents=True)
        flag = deployer.signals_dir / "cloud.critical"
        flag.touch()

        triggers = {t.platform_id: t for t in deployer.identify_triggers(now=now)}

        assert set(triggers) == {"web", "mobile", "cloud"}
        assert triggers["web"].urgency == "low"
        assert triggers["mobile"].urgency == "low"
        assert triggers["cloud"].urgency == "high"
        assert not flag.exists()

    async def test_check_triggers_skips_in_progress(
        self, deployer: DeploymentPipelineRunner, registry: PlatformRegistry
    ) -> None:
        for platform in registry.all():
            platform.last_sync = datetime.now(UTC)
        registry.get("web").last_sync = None

        with patch.object(
            deployer, "run", new_callable=AsyncMock, side_effect=DeploymentInProgressError("web")
        ) as mock_run:
            results = await deployer.check_triggers()

        assert results == []
        mock_run.assert_awaited_once()
