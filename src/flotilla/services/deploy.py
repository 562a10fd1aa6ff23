"""デプロイパイプラインの組み立てと実行。"""

import asyncio
import logging
import shutil
from datetime import UTC, datetime, timedelta
from pathlib import Path

from flotilla.models.build import CommandResult
from flotilla.models.deploy import DeploymentPipeline, DeploymentTrigger, PipelineResult, PipelineStep
from flotilla.models.errors import DeploymentInProgressError
from flotilla.models.platform import Platform
from flotilla.registry.loader import PlatformRegistry
from flotilla.services.build import BuildCoordinator
from flotilla.services.runner import CommandRunner

logger = logging.getLogger(__name__)


class ArtifactSnapshot:
    """デプロイ前の成果物の退避先。

    実行前に存在しなかった成果物はmissingに記録し、復元時に削除する。
    """

    def __init__(self, platform_root: Path, backup_dir: Path) -> None:
        self.platform_root = platform_root
        self.backup_dir = backup_dir
        self.saved: list[str] = []
        self.missing: list[str] = []

    def restore(self) -> None:
        """退避した成果物を元の場所に戻す。

        Raises:
            OSError: ファイル操作に失敗した場合。
        """
        for artifact in [*self.saved, *self.missing]:
            _remove(self.platform_root / artifact)
        for artifact in self.saved:
            _copy(self.backup_dir / artifact, self.platform_root / artifact)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def _copy(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        shutil.copytree(source, target)
    else:
        shutil.copy2(source, target)


class DeploymentPipelineRunner:
    """プラットフォームのデプロイパイプラインを実行する。

    同一プラットフォームのパイプラインは同時に1つまでしか実行しない。
    """

    def __init__(
        self,
        registry: PlatformRegistry,
        runner: CommandRunner,
        builder: BuildCoordinator,
        data_dir: Path,
        environment: str = "staging",
        stale_after: float = 3600.0,
        check_interval: float = 300.0,
    ) -> None:
        self._registry = registry
        self._runner = runner
        self._builder = builder
        self._data_dir = data_dir
        self._environment = environment
        self._stale_after = timedelta(seconds=stale_after)
        self._check_interval = check_interval
        self._platform_locks: dict[str, asyncio.Lock] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def signals_dir(self) -> Path:
        return self._data_dir / "signals"

    @property
    def backups_dir(self) -> Path:
        return self._data_dir / "backups"

    def _get_platform_lock(self, platform_id: str) -> asyncio.Lock:
        """プラットフォーム単位のasyncio.Lockを取得する。"""
        if platform_id not in self._platform_locks:
            self._platform_locks[platform_id] = asyncio.Lock()
        return self._platform_locks[platform_id]

    def is_deploying(self, platform_id: str) -> bool:
        lock = self._platform_locks.get(platform_id)
        return lock is not None and lock.locked()

    def create_pipeline(self, platform_id: str, trigger: DeploymentTrigger) -> DeploymentPipeline:
        """プラットフォームの宣言からパイプラインを組み立てる。

        validate_command / health_check が未設定の場合、そのステップは含めない。

        Raises:
            PlatformNotFoundError: 未登録のIDの場合。
        """
        platform = self._registry.get(platform_id)
        steps: list[PipelineStep] = []
        if platform.validate_command:
            steps.append(PipelineStep(name="pre-deployment-checks", command=platform.validate_command))
        steps.extend(
            [
                PipelineStep(name="build", command=platform.build_command),
                PipelineStep(name="test", command=platform.test_command),
                PipelineStep(name="deploy", command=platform.deploy_command),
            ]
        )
        if platform.health_check:
            steps.append(PipelineStep(name="post-deployment-verification", command=platform.health_check))

        return DeploymentPipeline(
            platform_id=platform_id,
            steps=steps,
            rollback_on_failure=trigger.urgency != "low",
            environment=self._environment,
            urgency=trigger.urgency,
            reason=trigger.reason,
        )

    async def run(self, pipeline: DeploymentPipeline) -> PipelineResult:
        """パイプラインを先頭から順に実行する。

        失敗したステップで停止し、rollback_on_failureならロールバックを1回だけ行う。

        Raises:
            DeploymentInProgressError: 同一プラットフォームでデプロイが実行中の場合。
            PlatformNotFoundError: 未登録のIDの場合。
        """
        lock = self._get_platform_lock(pipeline.platform_id)
        if lock.locked():
            raise DeploymentInProgressError(pipeline.platform_id)

        async with lock:
            return await self._execute(pipeline)

    async def _execute(self, pipeline: DeploymentPipeline) -> PipelineResult:
        platform = self._registry.get(pipeline.platform_id)
        logger.info(
            "Deploying %s to %s (%s urgency): %s",
            platform.id,
            pipeline.environment,
            pipeline.urgency,
            pipeline.reason,
        )
        pipeline.state = "running"

        snapshot: ArtifactSnapshot | None = None
        try:
            snapshot = self._create_snapshot(platform)
        except OSError as e:
            logger.warning("Could not snapshot artifacts of %s: %s", platform.id, e)

        try:
            return await self._run_steps(pipeline, platform, snapshot)
        finally:
            self._discard_snapshot(platform)

    async def _run_steps(
        self, pipeline: DeploymentPipeline, platform: Platform, snapshot: ArtifactSnapshot | None
    ) -> PipelineResult:
        result = PipelineResult(platform_id=platform.id, success=False, state="running")
        for index, step in enumerate(pipeline.steps):
            pipeline.current_step = index
            logger.info("%s: %s", platform.id, step.name)
            outcome = await self._run_step(platform, step)
            result.steps.append(outcome)
            if not outcome.success:
                result.failed_step = step.name
                result.error = f"{step.name} failed with exit {outcome.exit_code}: {outcome.stderr.strip()[:500]}"
                break
        pipeline.current_step = None

        if result.failed_step is None:
            pipeline.state = "succeeded"
            platform.last_sync = datetime.now(UTC)
            logger.info("%s deployed successfully", platform.id)
            result.success = True
            result.state = pipeline.state
            return result

        logger.error("Deployment failed for %s: %s", platform.id, result.error)
        if not pipeline.rollback_on_failure:
            pipeline.state = "failed"
            result.state = pipeline.state
            return result

        pipeline.state = "rolling_back"
        restored = await self._rollback(platform, snapshot)
        result.rolled_back = True
        pipeline.state = "rolled_back" if restored else "failed"
        result.state = pipeline.state
        return result

    async def _run_step(self, platform: Platform, step: PipelineStep) -> CommandResult:
        """ステップを実行する。buildステップはBuildCoordinator経由で実行中のビルドに合流する。"""
        if step.name != "build":
            return await self._runner.run(step.command, cwd=platform.path, key=f"{platform.id}:deploy")

        build = await self._builder.build_result(platform.id)
        if build.command is not None:
            return build.command
        return CommandResult(command=step.command, success=False, exit_code=1, stderr=build.reason or "")

    def _snapshot_dir(self, platform: Platform) -> Path:
        return self.backups_dir / platform.id

    def _create_snapshot(self, platform: Platform) -> ArtifactSnapshot:
        backup_dir = self._snapshot_dir(platform)
        if backup_dir.exists():
            shutil.rmtree(backup_dir)
        snapshot = ArtifactSnapshot(platform.path, backup_dir)
        for artifact in platform.artifacts:
            source = platform.path / artifact
            if source.exists():
                _copy(source, snapshot.backup_dir / artifact)
                snapshot.saved.append(artifact)
            else:
                snapshot.missing.append(artifact)
        return snapshot

    def _discard_snapshot(self, platform: Platform) -> None:
        backup_dir = self._snapshot_dir(platform)
        if not backup_dir.exists():
            return
        try:
            shutil.rmtree(backup_dir)
        except OSError as e:
            logger.warning("Could not remove artifact snapshot of %s: %s", platform.id, e)

    async def _rollback(self, platform: Platform, snapshot: ArtifactSnapshot | None) -> bool:
        """成果物を復元し、宣言されていればロールバックコマンドを実行する。"""
        logger.warning("Rolling back %s", platform.id)
        restored = True
        if snapshot is None:
            logger.error("No artifact snapshot for %s, skipping restore", platform.id)
            restored = False
        else:
            try:
                snapshot.restore()
            except OSError as e:
                logger.error("Failed to restore artifacts of %s: %s", platform.id, e)
                restored = False

        if platform.rollback_command:
            outcome = await self._runner.run(
                platform.rollback_command, cwd=platform.path, key=f"{platform.id}:rollback"
            )
            if not outcome.success:
                logger.error("Rollback command failed for %s (exit %d)", platform.id, outcome.exit_code)
                restored = False

        if restored:
            logger.info("Rollback completed for %s", platform.id)
        return restored

    def identify_triggers(self, now: datetime | None = None) -> list[DeploymentTrigger]:
        """利用可能なプラットフォームのうち、デプロイが必要なものを返す。

        緊急パッチのフラグファイルは読み取り時に削除する。
        """
        now = now or datetime.now(UTC)
        triggers: list[DeploymentTrigger] = []
        for platform in self._registry.available():
            flag = self.signals_dir / f"{platform.id}.critical"
            if flag.is_file():
                flag.unlink(missing_ok=True)
                triggers.append(
                    DeploymentTrigger(platform_id=platform.id, reason="Critical patch available", urgency="high")
                )
            elif platform.last_sync is None:
                triggers.append(DeploymentTrigger(platform_id=platform.id, reason="Never deployed", urgency="low"))
            elif now - platform.last_sync > self._stale_after:
                triggers.append(
                    DeploymentTrigger(platform_id=platform.id, reason="Scheduled update due", urgency="low")
                )
        return triggers

    async def check_triggers(self) -> list[PipelineResult]:
        """トリガーのあるプラットフォームを順にデプロイする。実行中のものは飛ばす。"""
        results = []
        for trigger in self.identify_triggers():
            pipeline = self.create_pipeline(trigger.platform_id, trigger)
            try:
                results.append(await self.run(pipeline))
            except DeploymentInProgressError:
                logger.info("Deployment already running for %s, skipping", trigger.platform_id)
        return results

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._check_loop(), name="deploy-triggers")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _check_loop(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            try:
                await self.check_triggers()
            except Exception:
                logger.exception("Deployment trigger check failed")
