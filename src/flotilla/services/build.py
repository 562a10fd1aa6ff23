"""プラットフォームのビルドとカスケード再ビルド。"""

import asyncio
import logging

from flotilla.models.build import BuildResult, CascadeResult
from flotilla.models.platform import Platform
from flotilla.registry.loader import PlatformRegistry
from flotilla.services.graph import DependencyGraph
from flotilla.services.runner import CommandRunner

logger = logging.getLogger(__name__)

# ビルド対象から除外するステータス
_UNBUILDABLE_STATUSES = frozenset({"unavailable", "error"})


def _build_key(platform_id: str) -> str:
    return f"{platform_id}:build"


class BuildCoordinator:
    """プラットフォームのビルドコマンドを実行する。

    同一プラットフォームへの同時ビルド要求は実行中のタスクに合流させ、
    子プロセスはプラットフォームごとに常に1つまでとする。
    """

    def __init__(self, registry: PlatformRegistry, runner: CommandRunner) -> None:
        self._registry = registry
        self._runner = runner
        self._in_flight: dict[str, asyncio.Task[BuildResult]] = {}
        self._last_results: dict[str, BuildResult] = {}

    def is_building(self, platform_id: str) -> bool:
        task = self._in_flight.get(platform_id)
        return task is not None and not task.done()

    def last_result(self, platform_id: str) -> BuildResult | None:
        return self._last_results.get(platform_id)

    async def build(self, platform_id: str, force: bool = False) -> bool:
        """プラットフォームをビルドし、成否を返す。

        Args:
            platform_id: プラットフォームID。
            force: Trueの場合、実行中のビルドを終了させてから新たにビルドする。

        Returns:
            ビルドコマンドが終了コード0で完了した場合True。

        Raises:
            PlatformNotFoundError: 未登録のIDの場合。
        """
        result = await self.build_result(platform_id, force=force)
        return result.success

    async def build_result(self, platform_id: str, force: bool = False) -> BuildResult:
        """buildと同じだが、BuildResultを返す。"""
        platform = self._registry.get(platform_id)

        task = self._in_flight.get(platform_id)
        if task is not None and not task.done():
            if not force:
                logger.info("Build already in progress for %s, joining it", platform_id)
                return await asyncio.shield(task)

            logger.info("Restarting in-flight build for %s", platform_id)
            self._runner.processes.terminate(_build_key(platform_id))
            await asyncio.shield(task)
            # 待機中に別の呼び出しが新しいビルドを開始していればそれに合流する
            task = self._in_flight.get(platform_id)
            if task is not None and not task.done():
                return await asyncio.shield(task)

        if not platform.path.is_dir():
            logger.warning("Skipping %s - platform directory not found: %s", platform_id, platform.path)
            result = BuildResult(
                platform_id=platform_id,
                success=False,
                skipped=True,
                reason="Platform directory not found",
            )
            self._last_results[platform_id] = result
            return result

        task = asyncio.create_task(self._run_build(platform), name=_build_key(platform_id))
        self._in_flight[platform_id] = task
        task.add_done_callback(lambda t: self._on_build_done(platform_id, t))
        return await asyncio.shield(task)

    def _on_build_done(self, platform_id: str, task: asyncio.Task[BuildResult]) -> None:
        if self._in_flight.get(platform_id) is task:
            del self._in_flight[platform_id]
        if not task.cancelled() and task.exception() is None:
            self._last_results[platform_id] = task.result()

    async def _run_build(self, platform: Platform) -> BuildResult:
        logger.info("Building %s...", platform.id)
        command = await self._runner.run(platform.build_command, cwd=platform.path, key=_build_key(platform.id))
        if command.success:
            logger.info("%s built successfully", platform.id)
        else:
            logger.error("%s build failed (exit %d): %s", platform.id, command.exit_code, command.stderr[:500])
        return BuildResult(
            platform_id=platform.id,
            success=command.success,
            reason=None if command.success else f"Build exited with {command.exit_code}",
            command=command,
        )


class CascadeScheduler:
    """変更のあったプラットフォームから依存先を辿って再ビルドする。

    対象は幅優先探索で求めた到達集合で、各プラットフォームは1回のカスケードで
    高々1回だけビルドされる。ビルド順は到達集合内のトポロジカル順とし、
    依存元がすべてビルドされてから依存先をビルドする。
    """

    def __init__(
        self,
        graph: DependencyGraph,
        registry: PlatformRegistry,
        builder: BuildCoordinator,
        halt_on_failure: bool = False,
    ) -> None:
        self._graph = graph
        self._registry = registry
        self._builder = builder
        self._halt_on_failure = halt_on_failure

    def plan(self, origin_id: str) -> list[str]:
        """カスケードでビルドする候補を順番どおりに返す。起点が常に先頭になる。"""
        return self._graph.topological_order(self._graph.reachable_dependents(origin_id))

    async def cascade(self, origin_id: str) -> CascadeResult:
        """origin_idとその依存先を再ビルドする。

        Raises:
            PlatformNotFoundError: 未登録のIDの場合。
        """
        planned = self.plan(origin_id)
        logger.info("Cascading build from %s: %s", origin_id, ", ".join(planned))

        result = CascadeResult(origin=origin_id)
        blocked: set[str] = set()

        for platform_id in planned:
            platform = self._registry.get(platform_id)
            if platform.status in _UNBUILDABLE_STATUSES:
                logger.warning("Skipping %s in cascade - platform is %s", platform_id, platform.status)
                result.skipped.append(platform_id)
                blocked.add(platform_id)
                continue

            if self._halt_on_failure and blocked.intersection(self._graph.dependencies(platform_id)):
                logger.warning("Skipping %s in cascade - a dependency did not build", platform_id)
                result.skipped.append(platform_id)
                blocked.add(platform_id)
                continue

            build = await self._builder.build_result(platform_id)
            if build.skipped:
                result.skipped.append(platform_id)
                blocked.add(platform_id)
                continue

            result.order.append(platform_id)
            result.results[platform_id] = build.success
            if not build.success:
                blocked.add(platform_id)

        built = [pid for pid in result.order if result.results[pid]]
        logger.info("Cascade build completed for %s (%d/%d succeeded)", origin_id, len(built), len(result.order))
        return result
