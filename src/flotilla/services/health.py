"""プラットフォームの存在確認とヘルスチェック。"""

import logging
from datetime import UTC, datetime

from flotilla.models.platform import HealthReport, Platform, PlatformStatus
from flotilla.registry.loader import PlatformRegistry
from flotilla.services.runner import CommandRunner

logger = logging.getLogger(__name__)


class PlatformHealthProbe:
    """ディレクトリの有無とヘルスチェックコマンドからプラットフォームの状態を判定する。"""

    def __init__(self, registry: PlatformRegistry, runner: CommandRunner) -> None:
        self._registry = registry
        self._runner = runner

    async def _check(self, platform: Platform) -> HealthReport:
        if not platform.path.is_dir():
            return HealthReport(
                platform_id=platform.id,
                healthy=False,
                status="unavailable",
                details="Platform directory not found",
            )

        if not platform.health_check:
            return HealthReport(
                platform_id=platform.id,
                healthy=True,
                status="available",
                details="Platform directory exists",
            )

        result = await self._runner.run(platform.health_check, cwd=platform.path, key=f"{platform.id}:health")
        return HealthReport(
            platform_id=platform.id,
            healthy=result.success,
            status="available" if result.success else "unavailable",
            details="Health check passed" if result.success else (result.stderr.strip() or f"exit {result.exit_code}"),
        )

    async def probe(self, platform_id: str) -> HealthReport:
        """単一プラットフォームを検査し、status / last_check / details を更新する。

        Raises:
            PlatformNotFoundError: 未登録のIDの場合。
        """
        platform = self._registry.get(platform_id)
        try:
            report = await self._check(platform)
        except OSError as e:
            report = HealthReport(platform_id=platform.id, healthy=False, status="error", details=str(e))

        platform.status = report.status
        platform.last_check = datetime.now(UTC)
        platform.details = report.details
        return report

    async def probe_all(self) -> dict[str, PlatformStatus]:
        """全プラットフォームを検査する。1つの失敗が他の検査を止めることはない。"""
        statuses: dict[str, PlatformStatus] = {}
        for platform in self._registry.all():
            report = await self.probe(platform.id)
            statuses[platform.id] = report.status
            if report.status == "available":
                logger.info("%s: %s - available", platform.id, platform.technology)
            elif report.status == "unavailable":
                logger.warning("%s: %s - unavailable (%s)", platform.id, platform.technology, report.details)
            else:
                logger.error("%s: error - %s", platform.id, report.details)

        available = sum(1 for status in statuses.values() if status == "available")
        logger.info("Platform discovery complete: %d/%d platforms available", available, len(statuses))
        return statuses
