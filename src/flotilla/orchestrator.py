"""オーケストレーターの組み立てと起動・停止。"""

import logging
from dataclasses import dataclass
from pathlib import Path

from flotilla.config import OrchestratorConfig
from flotilla.models.errors import ConfigurationError
from flotilla.models.integration import ChannelConfig
from flotilla.models.report import (
    IntegrationSummary,
    OrchestrationReport,
    PlatformSummary,
    ReportStatistics,
    SynchronizerSummary,
)
from flotilla.models.sync import SynchronizerConfig
from flotilla.registry.loader import PlatformRegistry, load_channels, load_synchronizers
from flotilla.registry.processes import ProcessRegistry
from flotilla.registry.watchers import WatcherRegistry
from flotilla.services.build import BuildCoordinator, CascadeScheduler
from flotilla.services.deploy import DeploymentPipelineRunner
from flotilla.services.graph import DependencyGraph
from flotilla.services.handlers import SynchronizerHandlers
from flotilla.services.health import PlatformHealthProbe
from flotilla.services.integration import (
    EventSource,
    FileStatusProvider,
    InboxEventSource,
    IntegrationChannelManager,
    PlatformNotifier,
)
from flotilla.services.runner import CommandRunner
from flotilla.services.sync import FileWatchSynchronizer
from flotilla.storage.report import ReportStore

logger = logging.getLogger(__name__)


def _check_references(
    registry: PlatformRegistry,
    synchronizers: list[SynchronizerConfig],
    channels: list[ChannelConfig],
) -> None:
    known = set(registry.ids())
    for synchronizer in synchronizers:
        unknown = [pid for pid in synchronizer.targets if pid not in known]
        if unknown:
            raise ConfigurationError(f"Synchronizer {synchronizer.id} targets unknown platforms: {', '.join(unknown)}")
    for channel in channels:
        unknown = [pid for pid in channel.platforms if pid not in known]
        if unknown:
            raise ConfigurationError(f"Integration {channel.id} binds unknown platforms: {', '.join(unknown)}")


@dataclass
class Orchestrator:
    """組み立て済みのコンポーネント一式。start() / stop() でライフサイクルを管理する。"""

    config: OrchestratorConfig
    registry: PlatformRegistry
    graph: DependencyGraph
    processes: ProcessRegistry
    watchers: WatcherRegistry
    runner: CommandRunner
    health: PlatformHealthProbe
    builder: BuildCoordinator
    cascade: CascadeScheduler
    handlers: SynchronizerHandlers
    sync: FileWatchSynchronizer
    integrations: IntegrationChannelManager
    deployer: DeploymentPipelineRunner
    reports: ReportStore
    active: bool = False

    async def start(self, watch: bool = True) -> None:
        """プラットフォームを検査し、監視・連携・デプロイの各ループを開始する。"""
        logger.info("Starting orchestration for %d platforms", len(self.registry.ids()))
        await self.health.probe_all()
        self.handlers.remember_manifest()
        await self.sync.start(watch=watch)
        self.integrations.start()
        self.deployer.start()
        self.active = True
        logger.info("Cross-platform orchestration is active")

    async def stop(self) -> Path:
        """全ループと子プロセスを止め、停止時レポートを書き出す。

        Returns:
            レポートファイルのパス。
        """
        self.active = False
        await self.sync.stop()
        await self.watchers.stop_all()
        terminated = self.processes.terminate_all()
        if terminated:
            logger.info("Terminated %d child process(es): %s", len(terminated), ", ".join(terminated))
        await self.integrations.stop()
        await self.deployer.stop()
        logger.info("Orchestration stopped")
        return await self.save_report()

    def generate_report(self) -> OrchestrationReport:
        """現在の状態からレポートを作成する。"""
        platforms = self.registry.all()
        channels = self.integrations.channels
        synchronizers = self.sync.synchronizers
        return OrchestrationReport(
            orchestration_status=self.active,
            platforms={
                p.id: PlatformSummary(
                    type=p.type,
                    technology=p.technology,
                    status=p.status,
                    last_check=p.last_check,
                    last_sync=p.last_sync,
                )
                for p in platforms
            },
            integrations={
                c.id: IntegrationSummary(type=c.type, platforms=c.platforms, protocol=c.protocol, realtime=c.realtime)
                for c in channels
            },
            synchronizers={
                s.id: SynchronizerSummary(name=s.name, targets=s.targets, strategy=s.strategy, watch_paths=s.watch_paths)
                for s in synchronizers
            },
            statistics=ReportStatistics(
                available_platforms=sum(1 for p in platforms if p.is_available),
                total_platforms=len(platforms),
                active_integrations=len(channels),
                active_synchronizers=len(synchronizers),
            ),
        )

    async def save_report(self) -> Path:
        path = await self.reports.save_report(self.generate_report())
        logger.info("Orchestration report saved to %s", path)
        return path


def create_orchestrator(config: OrchestratorConfig | None = None) -> Orchestrator:
    """設定ファイルを読み込み、オーケストレーターを組み立てる。

    Args:
        config: オーケストレーター設定。Noneの場合はデフォルト設定を使用。

    Returns:
        未起動のOrchestrator。

    Raises:
        ConfigurationError: 設定ファイルの不備や依存グラフの循環がある場合。
    """
    if config is None:
        config = OrchestratorConfig()

    # 宣言の読み込みと検証
    registry = PlatformRegistry(config_dir=config.config_dir, workspace_root=config.workspace_root)
    registry.load()
    graph = DependencyGraph.build(registry.all())
    if config.shared_library_id not in graph:
        raise ConfigurationError(f"Shared library platform is not declared: {config.shared_library_id}")
    synchronizers = load_synchronizers(config.config_dir)
    channels = load_channels(config.config_dir)
    _check_references(registry, synchronizers, channels)

    # 実行基盤
    processes = ProcessRegistry()
    watchers = WatcherRegistry()
    runner = CommandRunner(processes)

    # ビルド
    health = PlatformHealthProbe(registry, runner)
    builder = BuildCoordinator(registry, runner)
    cascade = CascadeScheduler(graph, registry, builder, halt_on_failure=config.halt_cascade_on_failure)

    # ファイル同期
    handlers = SynchronizerHandlers(
        registry=registry,
        cascade=cascade,
        runner=runner,
        synchronizers=synchronizers,
        workspace_root=config.workspace_root,
        shared_library_id=config.shared_library_id,
        shared_source_dir=config.shared_source_dir,
    )
    sync = FileWatchSynchronizer(
        root=config.workspace_root,
        synchronizers=synchronizers,
        handlers=handlers.as_mapping(),
        watchers=watchers,
        debounce_seconds=config.debounce_seconds,
        queue_size=config.change_queue_size,
    )

    # 連携チャネル
    sources: dict[str, EventSource] = {
        c.id: InboxEventSource(config.data_dir / "inbox" / c.id) for c in channels
    }
    integrations = IntegrationChannelManager(
        registry=registry,
        graph=graph,
        channels=channels,
        notifier=PlatformNotifier(config.data_dir / "outbox"),
        sources=sources,
        status_provider=FileStatusProvider(),
        shared_library_id=config.shared_library_id,
        realtime_interval=config.realtime_interval,
        polling_interval=config.polling_interval,
    )

    # デプロイ
    deployer = DeploymentPipelineRunner(
        registry=registry,
        runner=runner,
        builder=builder,
        data_dir=config.data_dir,
        environment=config.deploy_environment,
        stale_after=config.deploy_stale_after,
        check_interval=config.deploy_check_interval,
    )

    return Orchestrator(
        config=config,
        registry=registry,
        graph=graph,
        processes=processes,
        watchers=watchers,
        runner=runner,
        health=health,
        builder=builder,
        cascade=cascade,
        handlers=handlers,
        sync=sync,
        integrations=integrations,
        deployer=deployer,
        reports=ReportStore(config.report_path),
    )
