"""テスト共通フィクスチャ。"""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from flotilla.config import OrchestratorConfig
from flotilla.models.platform import Platform
from flotilla.registry.loader import PlatformRegistry
from flotilla.registry.processes import ProcessRegistry
from flotilla.services.graph import DependencyGraph
from flotilla.services.runner import CommandRunner

PlatformFactory = Callable[..., Platform]


@pytest.fixture
def config_dir() -> Path:
    """設定ファイルディレクトリ。"""
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """共有ライブラリのリポジトリ。他のプラットフォームは隣のディレクトリに置く。"""
    root = tmp_path / "workspace" / "mail_box_lib"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def platform_factory(workspace: Path) -> PlatformFactory:
    """テスト用Platformを作成する関数。"""

    def _make(
        platform_id: str,
        type: str = "web",
        dependents: list[str] | None = None,
        status: str = "available",
        create_dir: bool = True,
        **kwargs: Any,
    ) -> Platform:
        path = workspace if platform_id == "mail_box_lib" else workspace.parent / platform_id
        if create_dir:
            path.mkdir(parents=True, exist_ok=True)
        return Platform(
            id=platform_id,
            type=type,
            path=path,
            build_command="npm run build",
            test_command="npm test",
            deploy_command="npm run deploy",
            dependents=dependents or [],
            status=status,
            **kwargs,
        )

    return _make


@pytest.fixture
def ecosystem(platform_factory: PlatformFactory) -> list[Platform]:
    """共有ライブラリ・コンポーネント・5つのアプリからなる構成。"""
    return [
        platform_factory(
            "mail_box_lib",
            type="library",
            dependents=["mail_box_components", "web", "mobile", "desktop", "cloud", "extension"],
        ),
        platform_factory("mail_box_components", type="library", dependents=["web", "desktop"]),
        platform_factory("web", type="web"),
        platform_factory("mobile", type="mobile"),
        platform_factory("desktop", type="desktop"),
        platform_factory("cloud", type="cloud"),
        platform_factory("extension", type="extension"),
    ]


@pytest.fixture
def registry(ecosystem: list[Platform], workspace: Path) -> PlatformRegistry:
    """テスト用PlatformRegistry。"""
    return PlatformRegistry.from_platforms(ecosystem, workspace)


@pytest.fixture
def graph(ecosystem: list[Platform]) -> DependencyGraph:
    """テスト用DependencyGraph。"""
    return DependencyGraph.build(ecosystem)


@pytest.fixture
def processes() -> ProcessRegistry:
    return ProcessRegistry()


@pytest.fixture
def runner(processes: ProcessRegistry) -> CommandRunner:
    """テスト用CommandRunner。各テストでrunをパッチして使う。"""
    return CommandRunner(processes)


@pytest.fixture
def orchestrator_config(tmp_path: Path, workspace: Path, config_dir: Path) -> OrchestratorConfig:
    """テスト用OrchestratorConfig。"""
    return OrchestratorConfig(
        workspace_root=workspace,
        config_dir=config_dir,
        data_dir=tmp_path / "flotilla-data",
        report_path=tmp_path / "report.json",
        debounce_seconds=0.05,
    )
