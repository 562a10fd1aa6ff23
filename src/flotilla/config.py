"""Flotillaオーケストレーターの設定管理。"""

from pathlib import Path

from pydantic_settings import BaseSettings

_PACKAGE_ROOT = Path(__file__).parent
_REPO_ROOT = _PACKAGE_ROOT.parent.parent


class OrchestratorConfig(BaseSettings):
    """オーケストレーター設定。環境変数から読み込み可能。"""

    model_config = {"env_prefix": "FLOTILLA_"}

    # プラットフォームのpathはworkspace_rootからの相対パスで解決する
    workspace_root: Path = _REPO_ROOT
    config_dir: Path = _REPO_ROOT / "config"
    data_dir: Path = _REPO_ROOT / ".flotilla"
    report_path: Path = _REPO_ROOT / ".flotilla-orchestration-report.json"
    log_level: str = "INFO"

    # 共有ライブラリ
    shared_library_id: str = "mail_box_lib"
    shared_source_dir: str = "src/"

    # ファイル監視
    debounce_seconds: float = 2.0
    change_queue_size: int = 1024

    # 連携チャネル（秒）
    realtime_interval: float = 30.0
    polling_interval: float = 60.0

    # デプロイ（秒）
    deploy_check_interval: float = 300.0
    deploy_stale_after: float = 3600.0
    deploy_environment: str = "staging"

    # カスケードビルドで失敗したプラットフォームの依存先をスキップするか
    halt_cascade_on_failure: bool = False
