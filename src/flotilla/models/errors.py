"""Flotillaのカスタム例外クラス。"""


class FlotillaError(Exception):
    """Flotillaの基底例外クラス。"""


class ConfigurationError(FlotillaError):
    """起動時に検出される設定エラー。オーケストレーターは起動を中止する。"""


class UnknownDependentError(ConfigurationError):
    """dependentsにレジストリ未登録のプラットフォームが指定された場合の例外。"""

    def __init__(self, platform_id: str, dependent_id: str) -> None:
        super().__init__(f"Platform {platform_id} declares unknown dependent: {dependent_id}")
        self.platform_id = platform_id
        self.dependent_id = dependent_id


class SelfDependencyError(ConfigurationError):
    """プラットフォームが自分自身をdependentに指定した場合の例外。"""

    def __init__(self, platform_id: str) -> None:
        super().__init__(f"Platform cannot depend on itself: {platform_id}")
        self.platform_id = platform_id


class CyclicDependencyError(ConfigurationError):
    """依存グラフに循環がある場合の例外。"""

    def __init__(self, platform_ids: list[str]) -> None:
        super().__init__(f"Circular dependency detected among: {', '.join(sorted(platform_ids))}")
        self.platform_ids = platform_ids


class MissingCommandError(ConfigurationError):
    """必須コマンドが未設定の場合の例外。"""

    def __init__(self, platform_id: str, command: str) -> None:
        super().__init__(f"Platform {platform_id} is missing required command: {command}")
        self.platform_id = platform_id
        self.command = command


class PlatformNotFoundError(FlotillaError):
    """指定されたプラットフォームが見つからない場合の例外。"""

    def __init__(self, platform_id: str) -> None:
        super().__init__(f"Platform not found: {platform_id}")
        self.platform_id = platform_id


class SynchronizerNotFoundError(FlotillaError):
    """指定されたシンクロナイザーが見つからない場合の例外。"""

    def __init__(self, synchronizer_id: str) -> None:
        super().__init__(f"Synchronizer not found: {synchronizer_id}")
        self.synchronizer_id = synchronizer_id


class ChannelNotFoundError(FlotillaError):
    """指定された連携チャネルが見つからない場合の例外。"""

    def __init__(self, channel_id: str) -> None:
        super().__init__(f"Integration channel not found: {channel_id}")
        self.channel_id = channel_id


class DeploymentInProgressError(FlotillaError):
    """同一プラットフォームでデプロイが実行中の場合の例外。"""

    def __init__(self, platform_id: str) -> None:
        super().__init__(f"Deployment already in progress for platform: {platform_id}")
        self.platform_id = platform_id


class StorageError(FlotillaError):
    """ストレージ操作のエラー。"""
