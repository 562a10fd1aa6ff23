"""YAML定義からプラットフォーム・シンクロナイザー・連携チャネルを読み込む。"""

from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from flotilla.models.errors import ConfigurationError, MissingCommandError, PlatformNotFoundError
from flotilla.models.integration import ChannelConfig
from flotilla.models.platform import Platform
from flotilla.models.sync import SynchronizerConfig

# 空文字を許容しないコマンド
_REQUIRED_COMMANDS = ("build_command", "test_command", "deploy_command")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _load_entries(config_file: Path, key: str) -> list[dict[str, Any]]:
    """YAMLファイルからトップレベルキー配下のリストを取り出す。"""
    try:
        with open(config_file, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_file}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_file}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get(key), list):
        raise ConfigurationError(f"{config_file} must define a '{key}' list")
    return data[key]


def _validate_entries(model: type[ModelT], entries: list[dict[str, Any]], source: Path) -> list[ModelT]:
    items: list[ModelT] = []
    seen: set[str] = set()
    for entry in entries:
        try:
            item = model.model_validate(entry)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid entry in {source}: {e}") from e
        item_id = str(entry["id"])
        if item_id in seen:
            raise ConfigurationError(f"Duplicate id in {source}: {item_id}")
        seen.add(item_id)
        items.append(item)
    return items


class PlatformRegistry:
    """プラットフォームの静的な宣言テーブル。

    platforms.yaml の path は workspace_root からの相対パスとして解決する。
    """

    def __init__(self, config_dir: Path, workspace_root: Path) -> None:
        self._config_file = config_dir / "platforms.yaml"
        self._workspace_root = workspace_root
        self._platforms: dict[str, Platform] | None = None

    @classmethod
    def from_platforms(cls, platforms: list[Platform], workspace_root: Path) -> "PlatformRegistry":
        """読み込み済みのプラットフォーム一覧からレジストリを作成する。"""
        registry = cls(config_dir=workspace_root, workspace_root=workspace_root)
        registry._platforms = {p.id: p for p in platforms}
        return registry

    def load(self) -> dict[str, Platform]:
        """platforms.yaml を読み込み、検証済みのプラットフォームを返す。

        Raises:
            ConfigurationError: ファイルが無い、形式が不正、IDが重複している場合。
            MissingCommandError: 必須コマンドが空の場合。
        """
        if self._platforms is not None:
            return self._platforms

        entries = _load_entries(self._config_file, "platforms")
        platforms = _validate_entries(Platform, entries, self._config_file)
        for platform in platforms:
            for command in _REQUIRED_COMMANDS:
                if not getattr(platform, command).strip():
                    raise MissingCommandError(platform.id, command)
            if not platform.path.is_absolute():
                platform.path = (self._workspace_root / platform.path).resolve()

        self._platforms = {p.id: p for p in platforms}
        return self._platforms

    def get(self, platform_id: str) -> Platform:
        """IDでプラットフォームを取得する。

        Raises:
            PlatformNotFoundError: 未登録のIDの場合。
        """
        platform = self.load().get(platform_id)
        if platform is None:
            raise PlatformNotFoundError(platform_id)
        return platform

    def all(self) -> list[Platform]:
        return list(self.load().values())

    def ids(self) -> list[str]:
        return list(self.load())

    def available(self) -> list[Platform]:
        """直近のヘルスチェックでavailableと判定されたプラットフォーム。"""
        return [p for p in self.load().values() if p.is_available]


def load_synchronizers(config_dir: Path) -> list[SynchronizerConfig]:
    """synchronizers.yaml を読み込む。"""
    config_file = config_dir / "synchronizers.yaml"
    return _validate_entries(SynchronizerConfig, _load_entries(config_file, "synchronizers"), config_file)


def load_channels(config_dir: Path) -> list[ChannelConfig]:
    """integrations.yaml を読み込む。"""
    config_file = config_dir / "integrations.yaml"
    return _validate_entries(ChannelConfig, _load_entries(config_file, "integrations"), config_file)
