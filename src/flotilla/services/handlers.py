"""シンクロナイザーごとの変更反映処理（code / config / assets / dependencies）。"""

import json
import logging
import shutil
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

from flotilla.models.platform import Platform, PlatformType
from flotilla.models.sync import ChangeEvent, DependencyChange, SynchronizerConfig, SyncResult
from flotilla.registry.loader import PlatformRegistry
from flotilla.services.build import CascadeScheduler
from flotilla.services.runner import CommandRunner
from flotilla.services.sync import SyncHandler

logger = logging.getLogger(__name__)

# 全プラットフォームに伝播する環境変数
COMMON_ENV_KEYS = frozenset({"API_URL", "APP_NAME", "VERSION"})

# プラットフォーム種別ごとに伝播を許可する環境変数のプレフィックス
PLATFORM_ENV_PREFIXES: dict[PlatformType, tuple[str, ...]] = {
    "library": (),
    "web": ("VITE_", "REACT_APP_"),
    "mobile": ("REACT_NATIVE_", "EXPO_"),
    "desktop": ("ELECTRON_",),
    "cloud": ("NODE_ENV", "PORT", "DATABASE_"),
    "extension": ("EXTENSION_",),
}

# 依存関係の変更を伝播するコマンド
_DEPENDENCY_COMMANDS = {
    "add": "npm install {package}@{version}",
    "update": "npm install {package}@{version}",
    "remove": "npm uninstall {package}",
}

_PACKAGE_TARGET_TYPES = frozenset({"web", "desktop"})
_TYPECHECK_TARGET_TYPES = frozenset({"web", "desktop", "extension"})
_ASSET_TARGET_TYPES = frozenset({"web", "desktop", "extension"})

_MANIFEST = "package.json"
_TSCONFIG = "tsconfig.json"


def filter_env_vars_for_platform(env: dict[str, str], platform_type: PlatformType) -> dict[str, str]:
    """プラットフォーム種別に関係する環境変数だけを残す。

    Args:
        env: 読み込んだ環境変数。
        platform_type: 伝播先のプラットフォーム種別。

    Returns:
        共通キーと、種別のプレフィックスに一致するキーのみを含む辞書。
    """
    prefixes = PLATFORM_ENV_PREFIXES[platform_type]
    return {
        key: value
        for key, value in env.items()
        if key in COMMON_ENV_KEYS or (prefixes and key.startswith(prefixes))
    }


def diff_dependencies(previous: dict[str, str], current: dict[str, str]) -> list[DependencyChange]:
    """2つの依存関係表の差分を返す。パッケージ名順に並べる。"""
    changes: list[DependencyChange] = []
    for package in sorted(previous.keys() | current.keys()):
        old = previous.get(package)
        new = current.get(package)
        if old is None and new is not None:
            changes.append(DependencyChange(change_type="add", package=package, version=new))
        elif new is None and old is not None:
            changes.append(DependencyChange(change_type="remove", package=package, previous=old))
        elif old != new:
            changes.append(DependencyChange(change_type="update", package=package, version=new, previous=old))
    return changes


def _normalize_version(version: str) -> str:
    return version.strip().lstrip("^~=v")


def find_dependency_conflicts(library: dict[str, str], platform: dict[str, str]) -> list[str]:
    """共有ライブラリとプラットフォームで指定バージョンが食い違う依存関係を列挙する。"""
    conflicts = []
    for package in sorted(library.keys() & platform.keys()):
        if _normalize_version(library[package]) != _normalize_version(platform[package]):
            conflicts.append(f"{package}: library requires {library[package]}, platform has {platform[package]}")
    return conflicts


def _read_dependencies(manifest: Path) -> dict[str, str]:
    with open(manifest, encoding="utf-8") as f:
        data: Any = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{manifest} is not a JSON object")
    dependencies = data.get("dependencies") or {}
    if not isinstance(dependencies, dict):
        raise ValueError(f'"dependencies" in {manifest} is not an object')
    return {str(name): str(version) for name, version in dependencies.items()}


def _format_env_line(key: str, value: str) -> str:
    if any(ch in value for ch in " #\"'\n\t"):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'{key}="{escaped}"'
    return f"{key}={value}"


def _latest_per_path(changes: Iterable[ChangeEvent]) -> dict[str, ChangeEvent]:
    latest: dict[str, ChangeEvent] = {}
    for change in changes:
        latest[change.path] = change
    return latest


def _record_success(result: SyncResult, platform_id: str) -> None:
    if platform_id not in result.succeeded:
        result.succeeded.append(platform_id)


class SynchronizerHandlers:
    """各シンクロナイザーの変更バッチをターゲットプラットフォームへ反映する。

    ターゲット単位のI/O失敗はSyncResult.failedに記録し、残りのターゲットへの反映は続ける。
    """

    def __init__(
        self,
        registry: PlatformRegistry,
        cascade: CascadeScheduler,
        runner: CommandRunner,
        synchronizers: list[SynchronizerConfig],
        workspace_root: Path,
        shared_library_id: str,
        shared_source_dir: str = "src/",
    ) -> None:
        self._registry = registry
        self._cascade = cascade
        self._runner = runner
        self._targets = {s.id: list(s.targets) for s in synchronizers}
        self._root = workspace_root.resolve()
        self._shared_library_id = shared_library_id
        self._shared_source_dir = shared_source_dir.rstrip("/") + "/"
        self._manifest_snapshot: dict[str, str] | None = None

    def as_mapping(self) -> dict[str, SyncHandler]:
        """シンクロナイザーIDからハンドラーへの対応表を返す。"""
        return {
            "code": self.synchronize_code,
            "config": self.synchronize_config,
            "assets": self.synchronize_assets,
            "dependencies": self.synchronize_dependencies,
        }

    def remember_manifest(self) -> None:
        """共有ライブラリの現在のpackage.jsonを差分の基準として記録する。"""
        manifest = self._root / _MANIFEST
        try:
            self._manifest_snapshot = _read_dependencies(manifest)
        except (OSError, ValueError) as e:
            logger.debug("No baseline manifest at %s: %s", manifest, e)
            self._manifest_snapshot = None

    def _available_targets(self, synchronizer_id: str, types: Iterable[str] | None = None) -> list[Platform]:
        allowed = set(types) if types is not None else None
        platforms = []
        for platform_id in self._targets.get(synchronizer_id, []):
            platform = self._registry.get(platform_id)
            if not platform.is_available:
                continue
            if allowed is not None and platform.type not in allowed:
                continue
            platforms.append(platform)
        return platforms

    async def synchronize_code(self, changes: list[ChangeEvent]) -> SyncResult:
        """ソースコードの変更を反映する。

        共有ソースツリー配下の変更はバッチごとに1回だけカスケードビルドを起動する。
        """
        latest = _latest_per_path(changes)
        result = SyncResult(synchronizer_id="code", paths=list(latest))

        if any(path.startswith(self._shared_source_dir) for path in latest):
            cascade = await self._cascade.cascade(self._shared_library_id)
            result.cascaded = list(cascade.order)
            for platform_id, success in cascade.results.items():
                if success:
                    _record_success(result, platform_id)
                else:
                    result.failed[platform_id] = "Build failed"
            result.warnings.extend(f"{pid}: skipped in cascade" for pid in cascade.skipped)

        for path, change in latest.items():
            if path == _MANIFEST and change.kind != "delete":
                await self._sync_package_changes(result)
            elif path == _TSCONFIG and change.kind != "delete":
                await self._sync_typescript_config(result)

        return result

    async def _sync_package_changes(self, result: SyncResult) -> None:
        manifest = self._root / _MANIFEST
        try:
            current = _read_dependencies(manifest)
        except (OSError, ValueError) as e:
            logger.error("Failed to analyze package changes in %s: %s", manifest, e)
            result.warnings.append(f"{_MANIFEST}: {e}")
            return

        previous = self._manifest_snapshot
        self._manifest_snapshot = current
        if previous is None:
            logger.info("Recorded baseline dependencies (%d packages)", len(current))
            return

        changes = diff_dependencies(previous, current)
        if not changes:
            return
        logger.info("Propagating %d dependency change(s)", len(changes))

        for platform in self._available_targets("code", _PACKAGE_TARGET_TYPES):
            for change in changes:
                command = _DEPENDENCY_COMMANDS[change.change_type].format(
                    package=change.package, version=change.version
                )
                outcome = await self._runner.run(command, cwd=platform.path, key=f"{platform.id}:deps")
                if not outcome.success:
                    result.failed[platform.id] = f"{command} exited with {outcome.exit_code}"
                    break
            else:
                _record_success(result, platform.id)

    async def _sync_typescript_config(self, result: SyncResult) -> None:
        for platform in self._available_targets("code", _TYPECHECK_TARGET_TYPES):
            if not platform.typecheck_command or not (platform.path / _TSCONFIG).is_file():
                continue
            outcome = await self._runner.run(
                platform.typecheck_command, cwd=platform.path, key=f"{platform.id}:typecheck"
            )
            if outcome.success:
                _record_success(result, platform.id)
            else:
                result.failed[platform.id] = "Type check failed"

    async def synchronize_config(self, changes: list[ChangeEvent]) -> SyncResult:
        """環境変数ファイルと設定ディレクトリの変更を反映する。"""
        latest = _latest_per_path(changes)
        result = SyncResult(synchronizer_id="config", paths=list(latest))

        for path, change in latest.items():
            if Path(path).name.startswith(".env") and "/" not in path:
                self._sync_environment(change, result)
            elif path.startswith(("config/", "deployment/")):
                self._copy_to_targets(change, self._available_targets("config"), result)
            else:
                logger.debug("Config synchronizer ignoring %s", path)
        return result

    def _sync_environment(self, change: ChangeEvent, result: SyncResult) -> None:
        if change.kind == "delete":
            result.warnings.append(f"{change.path} was deleted, platform files left unchanged")
            return

        source = self._root / change.path
        values = {key: value for key, value in dotenv_values(source).items() if value is not None}

        for platform in self._available_targets("config"):
            target = platform.path / change.path
            if target.resolve() == source.resolve():
                continue
            filtered = filter_env_vars_for_platform(values, platform.type)
            try:
                existing = dotenv_values(target) if target.is_file() else {}
                merged = {key: value for key, value in existing.items() if value is not None}
                merged.update(filtered)
                target.parent.mkdir(parents=True, exist_ok=True)
                lines = [_format_env_line(key, value) for key, value in merged.items()]
                target.write_text("\n".join(lines) + "\n", encoding="utf-8")
            except OSError as e:
                logger.error("Failed to update %s for %s: %s", change.path, platform.id, e)
                result.failed[platform.id] = str(e)
                continue
            logger.info("%s: %d environment variable(s) synchronized", platform.id, len(filtered))
            _record_success(result, platform.id)

    async def synchronize_assets(self, changes: list[ChangeEvent]) -> SyncResult:
        """assets / public / locales の変更をコピーまたは削除する。"""
        latest = _latest_per_path(changes)
        result = SyncResult(synchronizer_id="assets", paths=list(latest))

        for path, change in latest.items():
            if path.startswith(("assets/", "public/")):
                targets = self._available_targets("assets", _ASSET_TARGET_TYPES)
            elif path.startswith("locales/"):
                targets = self._available_targets("assets")
            else:
                continue
            self._copy_to_targets(change, targets, result)
        return result

    def _copy_to_targets(self, change: ChangeEvent, platforms: list[Platform], result: SyncResult) -> None:
        source = self._root / change.path
        for platform in platforms:
            target = platform.path / change.path
            if target.resolve() == source.resolve():
                continue
            try:
                if change.kind == "delete":
                    target.unlink(missing_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, target)
            except OSError as e:
                logger.error("Failed to sync %s to %s: %s", change.path, platform.id, e)
                result.failed[platform.id] = str(e)
                continue
            logger.debug("%s: %s %s", platform.id, change.kind, change.path)
            _record_success(result, platform.id)

    async def synchronize_dependencies(self, changes: list[ChangeEvent]) -> SyncResult:
        """共有ライブラリとターゲットの依存バージョンを比較し、食い違いを警告する。"""
        latest = _latest_per_path(changes)
        result = SyncResult(synchronizer_id="dependencies", paths=list(latest))
        if _MANIFEST not in latest or latest[_MANIFEST].kind == "delete":
            return result

        try:
            library = _read_dependencies(self._root / _MANIFEST)
        except (OSError, ValueError) as e:
            logger.error("Failed to read shared library manifest: %s", e)
            result.warnings.append(f"{_MANIFEST}: {e}")
            return result

        for platform in self._available_targets("dependencies"):
            manifest = platform.path / _MANIFEST
            if platform.id == self._shared_library_id or not manifest.is_file():
                continue
            try:
                conflicts = find_dependency_conflicts(library, _read_dependencies(manifest))
            except (OSError, ValueError) as e:
                result.failed[platform.id] = str(e)
                continue
            for conflict in conflicts:
                logger.warning("Dependency conflict in %s: %s", platform.id, conflict)
                result.warnings.append(f"{platform.id}: {conflict}")
            _record_success(result, platform.id)
        return result
