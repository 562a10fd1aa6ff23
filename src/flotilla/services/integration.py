"""連携チャネルの定期処理とチャネルハンドラー。"""

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from flotilla.models.errors import ChannelNotFoundError
from flotilla.models.integration import ChannelConfig, HandlerResult, IntegrationEvent, IntegrationStatus
from flotilla.models.platform import Platform
from flotilla.registry.loader import PlatformRegistry
from flotilla.services.graph import DependencyGraph

logger = logging.getLogger(__name__)

ChannelHandler = Callable[[str, dict[str, Any]], Awaitable[HandlerResult]]

# 共有設定から除外するキーに含まれる語（小文字で比較）
SENSITIVE_KEY_MARKERS = ("apikey", "api_key", "secret", "token", "password")

_ASSET_NOTIFY_TYPES = frozenset({"web", "mobile", "desktop"})
_ANALYTICS_OUTBOX = "analytics"


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_KEY_MARKERS)


def resolve_conflicts(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """同一idのレコードのうち、timestampが最も新しいものを残す（last-write-wins）。

    同じtimestampの場合は後に現れたレコードを採用する。idの無いレコードはそのまま残す。
    """
    winners: dict[Any, dict[str, Any]] = {}
    anonymous: list[dict[str, Any]] = []
    for record in records:
        record_id = record.get("id")
        if record_id is None:
            anonymous.append(record)
            continue
        current = winners.get(record_id)
        if current is None or str(record.get("timestamp", "")) >= str(current.get("timestamp", "")):
            winners[record_id] = record
    return [*winners.values(), *anonymous]


class EventSource(Protocol):
    async def poll_once(self) -> IntegrationEvent | None: ...


class StatusProvider(Protocol):
    async def status(self, platform: Platform) -> IntegrationStatus: ...


class InboxEventSource:
    """受信ディレクトリに置かれたJSONファイルを古い順にイベントとして取り出す。

    取り出したファイルは削除する。形式が不正なファイルも削除し、警告を出す。
    """

    def __init__(self, inbox_dir: Path) -> None:
        self._inbox_dir = inbox_dir

    @property
    def inbox_dir(self) -> Path:
        return self._inbox_dir

    async def poll_once(self) -> IntegrationEvent | None:
        if not self._inbox_dir.is_dir():
            return None

        files = sorted(self._inbox_dir.glob("*.json"), key=lambda p: (p.stat().st_mtime, p.name))
        for event_file in files:
            try:
                raw = event_file.read_text(encoding="utf-8")
                event_file.unlink()
            except OSError as e:
                logger.warning("Cannot consume %s: %s", event_file, e)
                continue
            try:
                return IntegrationEvent.model_validate_json(raw)
            except ValidationError as e:
                logger.warning("Discarding malformed event %s: %s", event_file.name, e)
        return None


class FileStatusProvider:
    """プラットフォームの .flotilla/sync-status.json から同期状態を読む。"""

    async def status(self, platform: Platform) -> IntegrationStatus:
        status_file = platform.path / ".flotilla" / "sync-status.json"
        if not status_file.is_file():
            return IntegrationStatus(platform=platform.id)
        try:
            data = json.loads(status_file.read_text(encoding="utf-8"))
            data["platform"] = platform.id
            return IntegrationStatus.model_validate(data)
        except (OSError, ValueError) as e:
            return IntegrationStatus(platform=platform.id, errors=[f"Unreadable sync status: {e}"])


class PlatformNotifier:
    """プラットフォームごとのJSON Lines送信箱に通知を追記する。"""

    def __init__(self, outbox_dir: Path) -> None:
        self._outbox_dir = outbox_dir

    def outbox_path(self, recipient: str) -> Path:
        return self._outbox_dir / f"{recipient}.jsonl"

    def notify(self, recipient: str, channel: str, action: str, data: dict[str, Any]) -> None:
        """通知を1行追記する。

        Raises:
            OSError: 送信箱に書き込めない場合。
        """
        self._outbox_dir.mkdir(parents=True, exist_ok=True)
        line = json.dumps(
            {
                "channel": channel,
                "action": action,
                "data": data,
                "sentAt": datetime.now(UTC).isoformat(),
            },
            ensure_ascii=False,
            default=str,
        )
        with open(self.outbox_path(recipient), "a", encoding="utf-8") as f:
            f.write(line + "\n")


class IntegrationChannelManager:
    """連携チャネルのリアルタイム処理と状態ポーリングを管理する。

    同一チャネルの処理が重なった場合、後から来た周期は実行せずに飛ばす。
    配信済みのイベントIDは一定数記憶し、再配信されたイベントは破棄する。
    """

    def __init__(
        self,
        registry: PlatformRegistry,
        graph: DependencyGraph,
        channels: list[ChannelConfig],
        notifier: PlatformNotifier,
        sources: dict[str, EventSource],
        status_provider: StatusProvider,
        shared_library_id: str,
        realtime_interval: float = 30.0,
        polling_interval: float = 60.0,
        seen_capacity: int = 1024,
    ) -> None:
        self._registry = registry
        self._graph = graph
        self._channels = {c.id: c for c in channels}
        self._notifier = notifier
        self._sources = sources
        self._status_provider = status_provider
        self._shared_library_id = shared_library_id
        self._realtime_interval = realtime_interval
        self._polling_interval = polling_interval
        self._seen_capacity = seen_capacity
        self._seen: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {c.id: asyncio.Lock() for c in channels}
        self._tasks: list[asyncio.Task[None]] = []
        self._handlers: dict[str, ChannelHandler] = {
            "data-sync": self.handle_data_sync,
            "auth-sync": self.handle_auth_sync,
            "config-sync": self.handle_config_sync,
            "asset-sync": self.handle_asset_sync,
            "analytics-sync": self.handle_analytics_sync,
        }

    @property
    def channels(self) -> list[ChannelConfig]:
        return list(self._channels.values())

    def _channel(self, channel_id: str) -> ChannelConfig:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise ChannelNotFoundError(channel_id)
        return channel

    def _bound_platforms(self, channel_id: str) -> list[Platform]:
        platforms = (self._registry.get(pid) for pid in self._channel(channel_id).platforms)
        return [p for p in platforms if p.is_available]

    def start(self) -> None:
        """チャネルごとの定期タスクを開始する。realtimeのチャネルはイベント処理、それ以外は状態ポーリングとイベント処理。"""
        for channel in self._channels.values():
            if channel.realtime:
                coro = self._run_periodic(self._realtime_interval, self.tick_realtime, channel.id)
            else:
                coro = self._run_periodic(self._polling_interval, self.tick_polling, channel.id)
            self._tasks.append(asyncio.create_task(coro, name=f"integration-{channel.id}"))
            logger.info("%s integration active (%s)", channel.id, channel.type)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _run_periodic(
        self, interval: float, tick: Callable[[str], Awaitable[Any]], channel_id: str
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            await tick(channel_id)

    async def tick_realtime(self, channel_id: str) -> HandlerResult | None:
        """イベントソースを1回確認し、イベントがあればハンドラーへ渡す。"""
        lock = self._locks[self._channel(channel_id).id]
        if lock.locked():
            logger.debug("Skipping %s tick, previous tick still running", channel_id)
            return None

        async with lock:
            return await self._consume_event(channel_id)

    async def tick_polling(self, channel_id: str) -> list[str]:
        """結び付いたプラットフォームの同期状態を確認し、警告を返す。

        状態確認の後、受信箱に届いているイベントも1件処理する。
        """
        lock = self._locks[self._channel(channel_id).id]
        if lock.locked():
            logger.debug("Skipping %s poll, previous poll still running", channel_id)
            return []

        warnings: list[str] = []
        async with lock:
            for platform in self._bound_platforms(channel_id):
                try:
                    status = await self._status_provider.status(platform)
                except Exception as e:
                    logger.exception("Status check failed for %s on %s", platform.id, channel_id)
                    warnings.append(f"{platform.id}: {e}")
                    continue
                for error in status.errors:
                    logger.warning("%s sync issue on %s: %s", channel_id, platform.id, error)
                    warnings.append(f"{platform.id}: {error}")
                if status.pending_actions:
                    logger.info("%s has %d pending action(s) on %s", platform.id, status.pending_actions, channel_id)
            await self._consume_event(channel_id)
        return warnings

    async def _consume_event(self, channel_id: str) -> HandlerResult | None:
        source = self._sources.get(channel_id)
        if source is None:
            return None
        try:
            event = await source.poll_once()
        except Exception:
            logger.exception("Event source for %s failed", channel_id)
            return None
        if event is None:
            return None
        return await self.deliver(channel_id, event)

    async def deliver(self, channel_id: str, event: IntegrationEvent) -> HandlerResult | None:
        """イベントをチャネルのハンドラーへ渡す。配信済みのイベントはNoneを返して破棄する。

        Raises:
            ChannelNotFoundError: 未登録のチャネルIDの場合。
        """
        self._channel(channel_id)
        seen_key = (channel_id, event.id)
        if seen_key in self._seen:
            logger.info("Dropping duplicate event %s on %s", event.id, channel_id)
            return None
        self._seen[seen_key] = None
        while len(self._seen) > self._seen_capacity:
            self._seen.popitem(last=False)

        try:
            result = await self._handlers[channel_id](event.action, dict(event.data))
        except Exception as e:
            logger.exception("Integration handler failed for %s (%s)", channel_id, event.action)
            return HandlerResult(channel=channel_id, action=event.action, success=False, message=str(e))

        logger.info("%s: %s delivered to %d platform(s)", channel_id, event.action, len(result.notified))
        return result

    def _notify_all(
        self, channel_id: str, action: str, platforms: list[Platform], data: dict[str, Any]
    ) -> HandlerResult:
        result = HandlerResult(channel=channel_id, action=action)
        failures = []
        for platform in platforms:
            try:
                self._notifier.notify(platform.id, channel_id, action, data)
            except OSError as e:
                logger.error("Failed to notify %s on %s: %s", platform.id, channel_id, e)
                failures.append(f"{platform.id}: {e}")
                continue
            result.notified.append(platform.id)
        if failures:
            result.success = False
            result.message = "; ".join(failures)
        return result

    async def handle_data_sync(self, action: str, data: dict[str, Any]) -> HandlerResult:
        bound = self._bound_platforms("data-sync")
        if action == "sync-request":
            consumers = set(self._graph.reachable_dependents(self._shared_library_id)) - {self._shared_library_id}
            return self._notify_all("data-sync", action, [p for p in bound if p.id in consumers], data)
        if action == "conflict-resolution":
            resolved = resolve_conflicts(list(data.get("records", [])))
            return self._notify_all("data-sync", action, bound, {**data, "records": resolved})
        return HandlerResult(channel="data-sync", action=action, success=False, message=f"Unsupported action: {action}")

    async def handle_auth_sync(self, action: str, data: dict[str, Any]) -> HandlerResult:
        return self._notify_all("auth-sync", action, self._bound_platforms("auth-sync"), data)

    async def handle_config_sync(self, action: str, data: dict[str, Any]) -> HandlerResult:
        """共有設定を各プラットフォームへ書き出す。機密キーは送らない。"""
        shared = {key: value for key, value in data.items() if not is_sensitive_key(key)}
        withheld = sorted(set(data) - set(shared))
        if withheld:
            logger.warning("Withholding sensitive config keys: %s", ", ".join(withheld))

        result = HandlerResult(channel="config-sync", action=action)
        failures = []
        for platform in self._bound_platforms("config-sync"):
            config_file = platform.path / ".flotilla" / "shared-config.json"
            try:
                current: dict[str, Any] = {}
                if config_file.is_file():
                    current = json.loads(config_file.read_text(encoding="utf-8"))
                current.update(shared)
                config_file.parent.mkdir(parents=True, exist_ok=True)
                config_file.write_text(json.dumps(current, indent=2, ensure_ascii=False), encoding="utf-8")
                self._notifier.notify(platform.id, "config-sync", action, {"keys": sorted(shared)})
            except (OSError, ValueError) as e:
                logger.error("Failed to write shared config for %s: %s", platform.id, e)
                failures.append(f"{platform.id}: {e}")
                continue
            result.notified.append(platform.id)

        if failures:
            result.success = False
            result.message = "; ".join(failures)
        return result

    async def handle_asset_sync(self, action: str, data: dict[str, Any]) -> HandlerResult:
        platforms = [p for p in self._bound_platforms("asset-sync") if p.type in _ASSET_NOTIFY_TYPES]
        return self._notify_all("asset-sync", action, platforms, data)

    async def handle_analytics_sync(self, action: str, data: dict[str, Any]) -> HandlerResult:
        aggregate = {
            "event": action,
            "data": data,
            "platforms": [p.id for p in self._bound_platforms("analytics-sync")],
            "aggregatedAt": datetime.now(UTC).isoformat(),
        }
        result = HandlerResult(channel="analytics-sync", action=action)
        try:
            self._notifier.notify(_ANALYTICS_OUTBOX, "analytics-sync", action, aggregate)
        except OSError as e:
            logger.error("Failed to forward analytics event: %s", e)
            result.success = False
            result.message = str(e)
            return result
        result.notified.append(_ANALYTICS_OUTBOX)
        return result
