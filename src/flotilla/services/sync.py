"""ファイル変更の監視とデバウンス付きのシンクロナイザー呼び出し。"""

import asyncio
import fnmatch
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from watchfiles import Change, DefaultFilter, awatch

from flotilla.models.errors import SynchronizerNotFoundError
from flotilla.models.sync import ChangeEvent, ChangeKind, SynchronizerConfig, SyncResult
from flotilla.registry.watchers import WatcherHandle, WatcherRegistry

logger = logging.getLogger(__name__)

SyncHandler = Callable[[list[ChangeEvent]], Awaitable[SyncResult]]

_CHANGE_KINDS: dict[Change, ChangeKind] = {
    Change.added: "add",
    Change.modified: "modify",
    Change.deleted: "delete",
}


def matches_watch_path(relative_path: str, pattern: str) -> bool:
    """ワークスペース相対パスが監視パターンに一致するか判定する。

    "**/" はゼロ個以上のディレクトリに一致する（"src/**/*.ts" は "src/a.ts" にも一致）。
    """
    if fnmatch.fnmatchcase(relative_path, pattern):
        return True
    return "**/" in pattern and fnmatch.fnmatchcase(relative_path, pattern.replace("**/", ""))


class FileWatchSynchronizer:
    """監視パスの変更をシンクロナイザーのハンドラーへ届ける。

    変更イベントは有界キューに入り、単一のディスパッチループが
    (シンクロナイザー, パス) ごとのデバウンスタイマーを張り直す。
    静穏期間が経過すると、そのキーに溜まったイベントをまとめて1回ハンドラーに渡す。
    """

    def __init__(
        self,
        root: Path,
        synchronizers: list[SynchronizerConfig],
        handlers: dict[str, SyncHandler],
        watchers: WatcherRegistry,
        debounce_seconds: float = 2.0,
        queue_size: int = 1024,
    ) -> None:
        self._root = root.resolve()
        self._synchronizers = {s.id: s for s in synchronizers}
        self._handlers = handlers
        self._watchers = watchers
        self._debounce_seconds = debounce_seconds
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=queue_size)
        self._pending: dict[tuple[str, str], list[ChangeEvent]] = {}
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._handler_tasks: set[asyncio.Task[SyncResult | None]] = set()
        self._dispatcher: asyncio.Task[None] | None = None
        self._last_results: dict[str, SyncResult] = {}

    @property
    def synchronizers(self) -> list[SynchronizerConfig]:
        return list(self._synchronizers.values())

    def last_result(self, synchronizer_id: str) -> SyncResult | None:
        return self._last_results.get(synchronizer_id)

    def pending_keys(self) -> list[tuple[str, str]]:
        return list(self._timers)

    async def start(self, watch: bool = True) -> None:
        """ディスパッチループと、必要ならファイル監視タスクを開始する。"""
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="sync-dispatch")

        if not watch:
            return
        for config in self._synchronizers.values():
            if config.id not in self._handlers:
                logger.error("No handler registered for synchronizer %s, not watching", config.id)
                continue
            stop_event = asyncio.Event()
            task = asyncio.create_task(self._watch(config, stop_event), name=f"watch-{config.id}")
            self._watchers.register(WatcherHandle(synchronizer_id=config.id, task=task, stop_event=stop_event))
            logger.info("%s started (%s)", config.name, ", ".join(config.watch_paths))

    async def stop(self) -> None:
        """監視を止め、保留中のタイマーと実行中のハンドラーを破棄する。"""
        for synchronizer_id in list(self._synchronizers):
            await self._watchers.stop(synchronizer_id)

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()

        tasks: list[asyncio.Task[Any]] = [*self._handler_tasks]
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
            self._dispatcher = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._handler_tasks.clear()

    async def submit(self, event: ChangeEvent) -> None:
        """変更イベントをキューに入れる。キューが満杯の間は待機する。

        Raises:
            SynchronizerNotFoundError: 未登録のシンクロナイザーIDの場合。
        """
        if event.synchronizer_id not in self._synchronizers:
            raise SynchronizerNotFoundError(event.synchronizer_id)
        await self._queue.put(event)

    def route(self, relative_path: str) -> list[str]:
        """パスを監視しているシンクロナイザーIDを返す。"""
        return [
            config.id
            for config in self._synchronizers.values()
            if any(matches_watch_path(relative_path, pattern) for pattern in config.watch_paths)
        ]

    async def _watch(self, config: SynchronizerConfig, stop_event: asyncio.Event) -> None:
        try:
            async for changes in awatch(self._root, watch_filter=DefaultFilter(), stop_event=stop_event):
                for change, raw_path in changes:
                    try:
                        relative = Path(raw_path).relative_to(self._root).as_posix()
                    except ValueError:
                        continue
                    if not any(matches_watch_path(relative, pattern) for pattern in config.watch_paths):
                        continue
                    logger.debug("%s: %s %s", config.name, change.name, relative)
                    await self.submit(
                        ChangeEvent(kind=_CHANGE_KINDS[change], path=relative, synchronizer_id=config.id)
                    )
        except FileNotFoundError:
            logger.error("Cannot watch %s for %s: directory not found", self._root, config.name)

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self._schedule(event)
            finally:
                self._queue.task_done()

    def _schedule(self, event: ChangeEvent) -> None:
        key = (event.synchronizer_id, event.path)
        self._pending.setdefault(key, []).append(event)

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self._debounce_seconds, self._fire, key)

    def _fire(self, key: tuple[str, str]) -> None:
        self._timers.pop(key, None)
        batch = self._pending.pop(key, [])
        if not batch:
            return
        task = asyncio.create_task(self._invoke(key[0], batch))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _invoke(self, synchronizer_id: str, batch: list[ChangeEvent]) -> SyncResult | None:
        handler = self._handlers.get(synchronizer_id)
        if handler is None:
            logger.error("No handler registered for synchronizer %s", synchronizer_id)
            return None

        name = self._synchronizers[synchronizer_id].name
        logger.info("%s: %d change(s) to %s", name, len(batch), batch[-1].path)
        try:
            result = await handler(batch)
        except Exception:
            logger.exception("Synchronization failed for %s", name)
            return None

        self._last_results[synchronizer_id] = result
        for target, error in result.failed.items():
            logger.error("%s: failed for %s: %s", name, target, error)
        return result
