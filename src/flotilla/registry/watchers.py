"""ファイル監視タスクを保持するレジストリ。"""

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class WatcherHandle:
    """シンクロナイザー1つ分の監視タスクと停止イベント。"""

    synchronizer_id: str
    task: asyncio.Task[None]
    stop_event: asyncio.Event


class WatcherRegistry:
    """シンクロナイザーIDごとに監視タスクを管理する。"""

    def __init__(self) -> None:
        self._handles: dict[str, WatcherHandle] = {}

    def register(self, handle: WatcherHandle) -> None:
        self._handles[handle.synchronizer_id] = handle

    def ids(self) -> list[str]:
        return list(self._handles)

    def __contains__(self, synchronizer_id: object) -> bool:
        return synchronizer_id in self._handles

    async def stop(self, synchronizer_id: str) -> None:
        handle = self._handles.pop(synchronizer_id, None)
        if handle is None:
            return
        handle.stop_event.set()
        handle.task.cancel()
        results = await asyncio.gather(handle.task, return_exceptions=True)
        error = results[0]
        if isinstance(error, Exception):
            logger.error("Watcher for %s had failed: %s", synchronizer_id, error)
        logger.info("Stopped watching %s", synchronizer_id)

    async def stop_all(self) -> None:
        for synchronizer_id in list(self._handles):
            await self.stop(synchronizer_id)
