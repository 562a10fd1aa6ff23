"""実行中の子プロセスを保持するレジストリ。"""

import asyncio
import logging

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """キー（例: "web:build"）ごとに実行中の子プロセスを管理する。

    停止処理はこのレジストリに登録されたプロセスだけを対象にする。
    """

    def __init__(self) -> None:
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def register(self, key: str, proc: asyncio.subprocess.Process) -> None:
        self._processes[key] = proc

    def unregister(self, key: str, proc: asyncio.subprocess.Process) -> None:
        # 後から同じキーで登録されたプロセスは消さない
        if self._processes.get(key) is proc:
            del self._processes[key]

    def get(self, key: str) -> asyncio.subprocess.Process | None:
        return self._processes.get(key)

    def keys(self) -> list[str]:
        return list(self._processes)

    def terminate(self, key: str) -> bool:
        """キーに対応するプロセスへSIGTERMを送る。

        Returns:
            シグナルを送った場合True。
        """
        proc = self._processes.pop(key, None)
        if proc is None or proc.returncode is not None:
            return False
        try:
            proc.terminate()
        except ProcessLookupError:
            return False
        logger.info("Sent SIGTERM to %s (pid=%s)", key, proc.pid)
        return True

    def terminate_all(self) -> list[str]:
        """登録されている全プロセスを終了させ、シグナルを送ったキーを返す。"""
        return [key for key in list(self._processes) if self.terminate(key)]
