"""プラットフォームのコマンドを子プロセスとして実行する。"""

import asyncio
import logging
import shlex
from pathlib import Path

from flotilla.models.build import CommandResult
from flotilla.registry.processes import ProcessRegistry

logger = logging.getLogger(__name__)

# 実行ファイルが見つからない場合にシェルが返す終了コード
_EXIT_NOT_FOUND = 127


class CommandRunner:
    """ビルド・テスト・デプロイコマンドを非同期に実行する。

    実行中のプロセスはProcessRegistryに登録し、停止時にまとめて終了できるようにする。
    """

    def __init__(self, processes: ProcessRegistry) -> None:
        self._processes = processes

    @property
    def processes(self) -> ProcessRegistry:
        return self._processes

    async def run(self, command: str, cwd: Path | None = None, key: str | None = None) -> CommandResult:
        """コマンドを実行し、終了コードと出力を返す。

        起動に失敗した場合も例外は送出せず、失敗のCommandResultを返す。

        Args:
            command: 実行するコマンド文字列。
            cwd: 作業ディレクトリ。
            key: ProcessRegistryに登録するキー。Noneの場合は登録しない。

        Returns:
            コマンド実行結果。
        """
        try:
            args = shlex.split(command)
        except ValueError as e:
            return CommandResult(command=command, success=False, exit_code=2, stderr=f"Invalid command: {e}")
        if not args:
            return CommandResult(command=command, success=False, exit_code=2, stderr="Empty command")

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
            )
        except OSError as e:
            logger.warning("Failed to start %r: %s", command, e)
            return CommandResult(command=command, success=False, exit_code=_EXIT_NOT_FOUND, stderr=str(e))

        if key is not None:
            self._processes.register(key, proc)
        try:
            stdout_bytes, stderr_bytes = await proc.communicate()
        finally:
            if key is not None:
                self._processes.unregister(key, proc)

        exit_code = proc.returncode or 0
        logger.debug("%r exited with %d", command, exit_code)
        return CommandResult(
            command=command,
            success=exit_code == 0,
            exit_code=exit_code,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
