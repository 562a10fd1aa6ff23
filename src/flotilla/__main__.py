"""Flotillaオーケストレーターのコマンドラインエントリポイント。"""

import asyncio
import logging
import signal
import sys

from flotilla.config import OrchestratorConfig
from flotilla.models.errors import ConfigurationError, StorageError
from flotilla.orchestrator import create_orchestrator

logger = logging.getLogger("flotilla")


async def run(config: OrchestratorConfig) -> int:
    """SIGINT / SIGTERM を受けるまでオーケストレーションを続ける。

    Returns:
        プロセスの終了コード。
    """
    try:
        orchestrator = create_orchestrator(config)
    except ConfigurationError as e:
        logger.error("Cross-platform orchestrator failed to start: %s", e)
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await orchestrator.start()
    await stop_event.wait()
    logger.info("Shutdown requested, stopping orchestration")
    try:
        await orchestrator.stop()
    except StorageError as e:
        logger.error("%s", e)
        return 1
    return 0


def main() -> None:
    config = OrchestratorConfig()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(run(config)))


if __name__ == "__main__":
    main()
