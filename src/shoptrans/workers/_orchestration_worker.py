# src/shoptrans/workers/_orchestration_worker.py
import asyncio
import signal
from typing import Any

import structlog

from shoptrans.application.coordinator import Coordinator
from shoptrans.config import ShopTransConfig
from shoptrans.core.exceptions import ShopTransError

logger = structlog.get_logger(__name__)


class OrchestrationWorker:
    """
    后台编排 Worker。

    持续运行工作队列，并周期性地检测停滞会话、批量恢复失败译文。
    所有依赖项通过构造函数注入。
    """

    def __init__(self, config: ShopTransConfig, coordinator: Coordinator):
        self._config = config
        self._coordinator = coordinator
        self._rounds = 0

    @property
    def rounds(self) -> int:
        return self._rounds

    async def _shops(self) -> list[str]:
        configured = self._config.worker.shop_ids
        if configured:
            return list(configured)
        sessions = await self._coordinator.sessions.list_sessions(limit=200)
        return list(dict.fromkeys(s.shop_id for s in sessions))

    async def run_once(self) -> dict[str, int]:
        """
        执行一轮维护：停滞检测每轮都做，批量恢复每 `recovery_every` 轮做一次。
        单轮出错只记录日志，不影响后续轮次。
        """
        self._rounds += 1
        stats = {"stalled": 0, "recovered": 0, "failed": 0}
        try:
            stalled = await self._coordinator.sessions.detect_stalled()
            stats["stalled"] = len(stalled)

            if self._rounds % self._config.worker.recovery_every == 0:
                for shop_id in await self._shops():
                    summary = await self._coordinator.recover_failed(shop_id)
                    stats["recovered"] += summary.recovered
                    stats["failed"] += summary.failed

            if any(stats.values()):
                logger.info("本轮维护完成。", round=self._rounds, **stats)
            else:
                logger.debug("本轮未发现需要处理的事项。", round=self._rounds)
        except Exception as e:
            logger.error("执行维护轮次时发生未知错误。", error=e, exc_info=True)
        return stats

    async def run_loop(self, shutdown_event: asyncio.Event) -> None:
        """Worker 的主循环。"""

        def _signal_handler(*args: Any) -> None:
            logger.warning("收到停机信号，正在准备优雅关闭 (OrchestrationWorker)...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        try:
            self._coordinator.queue.start()
            logger.info(
                "编排 Worker 已启动，正在轮询...",
                poll_interval=self._config.worker.poll_interval,
            )

            while not shutdown_event.is_set():
                await self.run_once()
                try:
                    await asyncio.wait_for(
                        shutdown_event.wait(), timeout=self._config.worker.poll_interval
                    )
                except asyncio.TimeoutError:
                    pass

        except ShopTransError as e:
            logger.error("编排 Worker 无法继续运行，即将退出。", error=e)
        except asyncio.CancelledError:
            logger.info("编排 Worker 循环被取消。")
        finally:
            logger.info("编排 Worker 正在关闭...")
            await self._coordinator.close()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            logger.info("编排 Worker 已安全关闭。")
