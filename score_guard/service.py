# score_guard/service.py
# =========================
# GuardService：后台任务（空闲回收 + 事件排空 + 配置热加载）
# GuardService: background tasks (idle eviction + event drain + config reload)
# =========================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from .config_provider import GuardConfigProvider
from .guard.guard import SuppressionGuard

logger = logging.getLogger(__name__)


@dataclass
class ServiceStats:
    sweeps_total: int = 0
    evicted_total: int = 0
    config_reloads_total: int = 0


class GuardService:
    """
    职责 / Responsibilities:
    - 周期性回收空闲 target（不阻塞在线 submit）
    - 周期性把 breaker 事件排空到 EventLogger
    - 可选：每轮回收时检查配置文件变化并下发到 guard
    - 支持优雅 shutdown（剩余事件会被排空）

    submit 本身是同步的，不经过这里。
    """

    def __init__(
        self,
        guard: SuppressionGuard,
        *,
        config_provider: Optional[GuardConfigProvider] = None,
        sweep_interval_seconds: Optional[float] = None,
        drain_interval_seconds: Optional[float] = None,
    ) -> None:
        self.guard = guard
        self.config_provider = config_provider
        self.sweep_interval_seconds = (
            sweep_interval_seconds
            if sweep_interval_seconds is not None
            else guard.config.eviction.sweep_interval_sec
        )
        self.drain_interval_seconds = (
            drain_interval_seconds
            if drain_interval_seconds is not None
            else guard.config.emitter.drain_interval_sec
        )
        self.stats = ServiceStats()

        self._closing = False
        self._sweep_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None

    # -------------------------
    # 主运行循环
    # -------------------------

    async def run_forever(self) -> None:
        """启动后台任务并运行直到被取消。"""
        try:
            await self._startup()
            tasks = [t for t in (self._sweep_task, self._drain_task) if t is not None]
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("GuardService received cancellation, shutting down gracefully...")
            raise
        finally:
            await self.shutdown()

    async def _startup(self) -> None:
        logger.info("GuardService starting up...")
        self._drain_task = asyncio.create_task(
            self.guard.emitter.run_forever(
                interval=self.drain_interval_seconds,
                batch=self.guard.config.emitter.drain_batch,
            ),
            name="guard_event_drain",
        )
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="guard_idle_sweep")
        logger.info("GuardService startup complete")

    async def shutdown(self) -> None:
        if self._closing:
            return
        self._closing = True
        logger.info("GuardService shutting down...")

        self.guard.emitter.close()
        tasks: List[asyncio.Task] = [
            t for t in (self._sweep_task, self._drain_task) if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # 关闭后仍可能有未排空的事件
        self.guard.emitter.drain()
        logger.info("GuardService shutdown complete")

    # -------------------------
    # 空闲回收
    # -------------------------

    async def _sweep_loop(self) -> None:
        """周期性扫描并回收 idle target"""
        try:
            while not self._closing:
                await asyncio.sleep(self.sweep_interval_seconds)
                self.sweep_once()
        except asyncio.CancelledError:
            logger.debug("Idle sweep loop cancelled")
            raise

    def sweep_once(self) -> List[str]:
        evicted: List[str] = []
        try:
            self._maybe_reload_config()
            evicted = self.guard.sweep_idle()
            self.stats.sweeps_total += 1
            self.stats.evicted_total += len(evicted)
            if evicted:
                logger.info(f"Idle sweep evicted {len(evicted)} targets")
        except Exception as e:
            logger.error(f"Error in idle sweep: {e}")
        return evicted

    def _maybe_reload_config(self) -> None:
        provider = self.config_provider
        if provider is None:
            return
        if provider.reload_if_changed():
            self.guard.update_config(provider.snapshot())
            self.stats.config_reloads_total += 1
