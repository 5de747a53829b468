# score_guard/emitter.py
# =========================
# 事件发射队列（breaker 侧同步投递 + 后台异步排空到 EventLogger）
# Event emitter (sync publish from the breaker + async drain to the EventLogger)
# =========================

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from .event_logger import EventLogger
from .guard.types import BreakerEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    """
    中文：同步投递结果
    English: sync publish result
    """
    ok: bool
    dropped_oldest: bool = False
    reason: Optional[str] = None


class EventEmitter:
    """
    中文：
      有界队列，满时丢弃最旧事件（drop-oldest）；
      breaker 的正确性不依赖 EventLogger 是否可用或是否够快。
      - 写入侧（任意线程）：publish_nowait(event)
      - 排空侧：drain() 同步排空，或 run_forever() 周期性排空

    English:
      Bounded drop-oldest queue between the breaker and the EventLogger.
    """

    def __init__(self, sink: EventLogger, *, maxsize: int = 1000) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self.sink = sink
        self._buf: Deque[BreakerEvent] = deque(maxlen=maxsize)
        self._lock = threading.Lock()
        self._closed = False

        self.published_total: int = 0
        self.dropped_total: int = 0
        self.emitted_total: int = 0
        self.failed_total: int = 0

    # -------------------------
    # 生命周期 / lifecycle
    # -------------------------

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def size(self) -> int:
        with self._lock:
            return len(self._buf)

    # -------------------------
    # 写入侧：同步、不阻塞
    # -------------------------

    def publish_nowait(self, event: BreakerEvent) -> PublishResult:
        if self._closed:
            self.dropped_total += 1
            return PublishResult(ok=False, reason="closed")

        with self._lock:
            self.published_total += 1
            full = len(self._buf) == self._buf.maxlen
            if full:
                self.dropped_total += 1
            # deque(maxlen) 满时 append 会挤掉最旧元素
            self._buf.append(event)

        if full:
            return PublishResult(ok=True, dropped_oldest=True, reason="queue_full")
        return PublishResult(ok=True)

    # -------------------------
    # 排空侧
    # -------------------------

    def drain(self, max_items: Optional[int] = None) -> int:
        """
        把队列中的事件交给 sink，返回成功发出的数量。
        sink 抛错只计数并记日志，不会让事件回流或阻塞后续事件。
        """
        emitted = 0
        attempts = 0
        while max_items is None or attempts < max_items:
            with self._lock:
                if not self._buf:
                    break
                event = self._buf.popleft()
            attempts += 1
            try:
                self.sink.emit(event)
                emitted += 1
                self.emitted_total += 1
            except Exception as e:
                self.failed_total += 1
                logger.warning(f"EventLogger emit failed for {event.kind.value} {event.target_author_id}: {e}")
        return emitted

    async def run_forever(self, interval: float = 0.5, batch: Optional[int] = None) -> None:
        """周期性排空；关闭后把剩余事件排空再退出"""
        try:
            while not self._closed:
                self.drain(batch)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.debug("Event emitter loop cancelled")
            raise
        finally:
            self.drain()
