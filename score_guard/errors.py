"""score_guard 错误类型。

这些错误都不会穿透 SuppressionGuard.submit()：每条错误路径最终都会落到一个
allow/deny 决策 + 诊断 reason 上。
"""

from __future__ import annotations

from typing import Optional


class GuardError(Exception):
    """score_guard 领域错误基类。"""


class InputError(GuardError, ValueError):
    """事件格式非法（缺少 target / actor 等），在边界处拒绝，不进入任何状态。"""


class LateEventError(GuardError):
    """事件时间戳早于 grace 容忍范围，只计入 dropped_late，不致命。"""

    def __init__(self, timestamp: float, latest: float, grace_seconds: float) -> None:
        self.timestamp = timestamp
        self.latest = latest
        self.grace_seconds = grace_seconds
        super().__init__(
            f"event at {timestamp:.3f} is {latest - timestamp:.3f}s behind head "
            f"(grace={grace_seconds:g}s)"
        )


class CapacityExceeded(GuardError):
    """actor 集合达到上限，降级为近似计数。"""

    def __init__(self, window: str, cap: int, actor_id: Optional[str] = None) -> None:
        self.window = window
        self.cap = cap
        self.actor_id = actor_id
        super().__init__(f"actor set for window {window} at cap={cap}")


class InternalInconsistency(GuardError):
    """内部状态自检失败（例如出现负计数），breaker 保持最后安全状态。"""


class FutureEventError(InputError):
    """事件时间戳超前 guard 时钟超过允许的偏差，在边界处拒绝，避免把窗口头推到未来。"""

    def __init__(self, timestamp: float, now: float, skew_seconds: float) -> None:
        self.timestamp = timestamp
        self.now = now
        self.skew_seconds = skew_seconds
        super().__init__(
            f"event at {timestamp:.3f} is {timestamp - now:.3f}s ahead of clock "
            f"(max skew={skew_seconds:g}s)"
        )
