from __future__ import annotations

from typing import List

from ..types import GuardStage
from .record import RecordStage
from .observe import ObserveStage
from .evaluate import EvaluateStage
from .transition import TransitionStage
from .finalize import FinalizeStage


class DefaultGuardPipeline:
    """固定流程：record -> observe -> evaluate -> transition -> finalize

    Stage 不吞异常：内部错误交给 SuppressionGuard 走降级路径，保持 breaker 状态不变。
    """

    def __init__(self) -> None:
        self.stages: List[GuardStage] = [
            RecordStage(),
            ObserveStage(),
            EvaluateStage(),
            TransitionStage(),
            FinalizeStage(),
        ]

    def run(self, event, ctx, wip) -> None:
        for stage in self.stages:
            stage.apply(event, ctx, wip)
