from .base import DefaultGuardPipeline

__all__ = ["DefaultGuardPipeline"]
