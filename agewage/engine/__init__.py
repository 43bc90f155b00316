"""Pipeline orchestration."""

from agewage.engine.pipeline import PipelineResult, ReformRun, ThresholdPipeline

__all__ = ["PipelineResult", "ReformRun", "ThresholdPipeline"]
