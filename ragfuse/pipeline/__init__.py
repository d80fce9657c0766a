from .builder import (
    PipelineBuilder,
    advanced_pipeline,
    basic_pipeline,
    build_preset,
    recall_optimized_pipeline,
    search_optimized_pipeline,
)
from .pipeline import RetrievalPipeline
from .state import PipelineState, create_initial_state
from .telemetry import EventNotifier, emit_pipeline_telemetry

__all__ = [
    "EventNotifier",
    "PipelineBuilder",
    "PipelineState",
    "RetrievalPipeline",
    "advanced_pipeline",
    "basic_pipeline",
    "build_preset",
    "create_initial_state",
    "emit_pipeline_telemetry",
    "recall_optimized_pipeline",
    "search_optimized_pipeline",
]
