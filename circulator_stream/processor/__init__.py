"""
Stream Processor - Sensor Ingestion Pipeline
============================================

Consumes sensor samples, applies the agent's rules and publishes results.
"""

from circulator_stream.processor.config import PipelineConfig
from circulator_stream.processor.coordinator import PipelineCoordinator
from circulator_stream.processor.handler import SampleHandler
from circulator_stream.processor.publisher import OutboundPublisher

__all__ = [
    "PipelineCoordinator",
    "PipelineConfig",
    "SampleHandler",
    "OutboundPublisher",
]
