"""
Circulator Stream - Sensor Stream Processing Agent
==================================================

Consumes sensor readings from a broker, applies per-agent processing rules
and anomaly detection, and fans results out to downstream topics.

Usage:
    from circulator_stream.processor import PipelineConfig, PipelineCoordinator

    config = PipelineConfig.from_yaml("agent.yaml")
    coordinator = PipelineCoordinator(config)
    try:
        coordinator.start()
    finally:
        coordinator.close()
"""

from circulator_stream.events import (
    AlertRecord,
    IncomingSample,
    MetricsSample,
    ProcessedResult,
    ProcessingOutcome,
)

__version__ = "0.1.0"

__all__ = [
    "IncomingSample",
    "ProcessedResult",
    "AlertRecord",
    "MetricsSample",
    "ProcessingOutcome",
]
