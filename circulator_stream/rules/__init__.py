"""
Processing Rules
================

Rule schema, value transformation and anomaly classification.
"""

from circulator_stream.rules.anomaly import AnomalyDetector, AnomalyPolicy, AnomalyVerdict
from circulator_stream.rules.schema import (
    AgentProcessingConfig,
    MovingAverageRule,
    OutlierDetectionRule,
    ProcessingRule,
    UnrecognizedRule,
)
from circulator_stream.rules.transform import TransformEngine

__all__ = [
    "AgentProcessingConfig",
    "ProcessingRule",
    "MovingAverageRule",
    "OutlierDetectionRule",
    "UnrecognizedRule",
    "TransformEngine",
    "AnomalyDetector",
    "AnomalyPolicy",
    "AnomalyVerdict",
]
