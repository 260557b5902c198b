"""
Event Protocol for the Stream Pipeline
======================================

Message schemas and topic utilities.
"""

from circulator_stream.events.protocol import format_timestamp
from circulator_stream.events.schema import (
    AlertRecord,
    IncomingSample,
    MetricsSample,
    ProcessedResult,
    ProcessingOutcome,
    Severity,
)

__all__ = [
    "IncomingSample",
    "ProcessedResult",
    "AlertRecord",
    "MetricsSample",
    "ProcessingOutcome",
    "Severity",
    "format_timestamp",
]
