"""
Event Schema for the Stream Pipeline
====================================

Pydantic models for the messages consumed from and published to the broker.
Field names match the JSON wire format.
"""

import uuid as uuid_lib
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import Base64Bytes, BaseModel, Field

from circulator_stream.events.protocol import (
    format_bool,
    format_float,
    format_timestamp,
    utc_now,
)


def _new_uuid() -> str:
    return str(uuid_lib.uuid4())


class Severity(str, Enum):
    """Alert severity levels"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncomingSample(BaseModel):
    """Sensor reading consumed from the external sensor data topic"""

    uuid: str = Field(default_factory=_new_uuid, description="Sample identifier")
    source: str = Field(default="", description="Producer of the reading")
    sensor_type: str = Field(default="", description="Sensor type (e.g. temp)")
    value: float = Field(description="Numeric reading")
    timestamp: datetime = Field(default_factory=utc_now, description="Reading timestamp")
    raw_payload: Optional[Base64Bytes] = Field(
        default=None, description="Original device payload (base64 on the wire)"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "uuid": "6f1c4d2e-0b7a-4c55-9d3e-2a1f0e9b8c7d",
                "source": "gateway-01",
                "sensor_type": "temp",
                "value": 23.4,
                "timestamp": "2025-10-25T10:30:00Z",
                "raw_payload": "eyJ0IjogMjMuNH0=",
            }
        }


class ProcessedResult(BaseModel):
    """Result of running one sample through the rule pipeline"""

    uuid: str = Field(default_factory=_new_uuid)
    agent_uuid: str
    original_value: float
    processed_value: float
    anomaly: bool
    confidence: float = Field(ge=0.0, le=1.0)
    processing_time: int = Field(description="Processing time in microseconds")
    timestamp: datetime = Field(default_factory=utc_now)

    def message_key(self) -> str:
        return self.agent_uuid

    def message_properties(self) -> Dict[str, str]:
        return {
            "agent_uuid": self.agent_uuid,
            "timestamp": format_timestamp(self.timestamp),
            "anomaly": format_bool(self.anomaly),
            "confidence": format_float(self.confidence),
        }


class AlertRecord(BaseModel):
    """Alert raised for an anomalous sample"""

    uuid: str = Field(default_factory=_new_uuid)
    agent_uuid: str
    sensor_type: str
    original_value: float
    processed_value: float
    threshold: float = Field(description="Band bound that was crossed")
    severity: Severity
    message: str
    timestamp: datetime = Field(default_factory=utc_now)

    def message_key(self) -> str:
        return self.agent_uuid

    def message_properties(self) -> Dict[str, str]:
        return {
            "agent_uuid": self.agent_uuid,
            "severity": self.severity.value,
            "timestamp": format_timestamp(self.timestamp),
        }


class MetricsSample(BaseModel):
    """Periodic host resource usage of the agent process"""

    uuid: str = Field(default_factory=_new_uuid)
    agent_uuid: str
    cpu_usage: float = Field(description="CPU usage percent")
    memory_usage: float = Field(description="Memory usage percent")
    disk_usage: float = Field(description="Disk usage percent")
    timestamp: datetime = Field(default_factory=utc_now)

    def message_key(self) -> str:
        return self.agent_uuid

    def message_properties(self) -> Dict[str, str]:
        return {
            "agent_uuid": self.agent_uuid,
            "timestamp": format_timestamp(self.timestamp),
            "cpu_usage": format_float(self.cpu_usage),
            "memory_usage": format_float(self.memory_usage),
            "disk_usage": format_float(self.disk_usage),
        }


class ProcessingOutcome(BaseModel):
    """Per-sample processing outcome, published whether or not it was anomalous"""

    uuid: str = Field(default_factory=_new_uuid)
    agent_uuid: str
    processing_type: str = "stream_processing"
    success: bool
    error_message: Optional[str] = None
    processing_time: int = Field(description="Processing time in microseconds")
    timestamp: datetime = Field(default_factory=utc_now)

    def message_key(self) -> str:
        return self.agent_uuid

    def message_properties(self) -> Dict[str, str]:
        return {
            "agent_uuid": self.agent_uuid,
            "processing_type": self.processing_type,
            "success": format_bool(self.success),
            "timestamp": format_timestamp(self.timestamp),
            "processing_time": str(self.processing_time),
        }
