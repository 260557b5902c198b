"""
Shared fixtures for unit tests
"""

import pytest

from fakes import FakeProducer
from circulator_stream.processor.publisher import OutboundPublisher

AGENT_UUID = "agent-0001"


@pytest.fixture
def agent_uuid():
    return AGENT_UUID


@pytest.fixture
def producers():
    """One FakeProducer per downstream topic."""
    return {
        "processed": FakeProducer("processed-sensor-data"),
        "alerts": FakeProducer("alert-data"),
        "metrics": FakeProducer("system-metrics"),
        "results": FakeProducer("processing-results"),
    }


@pytest.fixture
def publisher(producers):
    return OutboundPublisher(**producers)
